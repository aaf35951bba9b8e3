"""
tests/test_continuity.py — Continuity Scorer.

Tests: score/grade scenarios, each warning rule, session filtering,
analysis windows, recommendations, multi-patient summary.
"""

import sys
from datetime import date, timedelta
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from care_coverage.continuity import (
    ContinuityWarning,
    analysis_window,
    continuity_score,
    grade_for,
    score_continuity,
    summarize_continuity,
    week_start,
)
from care_coverage.models import Assignment

WEEK_START = date(2024, 1, 14)
WEEK_END = date(2024, 1, 20)


def _sessions(plan, patient="P1", **kw):
    """plan: list of (therapist_id, day offset from WEEK_START)."""
    out = []
    for i, (therapist, offset) in enumerate(plan):
        day = WEEK_START + timedelta(days=offset)
        start = f"{8 + i % 8:02d}:00"
        end = f"{9 + i % 8:02d}:00"
        out.append(Assignment(f"S{i}", f"B{i}", patient, therapist, day, start, end, **kw))
    return out


def _types(report):
    return [w.type for w in report.warnings]


# ============================================================
# Score & grade
# ============================================================

class TestScoring:

    def test_strong_primary_scores_a(self):
        """6 / 3 / 1 sessions over a week: no warnings, share bonus, clamped to 100."""
        plan = [("T1", d) for d in range(6)] + [("T2", d) for d in range(3)] + [("T3", 4)]
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        assert report.total_sessions == 10
        assert report.warnings == []
        assert report.score == 100
        assert report.grade == "A"
        assert report.primary_therapist.therapist_id == "T1"
        assert report.primary_therapist.percentage == pytest.approx(0.6)
        assert [s.therapist_id for s in report.therapist_stats] == ["T1", "T2", "T3"]

    def test_five_different_therapists_scores_c(self):
        plan = [(f"T{i}", i) for i in range(1, 6)]
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        assert sorted(_types(report)) == ["high_fragmentation", "no_primary_therapist"]
        assert report.score == 70
        assert report.grade == "C"

    def test_empty_window_is_perfect(self):
        report = score_continuity("P1", [], WEEK_START, WEEK_END)
        assert report.total_sessions == 0
        assert report.score == 100
        assert report.grade == "A"
        assert report.primary_therapist is None
        assert report.recommendations == []

    @pytest.mark.parametrize("score,grade", [
        (100, "A"), (90, "A"), (89, "B"), (80, "B"), (79, "C"), (70, "C"), (60, "D"), (59, "F"), (0, "F"),
    ])
    def test_grade_cutoffs(self, score, grade):
        assert grade_for(score) == grade

    def test_share_bonus_levels(self):
        assert continuity_score([], 0.6) == 100
        warn = [ContinuityWarning("high_fragmentation", "warning", "")]
        assert continuity_score(warn, 0.65) == 95
        assert continuity_score(warn, 0.55) == 90
        assert continuity_score(warn, 0.4) == 85

    def test_score_never_rises_with_more_warnings(self):
        kinds = ["error", "warning", "info", "warning", "error", "error", "info"]
        for share in (None, 0.3, 0.5, 0.7):
            warnings = []
            previous = continuity_score(warnings, share)
            for severity in kinds:
                warnings.append(ContinuityWarning("x", severity, ""))
                current = continuity_score(warnings, share)
                assert current <= previous, f"share={share}: score rose after adding a {severity}"
                assert 0 <= current <= 100
                previous = current


# ============================================================
# Warning rules
# ============================================================

class TestWarnings:

    def test_excessive_daily_therapists_once_per_day(self):
        plan = [(t, 0) for t in ("T1", "T2", "T3", "T4")] + [(t, 2) for t in ("T1", "T2", "T3", "T4")]
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        daily = [w for w in report.warnings if w.type == "excessive_daily_therapists"]
        assert [w.date for w in daily] == [WEEK_START, WEEK_START + timedelta(days=2)]
        assert all(w.severity == "error" and w.count == 4 for w in daily)
        assert report.daily_therapist_counts[WEEK_START] == 4

    def test_three_therapists_in_a_day_is_fine(self):
        plan = [(t, 0) for t in ("T1", "T2", "T3")]
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        assert "excessive_daily_therapists" not in _types(report)

    def test_period_warning_needs_a_week(self):
        plan = [(f"T{i}", i % 6) for i in range(1, 7)] + [("T1", 0), ("T1", 1), ("T1", 2), ("T1", 3)]
        full = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        assert "excessive_period_therapists" in _types(full)

        short = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_START + timedelta(days=5))
        assert "excessive_period_therapists" not in _types(short)

    def test_no_primary_needs_five_sessions(self):
        plan = [("T1", 0), ("T2", 1), ("T3", 2), ("T4", 3)]
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        assert "no_primary_therapist" not in _types(report)
        assert "high_fragmentation" in _types(report)

    def test_threshold_override(self):
        plan = [(t, 0) for t in ("T1", "T2", "T3")]
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END,
                                  thresholds={"max_therapists_per_day": 2})
        assert "excessive_daily_therapists" in _types(report)


# ============================================================
# Session filtering
# ============================================================

class TestSessionFilter:

    def test_only_live_direct_sessions_in_window_count(self):
        counted = _sessions([("T1", 0), ("T1", 1)])
        ignored = (
            _sessions([("T2", 2)], status="cancelled")
            + _sessions([("T3", 3)], status="no_show")
            + _sessions([("T4", 4)], service_type="supervision")
            + _sessions([("T5", 10)])
            + _sessions([("T6", 1)], patient="P2")
        )
        report = score_continuity("P1", counted + ignored, WEEK_START, WEEK_END)
        assert report.total_sessions == 2
        assert report.therapists == ["T1"]

    def test_completed_sessions_count(self):
        report = score_continuity("P1", _sessions([("T1", 0)], status="completed"), WEEK_START, WEEK_END)
        assert report.total_sessions == 1

    def test_reversed_window_rejected(self):
        with pytest.raises(ValueError):
            score_continuity("P1", [], WEEK_END, WEEK_START)


# ============================================================
# Analysis windows
# ============================================================

class TestAnalysisWindow:

    def test_week_starts_on_sunday(self):
        assert week_start(date(2024, 1, 17)) == date(2024, 1, 14)
        assert week_start(date(2024, 1, 14)) == date(2024, 1, 14)
        assert week_start(date(2024, 1, 20)) == date(2024, 1, 14)

    def test_periods(self):
        anchor = date(2024, 1, 17)
        assert analysis_window(anchor, "daily") == (anchor, anchor)
        assert analysis_window(anchor, "weekly") == (date(2024, 1, 14), date(2024, 1, 20))
        assert analysis_window(anchor, "biweekly") == (date(2024, 1, 7), date(2024, 1, 20))
        assert analysis_window(anchor, "monthly") == (date(2023, 12, 24), date(2024, 1, 20))

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            analysis_window(date(2024, 1, 17), "quarterly")


# ============================================================
# Recommendations & summary
# ============================================================

class TestRecommendations:

    def test_weak_primary_and_consolidation(self):
        plan = (
            [("T1", d) for d in range(4)]
            + [("T2", 4), ("T2", 5), ("T3", 5), ("T3", 6), ("T4", 6)]
        )
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        recs = {r["type"]: r for r in report.recommendations}
        assert recs["increase_primary_therapist"]["therapist_id"] == "T1"
        consolidate = recs["consolidate_secondary_therapist"]
        assert consolidate["therapist_id"] == "T2"
        assert consolidate["sessions_to_transfer"] == 3
        assert consolidate["source_therapists"] == ["T3", "T4"]

    def test_optimal_structure_for_busy_patients(self):
        plan = [("T1", d % 7) for d in range(12)]
        report = score_continuity("P1", _sessions(plan), WEEK_START, WEEK_END)
        structure = [r for r in report.recommendations if r["type"] == "optimal_structure"]
        assert structure and structure[0]["structure"]["primary"] == 50


class TestSummary:

    def test_all_good(self):
        assignments = _sessions([("T1", 0), ("T1", 1)]) + _sessions([("T2", 0)], patient="P2")
        summary = summarize_continuity(["P1", "P2"], assignments, WEEK_START, WEEK_END)
        assert summary.total_patients == 2
        assert summary.patients_with_issues == 0
        assert summary.average_score == 100
        assert [r["type"] for r in summary.recommendations] == ["excellent_continuity"]

    def test_primary_recommendation(self):
        good = _sessions([("T1", 0), ("T1", 1)])
        fragmented = _sessions([(f"T{i}", i) for i in range(1, 6)], patient="P2")
        summary = summarize_continuity(["P1", "P2"], good + fragmented, WEEK_START, WEEK_END)
        assert summary.patients_with_issues == 1
        assert summary.issues_summary["no_primary_therapist"] == 1
        assert summary.issues_summary["high_fragmentation"] == 1
        types = [r["type"] for r in summary.recommendations]
        assert "assign_primary_therapists" in types
        assert "systemic_continuity_issues" not in types
