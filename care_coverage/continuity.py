"""
continuity.py — Continuity Scorer

Scores how consistently the same therapists serve a patient over a window.

Sessions: the patient's direct-care assignments dated inside
[window_start, window_end], excluding cancelled and no-show.

Warnings (independent, may all fire):
  excessive_daily_therapists   error    a day with >3 distinct therapists
                                        (one warning per offending day)
  excessive_period_therapists  warning  >5 distinct therapists and the
                                        window spans ≥7 days
  no_primary_therapist         warning  ≥5 sessions, nobody at ≥50% share
  high_fragmentation           warning  ≥3 therapists with exactly 1 session

Score:
  100 − 25/error − 15/warning − 5/info
  +10 if top share ≥60%, else +5 if ≥50%; clamped to [0, 100]
  Grades: ≥90 A, ≥80 B, ≥70 C, ≥60 D, else F

Recommendations are advisory text only; nothing here changes a schedule.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from care_coverage.models import Assignment
from care_coverage.policy import (
    CONTINUITY_THRESHOLDS,
    DIRECT_SERVICE_TYPES,
    FAILING_GRADE,
    GRADE_CUTOFFS,
    PRIMARY_SHARE_BONUSES,
    SEVERITY_PENALTIES,
    VOID_STATUSES,
)

logger = logging.getLogger(__name__)

# Analysis periods → weeks back from the anchor's week (Sunday-start weeks)
PERIOD_WEEKS_BACK = {
    "weekly": 0,
    "biweekly": 1,
    "monthly": 3,
}


@dataclass
class TherapistShare:
    therapist_id: str
    session_count: int
    percentage: float
    session_dates: List[date] = field(default_factory=list)


@dataclass
class ContinuityWarning:
    type: str
    severity: str
    message: str
    recommendation: str = ""
    count: Optional[int] = None
    date: Optional[date] = None

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.type} → {self.message}"


@dataclass
class ContinuityReport:
    patient_id: str
    window_start: date
    window_end: date
    total_sessions: int
    therapists: List[str]
    therapist_stats: List[TherapistShare]
    daily_therapist_counts: Dict[date, int]
    warnings: List[ContinuityWarning]
    recommendations: List[Dict[str, Any]]
    score: int
    grade: str

    @property
    def primary_therapist(self) -> Optional[TherapistShare]:
        return self.therapist_stats[0] if self.therapist_stats else None

    @property
    def has_issues(self) -> bool:
        return bool(self.warnings)


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------

def week_start(d: date) -> date:
    """Sunday on or before `d`."""
    return d - timedelta(days=(d.weekday() + 1) % 7)


def analysis_window(anchor: date, period: str = "weekly") -> Tuple[date, date]:
    """
    Window for a named period around `anchor`.

    daily    → the anchor day
    weekly   → the Sunday–Saturday week containing the anchor
    biweekly → that week plus the one before
    monthly  → that week plus the three before
    """
    if period == "daily":
        return anchor, anchor
    if period not in PERIOD_WEEKS_BACK:
        raise ValueError(f"Unknown analysis period {period!r} (expected daily/weekly/biweekly/monthly)")
    end = week_start(anchor) + timedelta(days=6)
    start = week_start(anchor) - timedelta(weeks=PERIOD_WEEKS_BACK[period])
    return start, end


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------

def grade_for(score: float) -> str:
    for cutoff, grade in GRADE_CUTOFFS:
        if score >= cutoff:
            return grade
    return FAILING_GRADE


def continuity_score(warnings: List[ContinuityWarning], top_share: Optional[float]) -> int:
    score = 100
    for w in warnings:
        score -= SEVERITY_PENALTIES.get(w.severity, 0)
    if top_share is not None:
        for threshold, bonus in PRIMARY_SHARE_BONUSES:
            if top_share >= threshold:
                score += bonus
                break
    return max(0, min(100, score))


def optimal_structure(total_sessions: int) -> Dict[str, int]:
    """Target primary/secondary/tertiary split (percent) for a session count."""
    if total_sessions <= 5:
        return {"primary": 80, "secondary": 20, "max_therapists": 2}
    if total_sessions <= 10:
        return {"primary": 60, "secondary": 30, "tertiary": 10, "max_therapists": 3}
    return {"primary": 50, "secondary": 30, "tertiary": 20, "max_therapists": 3}


def _sessions(
    patient_id: str,
    assignments: Iterable[Assignment],
    window_start: date,
    window_end: date,
) -> List[Assignment]:
    return [
        a for a in assignments
        if a.patient_id == patient_id
        and a.service_type in DIRECT_SERVICE_TYPES
        and a.therapist_id
        and a.status not in VOID_STATUSES
        and window_start <= a.date <= window_end
    ]


def _warnings(
    stats: List[TherapistShare],
    daily: Dict[date, int],
    total: int,
    span_days: int,
    t: Dict[str, Any],
) -> List[ContinuityWarning]:
    warnings = []

    for day in sorted(daily):
        if daily[day] > t["max_therapists_per_day"]:
            warnings.append(ContinuityWarning(
                type="excessive_daily_therapists",
                severity="error",
                message=(
                    f"{daily[day]} different therapists on {day.isoformat()} "
                    f"(max recommended: {t['max_therapists_per_day']})"
                ),
                recommendation="Reschedule to reduce therapist changes",
                count=daily[day],
                date=day,
            ))

    if len(stats) > t["max_therapists_per_period"] and span_days >= t["period_min_days"]:
        warnings.append(ContinuityWarning(
            type="excessive_period_therapists",
            severity="warning",
            message=f"Patient has {len(stats)} different therapists in {span_days} days",
            recommendation="Consider reducing therapist rotation",
            count=len(stats),
        ))

    has_primary = any(s.percentage >= t["primary_share"] for s in stats)
    if total >= t["primary_min_sessions"] and not has_primary:
        warnings.append(ContinuityWarning(
            type="no_primary_therapist",
            severity="warning",
            message=f"No primary therapist identified (no therapist has ≥{t['primary_share']:.0%} of sessions)",
            recommendation="Assign more sessions to one primary therapist",
        ))

    single = sum(1 for s in stats if s.session_count == 1)
    if single >= t["fragmentation_min_therapists"]:
        warnings.append(ContinuityWarning(
            type="high_fragmentation",
            severity="warning",
            message=f"{single} therapists have only 1 session each",
            recommendation="Consolidate single sessions with existing therapists",
            count=single,
        ))
    return warnings


def _recommendations(stats: List[TherapistShare], total: int, t: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not stats:
        return []
    recs = []
    top = stats[0]

    if top.percentage < t["strong_primary_share"] and total >= t["primary_min_sessions"]:
        recs.append({
            "type": "increase_primary_therapist",
            "priority": "high",
            "message": (
                f"Increase {top.therapist_id}'s share toward {t['strong_primary_share']:.0%} "
                f"(currently {top.percentage:.0%})"
            ),
            "therapist_id": top.therapist_id,
            "target_percentage": t["strong_primary_share"],
        })

    if len(stats) > 3:
        second = stats[1]
        others = stats[2:]
        moved = sum(s.session_count for s in others)
        if moved >= t["consolidate_min_sessions"]:
            recs.append({
                "type": "consolidate_secondary_therapist",
                "priority": "medium",
                "message": f"Transfer {moved} sessions from {len(others)} therapists to {second.therapist_id}",
                "therapist_id": second.therapist_id,
                "sessions_to_transfer": moved,
                "source_therapists": [s.therapist_id for s in others],
            })

    if total >= t["optimal_structure_min_sessions"]:
        structure = optimal_structure(total)
        recs.append({
            "type": "optimal_structure",
            "priority": "low",
            "message": (
                f"Optimal structure: {structure['primary']}% primary, "
                f"{structure['secondary']}% secondary therapist"
            ),
            "structure": structure,
        })
    return recs


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def score_continuity(
    patient_id: str,
    assignments: Iterable[Assignment],
    window_start: date,
    window_end: date,
    thresholds: Optional[Dict[str, Any]] = None,
) -> ContinuityReport:
    """Build the ContinuityReport for one patient over [window_start, window_end]."""
    if window_end < window_start:
        raise ValueError(f"Window end {window_end} is before start {window_start}")
    t = {**CONTINUITY_THRESHOLDS, **(thresholds or {})}

    sessions = _sessions(patient_id, assignments, window_start, window_end)
    total = len(sessions)

    dates_by_therapist: Dict[str, List[date]] = {}
    therapists_by_day: Dict[date, set] = {}
    for a in sessions:
        dates_by_therapist.setdefault(a.therapist_id, []).append(a.date)
        therapists_by_day.setdefault(a.date, set()).add(a.therapist_id)

    stats = [
        TherapistShare(
            therapist_id=tid,
            session_count=len(dates),
            percentage=len(dates) / total,
            session_dates=sorted(dates),
        )
        for tid, dates in dates_by_therapist.items()
    ]
    stats.sort(key=lambda s: (-s.session_count, s.therapist_id))
    daily = {d: len(ids) for d, ids in sorted(therapists_by_day.items())}

    span_days = (window_end - window_start).days + 1
    warnings = _warnings(stats, daily, total, span_days, t)
    top_share = stats[0].percentage if stats else None
    score = continuity_score(warnings, top_share)

    report = ContinuityReport(
        patient_id=patient_id,
        window_start=window_start,
        window_end=window_end,
        total_sessions=total,
        therapists=sorted(dates_by_therapist),
        therapist_stats=stats,
        daily_therapist_counts=daily,
        warnings=warnings,
        recommendations=_recommendations(stats, total, t),
        score=score,
        grade=grade_for(score),
    )
    logger.debug(
        f"Continuity {patient_id} {window_start}..{window_end}: {total} session(s), "
        f"{len(stats)} therapist(s), score {score} ({report.grade})"
    )
    return report


@dataclass
class ContinuitySummary:
    window_start: date
    window_end: date
    reports: Dict[str, ContinuityReport]
    patients_with_issues: int
    issues_summary: Dict[str, int]
    recommendations: List[Dict[str, Any]]

    @property
    def total_patients(self) -> int:
        return len(self.reports)

    @property
    def average_score(self) -> float:
        if not self.reports:
            return 0.0
        return sum(r.score for r in self.reports.values()) / len(self.reports)


ISSUE_BUCKETS = {
    "excessive_daily_therapists": "excessive_therapists",
    "excessive_period_therapists": "excessive_therapists",
    "no_primary_therapist": "no_primary_therapist",
    "high_fragmentation": "high_fragmentation",
}


def summarize_continuity(
    patient_ids: Iterable[str],
    assignments: Iterable[Assignment],
    window_start: date,
    window_end: date,
    thresholds: Optional[Dict[str, Any]] = None,
) -> ContinuitySummary:
    """Score every patient and roll the results into system-wide recommendations."""
    assignments = list(assignments)
    reports: Dict[str, ContinuityReport] = {}
    issues = {"excessive_therapists": 0, "no_primary_therapist": 0, "high_fragmentation": 0}
    with_issues = 0

    for pid in patient_ids:
        report = score_continuity(pid, assignments, window_start, window_end, thresholds)
        reports[pid] = report
        if report.has_issues:
            with_issues += 1
            for w in report.warnings:
                issues[ISSUE_BUCKETS[w.type]] += 1

    recs: List[Dict[str, Any]] = []
    total = len(reports)
    if with_issues == 0:
        recs.append({
            "type": "excellent_continuity",
            "priority": "info",
            "message": "All patients have good therapist continuity",
        })
    else:
        rate = with_issues / total
        if rate > 0.5:
            recs.append({
                "type": "systemic_continuity_issues",
                "priority": "high",
                "message": f"{rate:.1%} of patients have continuity issues. Consider reviewing scheduling policies.",
                "affected_patients": with_issues,
            })
        if issues["excessive_therapists"] > total * 0.3:
            recs.append({
                "type": "reduce_therapist_rotation",
                "priority": "high",
                "message": "Many patients have too many different therapists. Implement therapist assignment policies.",
                "affected_count": issues["excessive_therapists"],
            })
        if issues["no_primary_therapist"] > total * 0.2:
            recs.append({
                "type": "assign_primary_therapists",
                "priority": "medium",
                "message": "Many patients lack a primary therapist. Assign consistent therapists for better outcomes.",
                "affected_count": issues["no_primary_therapist"],
            })

    logger.info(f"Continuity: {with_issues}/{total} patient(s) with issues")
    return ContinuitySummary(
        window_start=window_start,
        window_end=window_end,
        reports=reports,
        patients_with_issues=with_issues,
        issues_summary=issues,
        recommendations=recs,
    )
