"""
tests/test_resolver.py — Bulk gap resolution.

Tests: stale proposals re-evaluated when two gaps pick the same therapist,
low-confidence cut-off, critical-first ordering, clean audit of the result.
"""

import sys
from datetime import date
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from care_coverage.conflicts import ConflictDetector
from care_coverage.models import Assignment, TherapistCandidate, TimeBlock
from care_coverage.resolver import resolve_gaps

WORKDAY = [("08:00", "17:00")]


class FakeSource:
    """Returns a fresh candidate list per patient; T1 is everyone's favourite."""

    def __init__(self, therapist_ids, preferred="T1"):
        self.therapist_ids = therapist_ids
        self.preferred = preferred
        self.calls = 0

    def list_eligible_therapists(self, patient_id, day, time_range=None):
        self.calls += 1
        return [
            TherapistCandidate(tid, availability=WORKDAY, is_preferred=(tid == self.preferred))
            for tid in self.therapist_ids
        ]


@pytest.fixture
def twin_blocks():
    """Two patients needing cover at the same hour on the same day."""
    return [
        TimeBlock("B1", "P1", "2024-01-15", "10:00", "11:00"),
        TimeBlock("B2", "P2", "2024-01-15", "10:00", "11:00"),
    ]


# ============================================================
# Serialized acceptance
# ============================================================

class TestStaleProposals:

    def test_second_gap_falls_to_next_therapist(self, twin_blocks):
        report = resolve_gaps(twin_blocks, [], FakeSource(["T1", "T2"]))
        assert report.gaps_found == 2
        assert report.reevaluated == 1
        picks = {p.gap.time_block_id: p.therapist_id for p in report.proposals}
        assert picks == {"B1": "T1", "B2": "T2"}
        assert report.unresolved == []

    def test_single_therapist_leaves_one_unresolved(self, twin_blocks):
        report = resolve_gaps(twin_blocks, [], FakeSource(["T1"]))
        assert report.resolved_count == 1
        assert report.unresolved_count == 1
        assert report.unresolved[0].reason == "all_conflict"
        assert report.unresolved[0].gap.time_block_id == "B2"

    @pytest.mark.parametrize("workers", [1, 2, 8])
    def test_accepted_set_never_double_books(self, workers):
        blocks = [TimeBlock(f"B{i}", f"P{i}", "2024-01-15", "09:00", "12:00") for i in range(6)]
        existing = [Assignment("X1", "B0", "P0", "T3", "2024-01-15", "09:00", "10:00")]
        report = resolve_gaps(blocks, existing, FakeSource(["T1", "T2", "T3", "T4"]), max_workers=workers)
        assert ConflictDetector().audit(existing + report.assignments) == []
        # T3 is busy 09:00-10:00, so after B0's late gap only T2 and T4 can take a full block
        assert report.gaps_found == 6
        assert report.resolved_count == 3
        assert {u.reason for u in report.unresolved} == {"all_conflict"}

    def test_snapshot_not_mutated(self, twin_blocks):
        existing = []
        resolve_gaps(twin_blocks, existing, FakeSource(["T1", "T2"]))
        assert existing == []


# ============================================================
# Filtering & ordering
# ============================================================

class TestFiltering:

    def test_low_confidence_reported_unresolved(self):
        blocks = [TimeBlock("B1", "P1", "2024-01-15", "10:00", "11:00")]
        report = resolve_gaps(blocks, [], FakeSource(["T2"]), min_confidence=0.6)
        assert report.resolved_count == 0
        assert report.unresolved[0].reason == "low_confidence"
        assert report.unresolved[0].details["therapist_id"] == "T2"
        assert report.unresolved[0].details["confidence_score"] == pytest.approx(0.5)

    def test_critical_gaps_resolved_first(self):
        blocks = [
            TimeBlock("B1", "P1", "2024-01-15", "09:00", "12:00", priority="low"),
            TimeBlock("B2", "P2", "2024-01-16", "09:00", "12:00", priority="critical"),
        ]
        existing = [Assignment("X1", "B1", "P1", "T9", "2024-01-15", "09:00", "11:00")]
        report = resolve_gaps(blocks, existing, FakeSource(["T1"]))
        assert [p.gap.time_block_id for p in report.proposals] == ["B2", "B1"]

    def test_date_range(self, twin_blocks):
        later = TimeBlock("B3", "P3", "2024-01-20", "10:00", "11:00")
        report = resolve_gaps(twin_blocks + [later], [], FakeSource(["T1", "T2"]),
                              start_date=date(2024, 1, 20), end_date=date(2024, 1, 20))
        assert report.blocks_analyzed == 1
        assert [p.gap.time_block_id for p in report.proposals] == ["B3"]

    def test_nothing_to_do(self):
        blocks = [TimeBlock("B1", "P1", "2024-01-15", "10:00", "11:00")]
        covered = [Assignment("A1", "B1", "P1", "T1", "2024-01-15", "10:00", "11:00")]
        source = FakeSource(["T1"])
        report = resolve_gaps(blocks, covered, source)
        assert report.summary() == {
            "blocks_analyzed": 1, "gaps_found": 0, "resolved": 0, "unresolved": 0, "reevaluated": 0,
        }
        assert source.calls == 0
