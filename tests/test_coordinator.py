"""
tests/test_coordinator.py — Store, candidate source, notifier and coordinator.

Tests: locked commit (accept / reject / override / validation), notifier
failures keep the commit, webhook payload, status transitions, concurrent
commits for the same therapist, resolve_and_commit end to end.
"""

import gc
import sys
import threading
from datetime import date
from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from care_coverage.conflicts import ConflictError
from care_coverage.coordinator import AssignmentCoordinator
from care_coverage.gaps import find_gaps
from care_coverage.models import Assignment, TimeBlock, TimeRange, ValidationError
from care_coverage.store import InMemoryScheduleStore, StaticCandidateSource, WebhookNotifier

DAY = date(2024, 1, 15)


@pytest.fixture
def store():
    return InMemoryScheduleStore(
        time_blocks=[
            TimeBlock("B1", "P1", DAY, "09:00", "12:00"),
            TimeBlock("B9", "P2", DAY, "10:00", "11:00"),
        ],
        assignments=[Assignment("A1", "B9", "P2", "T1", DAY, "10:00", "11:00")],
    )


@pytest.fixture
def roster():
    return [
        {
            "therapist_id": "T1",
            "name": "Jordan Lee",
            "availability": [TimeRange("08:00", "17:00")],
            "preferred_patients": {"P1"},
        },
        {
            "therapist_id": "T2",
            "name": "Sam Patel",
            "availability": [TimeRange("08:00", "17:00")],
        },
        {
            "therapist_id": "T3",
            "name": "Alex Rivera",
            "availability": [TimeRange("08:00", "17:00")],
            "unavailable_dates": {DAY},
        },
    ]


def _a(id, therapist, start, end, block="B1", patient="P1", **kw):
    return Assignment(id, block, patient, therapist, DAY, start, end, **kw)


# ============================================================
# Store & candidate source
# ============================================================

class TestStore:

    def test_lookups(self, store):
        assert store.get_time_block("B1").patient_id == "P1"
        assert [a.id for a in store.list_assignments(therapist_id="T1")] == ["A1"]
        assert store.list_assignments(patient_id="P1") == []
        assert [b.id for b in store.list_time_blocks(patient_id="P1", start_date=DAY, end_date=DAY)] == ["B1"]

    def test_duplicate_id_rejected(self, store):
        with pytest.raises(ValueError):
            store.commit_assignment(_a("A1", "T2", "09:00", "10:00"))

    def test_update_unknown(self, store):
        with pytest.raises(KeyError):
            store.update_assignment(_a("ZZ", "T2", "09:00", "10:00"))

    def test_candidates_from_roster(self, store, roster):
        source = StaticCandidateSource(roster, store)
        candidates = {c.therapist_id: c for c in source.list_eligible_therapists("P1", DAY)}
        assert sorted(candidates) == ["T1", "T2"], "Unavailable therapist must be skipped"
        assert candidates["T1"].is_preferred
        assert candidates["T1"].daily_workload == 1
        assert candidates["T2"].daily_workload == 0
        assert candidates["T1"].name == "Jordan Lee"

    def test_candidates_without_store(self, roster):
        source = StaticCandidateSource(roster)
        assert all(c.daily_workload is None for c in source.list_eligible_therapists("P2", DAY))


# ============================================================
# Commit
# ============================================================

class TestCommit:

    def test_commit_clean_assignment(self, store):
        coord = AssignmentCoordinator(store)
        result = coord.commit(_a("N1", "T2", "09:00", "10:00"))
        assert result.is_valid
        assert store.get_assignment("N1") is not None

    def test_conflict_leaves_store_unchanged(self, store):
        coord = AssignmentCoordinator(store)
        with pytest.raises(ConflictError) as exc:
            coord.commit(_a("N2", "T1", "10:30", "11:30"))
        assert [c.conflict_type for c in exc.value.result.errors] == ["therapist_conflict"]
        assert store.get_assignment("N2") is None

    def test_emergency_override(self, store):
        coord = AssignmentCoordinator(store)
        result = coord.commit(
            _a("N3", "T1", "10:30", "11:30", assignment_method="emergency"),
            allow_conflicts=True,
        )
        assert not result.is_valid
        assert store.get_assignment("N3") is not None

    def test_validation_always_blocks(self, store):
        coord = AssignmentCoordinator(store)
        with pytest.raises(ValidationError) as exc:
            coord.commit(_a("N4", "T2", "11:00", "13:00"), allow_conflicts=True)
        assert any("not contained" in e for e in exc.value.errors)
        assert store.get_assignment("N4") is None

    def test_unknown_block_rejected(self, store):
        notifier = Mock()
        coord = AssignmentCoordinator(store, notifier=notifier)
        with pytest.raises(ValidationError) as exc:
            coord.commit(_a("N9", "T2", "13:00", "18:00", block="NOPE"), allow_conflicts=True)
        assert exc.value.errors == ["Unknown time block NOPE"]
        assert store.get_assignment("N9") is None
        notifier.notify.assert_not_called()

    def test_locks_released_after_commit(self, store):
        coord = AssignmentCoordinator(store)
        coord.commit(_a("N10", "T2", "09:00", "10:00"))
        with pytest.raises(ConflictError):
            coord.commit(_a("N11", "T1", "10:30", "11:30"))
        gc.collect()
        assert len(coord._locks) == 0

    def test_notifier_called_after_commit(self, store):
        notifier = Mock()
        AssignmentCoordinator(store, notifier=notifier).commit(_a("N5", "T2", "09:00", "10:00"))
        notifier.notify.assert_called_once()
        assert notifier.notify.call_args[0][0].id == "N5"

    def test_notifier_failure_keeps_commit(self, store):
        notifier = Mock()
        notifier.notify.side_effect = RuntimeError("smtp down")
        coord = AssignmentCoordinator(store, notifier=notifier)
        result = coord.commit(_a("N6", "T2", "09:00", "10:00"))
        assert result.is_valid
        assert store.get_assignment("N6") is not None

    def test_rejected_commit_not_notified(self, store):
        notifier = Mock()
        with pytest.raises(ConflictError):
            AssignmentCoordinator(store, notifier=notifier).commit(_a("N7", "T1", "10:00", "10:30"))
        notifier.notify.assert_not_called()

    def test_concurrent_commits_for_one_therapist(self, store):
        """Two writers race for T2 at overlapping times: exactly one wins."""
        store.add_time_block(TimeBlock("B2", "P3", DAY, "09:00", "12:00"))
        coord = AssignmentCoordinator(store)
        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def writer(assignment):
            barrier.wait()
            try:
                coord.commit(assignment)
                status = "committed"
            except ConflictError:
                status = "rejected"
            with outcomes_lock:
                outcomes.append(status)

        threads = [
            threading.Thread(target=writer, args=(_a("R1", "T2", "09:00", "10:00"),)),
            threading.Thread(target=writer, args=(_a("R2", "T2", "09:30", "10:30", block="B2", patient="P3"),)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes) == ["committed", "rejected"]
        assert len(store.list_assignments(therapist_id="T2")) == 1


# ============================================================
# Transitions
# ============================================================

class TestTransition:

    def test_confirm_then_cancel(self, store):
        coord = AssignmentCoordinator(store)
        assert coord.transition("A1", "confirmed").status == "confirmed"
        assert store.get_assignment("A1").status == "confirmed"
        coord.transition("A1", "cancelled")
        # a cancelled session frees the therapist
        coord.commit(_a("N8", "T1", "10:00", "11:00"))
        assert store.get_assignment("N8") is not None

    def test_invalid_transition(self, store):
        coord = AssignmentCoordinator(store)
        coord.transition("A1", "cancelled")
        with pytest.raises(ValidationError):
            coord.transition("A1", "confirmed")

    def test_unknown_assignment(self, store):
        with pytest.raises(KeyError):
            AssignmentCoordinator(store).transition("nope", "confirmed")


# ============================================================
# Webhook notifier
# ============================================================

class TestWebhookNotifier:

    def test_headers(self):
        notifier = WebhookNotifier("https://example.test/hook", token="abc")
        assert notifier.session.headers["Authorization"] == "Bearer abc"

    def test_posts_payload(self):
        notifier = WebhookNotifier("https://example.test/hook", timeout=5)
        notifier.session = MagicMock()
        notifier.notify(_a("N1", "T2", "09:00", "10:00"))

        notifier.session.post.assert_called_once()
        args, kwargs = notifier.session.post.call_args
        assert args[0] == "https://example.test/hook"
        assert kwargs["timeout"] == 5
        assert kwargs["json"]["event"] == "assignment_committed"
        assert kwargs["json"]["assignment"]["therapist_id"] == "T2"
        assert kwargs["json"]["assignment"]["start_time"] == "09:00"
        notifier.session.post.return_value.raise_for_status.assert_called_once()

    def test_request_errors_propagate(self):
        notifier = WebhookNotifier("https://example.test/hook")
        notifier.session = MagicMock()
        notifier.session.post.side_effect = requests.exceptions.ConnectionError("down")
        with pytest.raises(requests.exceptions.RequestException):
            notifier.notify(_a("N1", "T2", "09:00", "10:00"))


# ============================================================
# Resolve and commit
# ============================================================

class TestResolveAndCommit:

    def test_fills_block_and_commits(self, store, roster):
        store.commit_assignment(_a("A2", "T1", "09:00", "10:30"))
        coord = AssignmentCoordinator(store, StaticCandidateSource(roster, store))
        outcome = coord.resolve_and_commit(start_date=DAY, end_date=DAY)

        assert outcome.report.gaps_found == 1
        # T1 is preferred but still with P2 until 11:00
        assert [a.therapist_id for a in outcome.committed] == ["T2"]
        assert outcome.rejected == []
        block = store.get_time_block("B1")
        assert find_gaps(block, store.list_assignments(patient_id="P1")) == []

    def test_patient_filter(self, store, roster):
        coord = AssignmentCoordinator(store, StaticCandidateSource(roster, store))
        outcome = coord.resolve_and_commit(patient_ids=["P2"], start_date=DAY, end_date=DAY)
        assert outcome.report.gaps_found == 0
        assert outcome.committed == []

    def test_needs_candidate_source(self, store):
        with pytest.raises(ValueError):
            AssignmentCoordinator(store).resolve_and_commit(start_date=DAY, end_date=DAY)
