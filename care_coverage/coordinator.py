"""
coordinator.py — Orchestration layer around the pure engine

Owns persistence and notification. Every commit is a single serialized unit:

  lock (patient, date) + (therapist, date)   sorted order, so no deadlock
    read snapshot from the store
    run the Conflict Detector
    commit
  unlock
  notify (fire-and-forget; failures are logged, the commit stands)

Locks are logical and per key, so commits for unrelated therapists/patients
run in parallel.

Usage:
  coord = AssignmentCoordinator(store, candidate_source, notifier)
  coord.commit(assignment)
  outcome = coord.resolve_and_commit(start_date=d, end_date=d)
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from care_coverage.conflicts import ConflictDetector, ConflictError, ConflictResult
from care_coverage.engine import AutoAssignOptions
from care_coverage.models import Assignment, ValidationError, transition_status
from care_coverage.resolver import DEFAULT_MAX_WORKERS, ResolutionReport, resolve_gaps
from care_coverage.store import InMemoryScheduleStore

logger = logging.getLogger(__name__)

LockKey = Tuple[str, str, date]


@dataclass
class CommitOutcome:
    report: ResolutionReport
    committed: List[Assignment] = field(default_factory=list)
    rejected: List[Tuple[Assignment, ConflictResult]] = field(default_factory=list)


class AssignmentCoordinator:
    def __init__(
        self,
        store: InMemoryScheduleStore,
        candidate_source: Any = None,
        notifier: Any = None,
        options: Optional[AutoAssignOptions] = None,
    ):
        self.store = store
        self.candidate_source = candidate_source
        self.notifier = notifier
        self.options = options or AutoAssignOptions()
        self.detector = ConflictDetector(self.options.conflict_rules)
        self._guard = threading.Lock()
        # entries disappear once no commit holds a reference to the lock
        self._locks = weakref.WeakValueDictionary()

    # -----------------------------------------------------------------------
    # Locking
    # -----------------------------------------------------------------------

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, assignment: Assignment):
        keys = sorted({
            ("patient", assignment.patient_id, assignment.date),
            ("therapist", assignment.therapist_id, assignment.date),
        })
        held = []
        try:
            for key in keys:
                lock = self._lock_for(key)
                lock.acquire()
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()

    def _snapshot(self, assignment: Assignment) -> List[Assignment]:
        """Therapist's day plus the patient's full history (for substitute checks)."""
        merged: Dict[str, Assignment] = {}
        for a in self.store.list_assignments(
            therapist_id=assignment.therapist_id,
            start_date=assignment.date,
            end_date=assignment.date,
        ):
            merged[a.id] = a
        for a in self.store.list_assignments(patient_id=assignment.patient_id):
            merged[a.id] = a
        return list(merged.values())

    # -----------------------------------------------------------------------
    # Commit / transition
    # -----------------------------------------------------------------------

    def commit(self, assignment: Assignment, allow_conflicts: bool = False) -> ConflictResult:
        """
        Check and commit one assignment.

        allow_conflicts=True is the emergency override: double-booking errors
        are recorded but do not block. Validation errors always block.

        Raises:
            ValidationError if the assignment breaks a model rule.
            ConflictError if it double-books and allow_conflicts is False.
        """
        with self._locked(assignment):
            block = self.store.get_time_block(assignment.time_block_id)
            if block is None:
                raise ValidationError([f"Unknown time block {assignment.time_block_id}"])
            result = self.detector.detect(assignment, self._snapshot(assignment), block)

            invalid = result.of_type("validation_error")
            if invalid:
                raise ValidationError([c.description for c in invalid])
            if result.errors and not allow_conflicts:
                logger.warning(f"Rejected {assignment.id}: {len(result.errors)} conflict(s)")
                raise ConflictError(result)
            if result.errors:
                logger.warning(f"Override: committing {assignment.id} with {len(result.errors)} conflict(s)")

            self.store.commit_assignment(assignment)

        self._notify(assignment)
        return result

    def _notify(self, assignment: Assignment) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(assignment)
        except Exception as e:
            logger.warning(f"Notification failed for {assignment.id} (commit kept): {e}")

    def transition(self, assignment_id: str, new_status: str) -> Assignment:
        """Move a stored assignment to a new status. Raises KeyError / ValidationError."""
        current = self.store.get_assignment(assignment_id)
        if current is None:
            raise KeyError(assignment_id)
        with self._locked(current):
            current = self.store.get_assignment(assignment_id)
            updated = transition_status(current, new_status)
            self.store.update_assignment(updated)
        logger.info(f"Assignment {assignment_id}: {current.status} → {new_status}")
        return updated

    # -----------------------------------------------------------------------
    # Bulk resolution
    # -----------------------------------------------------------------------

    def resolve_and_commit(
        self,
        patient_ids: Optional[Iterable[str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        min_confidence: float = 0.0,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> CommitOutcome:
        """
        Resolve every gap in range, then commit the proposals one by one.
        Proposals that lost a race with another writer come back in `rejected`.
        """
        if self.candidate_source is None:
            raise ValueError("resolve_and_commit needs a candidate source")

        if patient_ids is None:
            blocks = self.store.list_time_blocks(start_date=start_date, end_date=end_date)
        else:
            blocks = [
                b for pid in patient_ids
                for b in self.store.list_time_blocks(pid, start_date, end_date)
            ]

        window = int(self.options.weight("continuity_window_days"))
        history_start = start_date - timedelta(days=window) if start_date else None
        snapshot = self.store.list_assignments(start_date=history_start, end_date=end_date)

        report = resolve_gaps(
            blocks, snapshot, self.candidate_source, self.options,
            min_confidence=min_confidence, max_workers=max_workers,
            start_date=start_date, end_date=end_date,
        )

        outcome = CommitOutcome(report=report)
        for proposal in report.proposals:
            try:
                self.commit(proposal.assignment)
                outcome.committed.append(proposal.assignment)
            except ConflictError as e:
                outcome.rejected.append((proposal.assignment, e.result))

        logger.info(
            f"Committed {len(outcome.committed)} of {report.resolved_count} proposal(s); "
            f"{len(outcome.rejected)} rejected"
        )
        return outcome
