"""
store.py — Schedule store, candidate source and notification channel

The engine never reads or writes these itself; the coordinator and the
dry-run CLI wire them up.

  InMemoryScheduleStore   reference store (range/equality lookups, commit)
  StaticCandidateSource   TherapistCandidates from a roster + store workload
  WebhookNotifier         POSTs committed assignments to an HTTP endpoint

Roster entry (see config.load_therapists):
  {
    "therapist_id": "T1",
    "name": "Jordan Lee",
    "availability": [TimeRange, ...],
    "optimal_hours": TimeRange | None,
    "service_types": frozenset | None,
    "preferred_patients": {"P1", ...},
    "excluded_patients": {"P9", ...},
    "unavailable_dates": {date, ...},
  }
"""

import logging
import threading
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import requests

from care_coverage.models import Assignment, TherapistCandidate, TimeBlock, TimeRange, format_time
from care_coverage.policy import ACTIVE_STATUSES

logger = logging.getLogger(__name__)


def assignment_to_dict(a: Assignment) -> Dict[str, Any]:
    return {
        "id": a.id,
        "time_block_id": a.time_block_id,
        "patient_id": a.patient_id,
        "therapist_id": a.therapist_id,
        "date": a.date.isoformat(),
        "start_time": format_time(a.start_time),
        "end_time": format_time(a.end_time),
        "duration_minutes": a.duration_minutes,
        "assignment_type": a.assignment_type,
        "status": a.status,
        "assignment_method": a.assignment_method,
        "confidence_score": a.confidence_score,
        "service_type": a.service_type,
        "location_id": a.location_id,
    }


# ---------------------------------------------------------------------------
# Schedule store
# ---------------------------------------------------------------------------

class InMemoryScheduleStore:
    """Dict-backed store. Internal lock keeps each call atomic, nothing more."""

    def __init__(
        self,
        time_blocks: Optional[Iterable[TimeBlock]] = None,
        assignments: Optional[Iterable[Assignment]] = None,
    ):
        self._lock = threading.RLock()
        self._blocks: Dict[str, TimeBlock] = {}
        self._assignments: Dict[str, Assignment] = {}
        for b in time_blocks or []:
            self.add_time_block(b)
        for a in assignments or []:
            self._assignments[a.id] = a

    def add_time_block(self, block: TimeBlock) -> str:
        with self._lock:
            self._blocks[block.id] = block
        return block.id

    def get_time_block(self, block_id: str) -> Optional[TimeBlock]:
        with self._lock:
            return self._blocks.get(block_id)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        with self._lock:
            return self._assignments.get(assignment_id)

    def list_time_blocks(
        self,
        patient_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[TimeBlock]:
        with self._lock:
            blocks = list(self._blocks.values())
        return sorted(
            (
                b for b in blocks
                if (patient_id is None or b.patient_id == patient_id)
                and (start_date is None or b.date >= start_date)
                and (end_date is None or b.date <= end_date)
            ),
            key=lambda b: (b.date, b.start_time, b.id),
        )

    def list_assignments(
        self,
        therapist_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[Assignment]:
        with self._lock:
            items = list(self._assignments.values())
        return sorted(
            (
                a for a in items
                if (therapist_id is None or a.therapist_id == therapist_id)
                and (patient_id is None or a.patient_id == patient_id)
                and (start_date is None or a.date >= start_date)
                and (end_date is None or a.date <= end_date)
            ),
            key=lambda a: (a.date, a.start_time, a.id),
        )

    def commit_assignment(self, assignment: Assignment) -> str:
        """Store a new assignment. Raises ValueError if the id is taken."""
        with self._lock:
            if assignment.id in self._assignments:
                raise ValueError(f"Assignment {assignment.id} already exists")
            self._assignments[assignment.id] = assignment
        logger.info(
            f"Committed {assignment.id}: {assignment.therapist_id} → {assignment.patient_id} "
            f"{assignment.date} {format_time(assignment.start_time)}-{format_time(assignment.end_time)}"
        )
        return assignment.id

    def update_assignment(self, assignment: Assignment) -> None:
        """Replace a stored assignment (status changes). Raises KeyError if unknown."""
        with self._lock:
            if assignment.id not in self._assignments:
                raise KeyError(assignment.id)
            self._assignments[assignment.id] = assignment


# ---------------------------------------------------------------------------
# Candidate source
# ---------------------------------------------------------------------------

class StaticCandidateSource:
    """
    Builds TherapistCandidates from a roster. Daily workload comes from the
    store's active assignments when a store is given, else is left for the
    engine to count from its snapshot.
    """

    def __init__(self, roster: List[Dict[str, Any]], store: Optional[InMemoryScheduleStore] = None):
        self.roster = roster
        self.store = store

    def _workload(self, therapist_id: str, day: date) -> Optional[int]:
        if self.store is None:
            return None
        return sum(
            1 for a in self.store.list_assignments(therapist_id=therapist_id, start_date=day, end_date=day)
            if a.status in ACTIVE_STATUSES
        )

    def list_eligible_therapists(
        self,
        patient_id: str,
        day: date,
        time_range: Optional[TimeRange] = None,
    ) -> List[TherapistCandidate]:
        candidates = []
        for person in self.roster:
            if day in person.get("unavailable_dates", ()):
                continue
            tid = person["therapist_id"]
            candidates.append(TherapistCandidate(
                therapist_id=tid,
                name=person.get("name", ""),
                availability=list(person.get("availability", [])),
                is_preferred=patient_id in person.get("preferred_patients", ()),
                is_excluded=patient_id in person.get("excluded_patients", ()),
                daily_workload=self._workload(tid, day),
                optimal_hours=person.get("optimal_hours"),
                service_types=person.get("service_types"),
            ))
        logger.debug(
            f"{len(candidates)} candidate(s) for {patient_id} on {day}"
            + (f" {time_range}" if time_range else "")
        )
        return candidates


# ---------------------------------------------------------------------------
# Notification channel
# ---------------------------------------------------------------------------

class WebhookNotifier:
    """
    Posts each committed assignment as JSON to `url`.
    Errors propagate; the coordinator logs them and keeps the commit.
    """

    def __init__(self, url: str, token: Optional[str] = None, timeout: int = 10):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def notify(self, assignment: Assignment) -> None:
        payload = {"event": "assignment_committed", "assignment": assignment_to_dict(assignment)}
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Error notifying {self.url} about {assignment.id}: {e}")
            raise
        logger.info(f"Notified {assignment.therapist_id} of assignment {assignment.id}")
