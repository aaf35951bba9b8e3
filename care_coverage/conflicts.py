"""
conflicts.py — Conflict Detector

Hard conflicts (errors, block commitment):
  - validation_error:   the proposal breaks a model rule (see models.py)
  - therapist_conflict: same therapist, same date, overlapping range
  - patient_conflict:   same patient, same date, overlapping range, both
                        assignments need the patient's exclusive attention
  - block_overlap:      two assignments of the same block claim the same
                        instant and neither is flagged split coverage

Soft conflicts (warnings, do not block commitment):
  - unfamiliar_substitute: substitute/backup who has never seen this patient
  - tight_scheduling:      therapist has another session within 15 minutes
  - daily_limit_exceeded:  patient's scheduled hours for the day exceed 8
  - approaching_daily_limit: the total is above 80% of that limit

Overlap is half-open: [s1,e1) and [s2,e2) overlap iff s1 < e2 and e1 > s2,
so back-to-back sessions never conflict. Cancelled and no-show assignments
are excluded from the comparison set.

Everything here is a pure function of its arguments; callers hand in the
snapshot of existing assignments.

Usage:
  result = detect_conflicts(proposed, existing)
  if not result.is_valid:
      for c in result.errors:
          print(c)
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional

from care_coverage.models import Assignment, TimeBlock, format_time, validate_assignment
from care_coverage.policy import (
    CONFLICT_RULES,
    EXCLUSIVE_SERVICE_TYPES,
    SUBSTITUTE_TYPES,
    VOID_STATUSES,
)

logger = logging.getLogger(__name__)


class ConflictSeverity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Conflict:
    severity: ConflictSeverity
    conflict_type: str
    description: str
    therapist_id: Optional[str] = None
    patient_id: Optional[str] = None
    assignment_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    date: Optional[date] = None

    def __str__(self) -> str:
        parts = [f"[{self.severity.value.upper()}] {self.conflict_type}"]
        if self.date:
            parts.append(f"date={self.date}")
        if self.therapist_id:
            parts.append(f"therapist={self.therapist_id}")
        if self.patient_id:
            parts.append(f"patient={self.patient_id}")
        parts.append(f"→ {self.description}")
        return " | ".join(parts)


@dataclass
class ConflictResult:
    errors: List[Conflict] = field(default_factory=list)
    warnings: List[Conflict] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def of_type(self, conflict_type: str) -> List[Conflict]:
        return [c for c in self.errors + self.warnings if c.conflict_type == conflict_type]

    def add(self, conflict: Conflict) -> None:
        if conflict.severity == ConflictSeverity.ERROR:
            self.errors.append(conflict)
        else:
            self.warnings.append(conflict)


def _span(a: Assignment) -> str:
    return f"{format_time(a.start_time)}-{format_time(a.end_time)}"


class ConflictDetector:
    """
    Checks a proposed assignment against a snapshot of existing assignments.

    `rules` overrides entries of policy.CONFLICT_RULES (tolerance, buffer,
    patient daily limit).
    """

    def __init__(self, rules: Optional[Dict[str, Any]] = None):
        self.rules = {**CONFLICT_RULES, **(rules or {})}

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def detect(
        self,
        proposed: Assignment,
        existing: Iterable[Assignment],
        block: Optional[TimeBlock] = None,
    ) -> ConflictResult:
        existing = list(existing)
        result = ConflictResult()

        for message in validate_assignment(proposed, block, self.rules):
            result.add(Conflict(
                severity=ConflictSeverity.ERROR,
                conflict_type="validation_error",
                description=message,
                date=proposed.date,
                therapist_id=proposed.therapist_id,
                patient_id=proposed.patient_id,
                assignment_id=proposed.id,
            ))

        history = [a for a in existing if a.id != proposed.id and a.status not in VOID_STATUSES]
        same_day = [a for a in history if a.date == proposed.date]

        for other in same_day:
            for conflict in self._pair_errors(proposed, other):
                result.add(conflict)

        for conflict in self.check_unfamiliar_substitute(proposed, history):
            result.add(conflict)
        for conflict in self.check_tight_scheduling(proposed, same_day):
            result.add(conflict)
        for conflict in self.check_daily_limit(proposed, same_day):
            result.add(conflict)

        if result.errors:
            logger.debug(
                f"Proposal {proposed.id} ({proposed.therapist_id} {proposed.date} {_span(proposed)}): "
                f"{len(result.errors)} error(s), {len(result.warnings)} warning(s)"
            )
        return result

    def audit(self, assignments: Iterable[Assignment]) -> List[Conflict]:
        """
        Check a committed set against the no-double-booking invariants.
        Each offending pair is reported once.
        """
        live = [a for a in assignments if a.status not in VOID_STATUSES]
        by_date: Dict[date, List[Assignment]] = {}
        for a in live:
            by_date.setdefault(a.date, []).append(a)

        conflicts: List[Conflict] = []
        for day in sorted(by_date):
            day_items = sorted(by_date[day], key=lambda a: (a.start_time, a.id))
            for first, second in combinations(day_items, 2):
                conflicts.extend(self._pair_errors(second, first))

        if conflicts:
            logger.warning(f"Audit found {len(conflicts)} conflict(s) in {len(live)} assignment(s)")
        return conflicts

    # -----------------------------------------------------------------------
    # ERROR: double-booking checks
    # -----------------------------------------------------------------------

    def _pair_errors(self, proposed: Assignment, other: Assignment) -> List[Conflict]:
        if proposed.date != other.date or not proposed.time_range.overlaps(other.time_range):
            return []
        conflicts = []
        conflicts.extend(self.check_therapist_conflict(proposed, other))
        patient = self.check_patient_conflict(proposed, other)
        conflicts.extend(patient)
        if not patient:
            conflicts.extend(self.check_block_overlap(proposed, other))
        return conflicts

    def check_therapist_conflict(self, proposed: Assignment, other: Assignment) -> List[Conflict]:
        """Error: therapist booked for two overlapping sessions."""
        if proposed.therapist_id != other.therapist_id:
            return []
        return [Conflict(
            severity=ConflictSeverity.ERROR,
            conflict_type="therapist_conflict",
            description=(
                f"Therapist {proposed.therapist_id} already assigned {_span(other)} "
                f"(assignment {other.id}), overlaps {_span(proposed)}"
            ),
            date=proposed.date,
            therapist_id=proposed.therapist_id,
            patient_id=proposed.patient_id,
            assignment_id=proposed.id,
            details={"conflicting_assignment_id": other.id},
        )]

    def check_patient_conflict(self, proposed: Assignment, other: Assignment) -> List[Conflict]:
        """Error: patient in two overlapping sessions that each need exclusive attention."""
        if proposed.patient_id != other.patient_id:
            return []
        if (proposed.service_type not in EXCLUSIVE_SERVICE_TYPES
                or other.service_type not in EXCLUSIVE_SERVICE_TYPES):
            return []
        return [Conflict(
            severity=ConflictSeverity.ERROR,
            conflict_type="patient_conflict",
            description=(
                f"Patient {proposed.patient_id} already has a {other.service_type} session "
                f"{_span(other)} with {other.therapist_id} (assignment {other.id})"
            ),
            date=proposed.date,
            therapist_id=proposed.therapist_id,
            patient_id=proposed.patient_id,
            assignment_id=proposed.id,
            details={"conflicting_assignment_id": other.id},
        )]

    def check_block_overlap(self, proposed: Assignment, other: Assignment) -> List[Conflict]:
        """Error: two assignments claim the same instant of one block."""
        if proposed.time_block_id != other.time_block_id:
            return []
        if proposed.split_coverage or other.split_coverage:
            return []
        return [Conflict(
            severity=ConflictSeverity.ERROR,
            conflict_type="block_overlap",
            description=(
                f"Block {proposed.time_block_id} already covered {_span(other)} by "
                f"assignment {other.id}; mark split coverage to share it"
            ),
            date=proposed.date,
            therapist_id=proposed.therapist_id,
            patient_id=proposed.patient_id,
            assignment_id=proposed.id,
            details={"conflicting_assignment_id": other.id},
        )]

    # -----------------------------------------------------------------------
    # WARNING: soft rules
    # -----------------------------------------------------------------------

    def check_unfamiliar_substitute(
        self, proposed: Assignment, history: List[Assignment]
    ) -> List[Conflict]:
        """Warning: substitute/backup therapist with no history with this patient."""
        if proposed.assignment_type not in SUBSTITUTE_TYPES:
            return []
        seen = any(
            a.therapist_id == proposed.therapist_id and a.patient_id == proposed.patient_id
            for a in history
        )
        if seen:
            return []
        return [Conflict(
            severity=ConflictSeverity.WARNING,
            conflict_type="unfamiliar_substitute",
            description=(
                f"{proposed.assignment_type.capitalize()} therapist {proposed.therapist_id} "
                f"has not previously worked with patient {proposed.patient_id}"
            ),
            date=proposed.date,
            therapist_id=proposed.therapist_id,
            patient_id=proposed.patient_id,
            assignment_id=proposed.id,
        )]

    def check_tight_scheduling(
        self, proposed: Assignment, same_day: List[Assignment]
    ) -> List[Conflict]:
        """Warning: therapist has another session ending/starting within the buffer."""
        buffer = self.rules["tight_scheduling_buffer_minutes"]
        rng = proposed.time_range
        nearby = []
        for a in same_day:
            if a.therapist_id != proposed.therapist_id or a.time_range.overlaps(rng):
                continue
            other = a.time_range
            before = rng.start_minutes - other.end_minutes
            after = other.start_minutes - rng.end_minutes
            if 0 <= before <= buffer or 0 <= after <= buffer:
                nearby.append(a)
        if not nearby:
            return []
        return [Conflict(
            severity=ConflictSeverity.WARNING,
            conflict_type="tight_scheduling",
            description=(
                f"Therapist {proposed.therapist_id} has {len(nearby)} session(s) within "
                f"{buffer} minutes of {_span(proposed)}"
            ),
            date=proposed.date,
            therapist_id=proposed.therapist_id,
            patient_id=proposed.patient_id,
            assignment_id=proposed.id,
            details={"nearby": [{"assignment_id": a.id, "range": _span(a)} for a in nearby]},
        )]

    def check_daily_limit(
        self, proposed: Assignment, same_day: List[Assignment]
    ) -> List[Conflict]:
        """
        Warning: patient's scheduled hours for the day would exceed the limit,
        or come close to it (above the warning ratio of the limit).
        """
        limit = self.rules["patient_daily_limit_hours"]
        ratio = self.rules["patient_daily_limit_warning_ratio"]
        current = sum(a.duration_minutes for a in same_day if a.patient_id == proposed.patient_id) / 60
        new_hours = proposed.duration_minutes / 60
        total = current + new_hours
        if total > limit:
            conflict_type = "daily_limit_exceeded"
            description = (
                f"Patient {proposed.patient_id} will have {total:.1f} hours scheduled "
                f"(limit: {limit:g} hours)"
            )
        elif total > limit * ratio:
            conflict_type = "approaching_daily_limit"
            description = (
                f"Patient {proposed.patient_id} will have {total:.1f} hours scheduled "
                f"(approaching {limit:g} hour limit)"
            )
        else:
            return []
        return [Conflict(
            severity=ConflictSeverity.WARNING,
            conflict_type=conflict_type,
            description=description,
            date=proposed.date,
            therapist_id=proposed.therapist_id,
            patient_id=proposed.patient_id,
            assignment_id=proposed.id,
            details={"current_hours": current, "new_hours": new_hours, "total_hours": total, "limit": limit},
        )]


def detect_conflicts(
    proposed: Assignment,
    existing: Iterable[Assignment],
    block: Optional[TimeBlock] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> ConflictResult:
    """Module-level convenience wrapper around ConflictDetector.detect()."""
    return ConflictDetector(rules).detect(proposed, existing, block)


class ConflictError(Exception):
    """Raised by the orchestration layer when a commit is refused. Carries the ConflictResult."""

    def __init__(self, result: ConflictResult, message: str = ""):
        self.result = result
        detail = "; ".join(str(c) for c in result.errors)
        super().__init__(message or f"Assignment rejected: {detail}")
