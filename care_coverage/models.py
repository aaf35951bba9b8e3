"""
models.py — Time Block & Assignment Model

Shared types every other module operates on:

  TimeRange           half-open [start, end) interval within one day
  TimeBlock           a patient's required care window on a date
  Assignment          a therapist's commitment to cover part/all of a block
  GapDescriptor       an uncovered sub-interval of a block (derived)
  TherapistCandidate  a therapist offered for a gap by the candidate source
  AssignmentProposal  auto-assignment result
  NoCandidateFound    auto-assignment "nobody fits" result (not an exception)

Validation collects EVERY violated rule before raising ValidationError, so
callers can show the whole list at once.

Usage:
  block = TimeBlock("b1", "p1", "2024-01-15", "09:00", "12:00")
  a = create_assignment(block=block, id="a1", therapist_id="t1",
                        start_time="09:00", end_time="10:30")
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from care_coverage.policy import (
    ACTIVE_STATUSES,
    ASSIGNMENT_METHODS,
    ASSIGNMENT_STATUSES,
    ASSIGNMENT_TYPES,
    CONFLICT_RULES,
    PRIORITIES,
    SERVICE_TYPES,
    STATUS_TRANSITIONS,
    VOID_STATUSES,
)

logger = logging.getLogger(__name__)

TimeLike = Union[str, time]
DateLike = Union[str, date]

REASON_NO_QUALIFIED = "no_qualified_candidate"
REASON_NONE_AVAILABLE = "none_available"
REASON_ALL_CONFLICT = "all_conflict"

GAP_UNCOVERED = "uncovered"
GAP_PARTIAL = "partial"


class ValidationError(ValueError):
    """Malformed input. `errors` lists every violated rule, not just the first."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_time(value: TimeLike) -> time:
    """Accept a time or an "HH:MM" / "HH:MM:SS" string."""
    if isinstance(value, time):
        return value
    s = str(value).strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(s, fmt).time()
        except ValueError:
            continue
    raise ValidationError([f"Invalid time {value!r} (expected HH:MM)"])


def parse_date(value: DateLike) -> date:
    """Accept a date, datetime or ISO "YYYY-MM-DD" string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError([f"Invalid date {value!r} (expected YYYY-MM-DD)"])


def to_minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def from_minutes(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def format_time(t: time) -> str:
    return t.strftime("%H:%M")


# ---------------------------------------------------------------------------
# TimeRange
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeRange:
    """Half-open [start, end) interval. Touching endpoints do not overlap."""

    start: time
    end: time

    def __post_init__(self):
        object.__setattr__(self, "start", parse_time(self.start))
        object.__setattr__(self, "end", parse_time(self.end))

    @property
    def start_minutes(self) -> int:
        return to_minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return to_minutes(self.end)

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes - self.start_minutes

    def is_empty(self) -> bool:
        return self.end_minutes <= self.start_minutes

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start_minutes < other.end_minutes and self.end_minutes > other.start_minutes

    def contains(self, other: "TimeRange") -> bool:
        return self.start_minutes <= other.start_minutes and other.end_minutes <= self.end_minutes

    def __str__(self) -> str:
        return f"{format_time(self.start)}-{format_time(self.end)}"

    @classmethod
    def parse(cls, raw: str) -> "TimeRange":
        """Parse "09:00-12:00"."""
        try:
            start, end = raw.split("-")
        except ValueError:
            raise ValidationError([f"Invalid time range {raw!r} (expected HH:MM-HH:MM)"])
        return cls(start.strip(), end.strip())


# ---------------------------------------------------------------------------
# TimeBlock
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeBlock:
    id: str
    patient_id: str
    date: date
    start_time: time
    end_time: time
    service_type: str = "direct"
    priority: str = "medium"
    location_id: Optional[str] = None
    can_split: bool = False

    def __post_init__(self):
        object.__setattr__(self, "date", parse_date(self.date))
        object.__setattr__(self, "start_time", parse_time(self.start_time))
        object.__setattr__(self, "end_time", parse_time(self.end_time))

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start_time, self.end_time)

    @property
    def duration_minutes(self) -> int:
        return self.time_range.duration_minutes


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assignment:
    id: str
    time_block_id: str
    patient_id: str
    therapist_id: str
    date: date
    start_time: time
    end_time: time
    duration_minutes: Optional[int] = None
    assignment_type: str = "primary"
    status: str = "assigned"
    assignment_method: str = "manual"
    confidence_score: Optional[float] = None
    service_type: str = "direct"
    location_id: Optional[str] = None
    billable_hours: Optional[float] = None
    contract_hours: Optional[float] = None
    split_coverage: bool = False
    travel_time_minutes: int = 0
    setup_time_minutes: int = 0

    def __post_init__(self):
        object.__setattr__(self, "date", parse_date(self.date))
        object.__setattr__(self, "start_time", parse_time(self.start_time))
        object.__setattr__(self, "end_time", parse_time(self.end_time))
        if self.duration_minutes is None:
            object.__setattr__(self, "duration_minutes", max(0, self.time_range.duration_minutes))

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start_time, self.end_time)

    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_void(self) -> bool:
        return self.status in VOID_STATUSES

    def total_time_minutes(self) -> int:
        """Duration plus travel and setup time."""
        return self.duration_minutes + (self.travel_time_minutes or 0) + (self.setup_time_minutes or 0)


# ---------------------------------------------------------------------------
# Derived / engine records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GapDescriptor:
    start_time: time
    end_time: time
    duration_minutes: int
    kind: str
    time_block_id: Optional[str] = None
    patient_id: Optional[str] = None
    service_type: str = "direct"
    priority: str = "medium"
    location_id: Optional[str] = None
    date: Optional[date] = None

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start_time, self.end_time)

    def __str__(self) -> str:
        where = f"{self.date} " if self.date else ""
        return f"{where}{self.time_range} ({self.duration_minutes} min, {self.kind})"


@dataclass
class TherapistCandidate:
    """
    A therapist offered for a gap.

    daily_workload: assignments already on the therapist's day as reported
                    by the candidate source. None → counted from the
                    existing-assignments snapshot.
    service_types:  service types the therapist may deliver (None = any).
    """

    therapist_id: str
    availability: List[TimeRange] = field(default_factory=list)
    is_preferred: bool = False
    is_excluded: bool = False
    daily_workload: Optional[int] = None
    optimal_hours: Optional[TimeRange] = None
    service_types: Optional[frozenset] = None
    name: str = ""

    def __post_init__(self):
        self.availability = [
            w if isinstance(w, TimeRange) else TimeRange(*w) for w in self.availability
        ]
        if self.optimal_hours is not None and not isinstance(self.optimal_hours, TimeRange):
            self.optimal_hours = TimeRange(*self.optimal_hours)

    def merged_availability(self) -> List[TimeRange]:
        """Availability windows with touching or overlapping windows joined."""
        merged: List[List[int]] = []
        for window in sorted(self.availability, key=lambda w: (w.start_minutes, w.end_minutes)):
            if window.is_empty():
                continue
            if merged and window.start_minutes <= merged[-1][1]:
                merged[-1][1] = max(merged[-1][1], window.end_minutes)
            else:
                merged.append([window.start_minutes, window.end_minutes])
        return [TimeRange(from_minutes(s), from_minutes(e)) for s, e in merged]

    def is_available_for(self, time_range: TimeRange) -> bool:
        return any(window.contains(time_range) for window in self.merged_availability())

    def is_qualified_for(self, service_type: str) -> bool:
        return self.service_types is None or service_type in self.service_types


@dataclass
class AssignmentProposal:
    assignment: Assignment
    score: float
    gap: GapDescriptor
    score_breakdown: Dict[str, float] = field(default_factory=dict)
    warnings: List[Any] = field(default_factory=list)
    alternatives: List[Tuple[str, float]] = field(default_factory=list)

    @property
    def therapist_id(self) -> str:
        return self.assignment.therapist_id

    @property
    def confidence_score(self) -> float:
        return self.assignment.confidence_score or 0.0


@dataclass
class NoCandidateFound:
    gap: GapDescriptor
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"No candidate for {self.gap}: {self.reason}"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_time_block(block: TimeBlock) -> List[str]:
    errors = []
    if block.time_range.is_empty():
        errors.append(
            f"Block {block.id}: end time {format_time(block.end_time)} must be after "
            f"start time {format_time(block.start_time)}"
        )
    if block.priority not in PRIORITIES:
        errors.append(f"Block {block.id}: unknown priority {block.priority!r}")
    if block.service_type not in SERVICE_TYPES:
        errors.append(f"Block {block.id}: unknown service type {block.service_type!r}")
    return errors


def validate_assignment(
    assignment: Assignment,
    block: Optional[TimeBlock] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> List[str]:
    """
    Check an assignment against the model rules. Returns every violation.

    Rules:
      - start < end
      - stored duration matches end − start within the tolerance
      - range contained in the parent block (when given), same date/patient
      - confidence_score in [0, 1] when present
      - billable/contract hours not above the duration in hours
      - known status / type / method / service type
    """
    rules = {**CONFLICT_RULES, **(rules or {})}
    tolerance = rules["duration_tolerance_minutes"]
    errors: List[str] = []
    rng = assignment.time_range

    if rng.is_empty():
        errors.append(
            f"End time {format_time(assignment.end_time)} must be after "
            f"start time {format_time(assignment.start_time)}"
        )

    calculated = rng.duration_minutes
    if abs(calculated - assignment.duration_minutes) > tolerance:
        errors.append(
            f"Duration mismatch: calculated {calculated} minutes, "
            f"stored {assignment.duration_minutes} minutes"
        )

    if block is not None:
        if not block.time_range.contains(rng):
            errors.append(
                f"Assignment range {rng} is not contained in block {block.id} range {block.time_range}"
            )
        if assignment.date != block.date:
            errors.append(f"Assignment date {assignment.date} differs from block date {block.date}")
        if assignment.patient_id != block.patient_id:
            errors.append(
                f"Assignment patient {assignment.patient_id} differs from block patient {block.patient_id}"
            )

    if assignment.confidence_score is not None and not 0.0 <= assignment.confidence_score <= 1.0:
        errors.append(f"Confidence score {assignment.confidence_score} must be between 0 and 1")

    duration_hours = assignment.duration_minutes / 60
    if assignment.billable_hours is not None and assignment.billable_hours > duration_hours:
        errors.append(
            f"Billable hours {assignment.billable_hours} cannot exceed assignment duration "
            f"({duration_hours:.2f} h)"
        )
    if assignment.contract_hours is not None and assignment.contract_hours > duration_hours:
        errors.append(
            f"Contract hours {assignment.contract_hours} cannot exceed assignment duration "
            f"({duration_hours:.2f} h)"
        )

    if assignment.status not in ASSIGNMENT_STATUSES:
        errors.append(f"Unknown status {assignment.status!r}")
    if assignment.assignment_type not in ASSIGNMENT_TYPES:
        errors.append(f"Unknown assignment type {assignment.assignment_type!r}")
    if assignment.assignment_method not in ASSIGNMENT_METHODS:
        errors.append(f"Unknown assignment method {assignment.assignment_method!r}")
    if assignment.service_type not in SERVICE_TYPES:
        errors.append(f"Unknown service type {assignment.service_type!r}")

    return errors


def create_assignment(block: Optional[TimeBlock] = None, **fields: Any) -> Assignment:
    """
    Build and validate an Assignment. Block-derived fields (time_block_id,
    patient_id, date, service_type, location_id) default from `block`.

    Raises:
        ValidationError listing every violated rule.
    """
    if block is not None:
        fields.setdefault("time_block_id", block.id)
        fields.setdefault("patient_id", block.patient_id)
        fields.setdefault("date", block.date)
        fields.setdefault("service_type", block.service_type)
        fields.setdefault("location_id", block.location_id)

    missing = [
        name for name in ("id", "time_block_id", "patient_id", "therapist_id",
                          "date", "start_time", "end_time")
        if fields.get(name) in (None, "")
    ]
    if missing:
        raise ValidationError([f"Missing required field '{name}'" for name in missing])

    assignment = Assignment(**fields)
    errors = validate_assignment(assignment, block)
    if errors:
        raise ValidationError(errors)
    return assignment


def transition_status(assignment: Assignment, new_status: str) -> Assignment:
    """Return a copy with the new status; illegal transitions raise ValidationError."""
    if new_status not in ASSIGNMENT_STATUSES:
        raise ValidationError([f"Unknown status {new_status!r}"])
    allowed = STATUS_TRANSITIONS.get(assignment.status, frozenset())
    if new_status not in allowed:
        raise ValidationError([
            f"Assignment {assignment.id}: cannot move from {assignment.status!r} to {new_status!r}"
        ])
    logger.debug(f"Assignment {assignment.id}: {assignment.status} → {new_status}")
    return replace(assignment, status=new_status)


def active_only(assignments: Iterable[Assignment]) -> List[Assignment]:
    return [a for a in assignments if a.is_active()]
