"""
engine.py — Auto-Assignment Engine

Picks the best therapist for one uncovered gap.

Selection:
  1. Drop excluded therapists (and those not qualified for the service type)
  2. Drop therapists whose availability does not fully cover the gap
  3. Build the would-be assignment for each survivor and run the Conflict
     Detector against the existing-assignments snapshot; drop hard errors
  4. Score survivors (weights in policy.ASSIGNMENT_WEIGHTS):
       base 50
       +30 preferred therapist
       +10 continuity: ≥1 assignment with this patient in the last 7 days
       −5  per assignment already on the therapist's day (floor 0)
       +5  gap inside the therapist's optimal working hours
  5. Highest score wins; ties → lowest daily workload → therapist id
  6. confidence = score / 100, clamped to [0, 1]

The proposal returned is exactly the assignment that passed step 3, so the
detector never disagrees with a proposal on the same snapshot.

Nobody fitting is a normal outcome: NoCandidateFound is returned, not raised.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from care_coverage.conflicts import ConflictDetector
from care_coverage.models import (
    REASON_ALL_CONFLICT,
    REASON_NO_QUALIFIED,
    REASON_NONE_AVAILABLE,
    Assignment,
    AssignmentProposal,
    GapDescriptor,
    NoCandidateFound,
    TherapistCandidate,
    ValidationError,
)
from care_coverage.policy import ACTIVE_STATUSES, ASSIGNMENT_WEIGHTS, VOID_STATUSES

logger = logging.getLogger(__name__)


def new_assignment_id() -> str:
    return uuid.uuid4().hex


@dataclass
class AutoAssignOptions:
    weights: Dict[str, float] = field(default_factory=lambda: dict(ASSIGNMENT_WEIGHTS))
    assignment_type: str = "primary"
    conflict_rules: Optional[Dict[str, Any]] = None
    max_alternatives: int = 3
    id_factory: Callable[[], str] = new_assignment_id

    def weight(self, key: str) -> float:
        return self.weights.get(key, ASSIGNMENT_WEIGHTS[key])


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def daily_workload(
    candidate: TherapistCandidate,
    gap: GapDescriptor,
    existing: Iterable[Assignment],
) -> int:
    """Reported workload, else active assignments on the therapist's day in the snapshot."""
    if candidate.daily_workload is not None:
        return candidate.daily_workload
    return sum(
        1 for a in existing
        if a.therapist_id == candidate.therapist_id
        and a.date == gap.date
        and a.status in ACTIVE_STATUSES
    )


def has_recent_history(
    candidate: TherapistCandidate,
    patient_id: str,
    gap: GapDescriptor,
    existing: Iterable[Assignment],
    window_days: int,
) -> bool:
    """True if the therapist saw this patient within `window_days` before the gap."""
    window_start = gap.date - timedelta(days=window_days) if gap.date else None
    for a in existing:
        if a.therapist_id != candidate.therapist_id or a.patient_id != patient_id:
            continue
        if a.status in VOID_STATUSES:
            continue
        if gap.date is None or window_start <= a.date <= gap.date:
            return True
    return False


def score_candidate(
    candidate: TherapistCandidate,
    gap: GapDescriptor,
    patient_id: str,
    existing: List[Assignment],
    options: Optional[AutoAssignOptions] = None,
) -> Tuple[float, Dict[str, float]]:
    """Return (score, breakdown). Score is floored at 0."""
    options = options or AutoAssignOptions()
    breakdown: Dict[str, float] = {"base": options.weight("base")}

    if candidate.is_preferred:
        breakdown["preferred"] = options.weight("preferred_bonus")

    window = int(options.weight("continuity_window_days"))
    if has_recent_history(candidate, patient_id, gap, existing, window):
        breakdown["continuity"] = options.weight("continuity_bonus")

    workload = daily_workload(candidate, gap, existing)
    if workload:
        breakdown["fatigue"] = -options.weight("fatigue_penalty") * workload

    if candidate.optimal_hours is not None and candidate.optimal_hours.contains(gap.time_range):
        breakdown["optimal_hours"] = options.weight("optimal_hours_bonus")

    score = max(0.0, sum(breakdown.values()))
    return score, breakdown


def confidence_from_score(score: float) -> float:
    return min(1.0, max(0.0, score / 100.0))


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def auto_assign(
    gap: GapDescriptor,
    patient_id: str,
    candidates: Iterable[TherapistCandidate],
    existing: Iterable[Assignment],
    options: Optional[AutoAssignOptions] = None,
) -> Union[AssignmentProposal, NoCandidateFound]:
    """
    Choose and score the best therapist for `gap`.

    Returns an AssignmentProposal (assignment_method='auto') or
    NoCandidateFound with reason no_qualified_candidate / none_available /
    all_conflict.

    Raises:
        ValidationError if the gap carries no date.
    """
    if gap.date is None:
        raise ValidationError([f"Gap {gap} has no date; cannot build an assignment"])

    options = options or AutoAssignOptions()
    existing = list(existing)
    candidates = list(candidates)
    detector = ConflictDetector(options.conflict_rules)

    # Step 1: exclusions / qualification
    qualified = [
        c for c in candidates
        if not c.is_excluded and c.is_qualified_for(gap.service_type)
    ]
    if not qualified:
        logger.debug(f"Gap {gap}: none of {len(candidates)} candidate(s) qualified")
        return NoCandidateFound(gap, REASON_NO_QUALIFIED, {
            "candidates": len(candidates),
            "excluded": sorted(c.therapist_id for c in candidates if c.is_excluded),
        })

    # Step 2: availability
    available = [c for c in qualified if c.is_available_for(gap.time_range)]
    if not available:
        logger.debug(f"Gap {gap}: {len(qualified)} qualified, none available")
        return NoCandidateFound(gap, REASON_NONE_AVAILABLE, {
            "qualified": sorted(c.therapist_id for c in qualified),
        })

    # Steps 3-4: conflicts, then score
    scored: List[Tuple[float, int, str, AssignmentProposal]] = []
    rejected: Dict[str, List[str]] = {}
    for candidate in available:
        score, breakdown = score_candidate(candidate, gap, patient_id, existing, options)
        assignment = Assignment(
            id=options.id_factory(),
            time_block_id=gap.time_block_id,
            patient_id=patient_id,
            therapist_id=candidate.therapist_id,
            date=gap.date,
            start_time=gap.start_time,
            end_time=gap.end_time,
            assignment_type=options.assignment_type,
            status="assigned",
            assignment_method="auto",
            confidence_score=confidence_from_score(score),
            service_type=gap.service_type,
            location_id=gap.location_id,
        )
        result = detector.detect(assignment, existing)
        if not result.is_valid:
            rejected[candidate.therapist_id] = [c.conflict_type for c in result.errors]
            logger.debug(f"  {candidate.therapist_id}: rejected ({', '.join(rejected[candidate.therapist_id])})")
            continue
        logger.debug(f"  {candidate.therapist_id}: score {score:g} {breakdown}")
        proposal = AssignmentProposal(
            assignment=assignment,
            score=score,
            gap=gap,
            score_breakdown=breakdown,
            warnings=list(result.warnings),
        )
        scored.append((score, daily_workload(candidate, gap, existing), candidate.therapist_id, proposal))

    if not scored:
        logger.debug(f"Gap {gap}: all {len(available)} available candidate(s) conflict")
        return NoCandidateFound(gap, REASON_ALL_CONFLICT, {"conflicts": rejected})

    # Step 5: rank
    scored.sort(key=lambda row: (-row[0], row[1], row[2]))
    best = scored[0][3]
    best.alternatives = [(row[2], row[0]) for row in scored[1:1 + options.max_alternatives]]
    logger.debug(
        f"Gap {gap}: proposing {best.therapist_id} (score {best.score:g}, "
        f"confidence {best.confidence_score:.2f})"
    )
    return best
