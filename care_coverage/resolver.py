"""
resolver.py — Bulk gap resolution ("resolve all gaps for today")

  1. analyse every block → gaps, ordered critical-first then date/start
  2. evaluate auto_assign for all gaps in parallel against ONE snapshot
  3. accept proposals one at a time: re-check each against the snapshot plus
     everything already accepted; a proposal that went stale (e.g. two gaps
     picked the same therapist for overlapping time) is re-run against the
     grown snapshot
  4. proposals under min_confidence are reported unresolved

Step 3 is serial, so one therapist is never handed overlapping work in a
single run. Nothing here writes to a store; the coordinator commits.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from care_coverage.conflicts import ConflictDetector
from care_coverage.engine import AutoAssignOptions, auto_assign
from care_coverage.gaps import detect_coverage_gaps, sort_by_severity
from care_coverage.models import (
    Assignment,
    AssignmentProposal,
    GapDescriptor,
    NoCandidateFound,
    TherapistCandidate,
    TimeBlock,
)

logger = logging.getLogger(__name__)

REASON_LOW_CONFIDENCE = "low_confidence"
DEFAULT_MAX_WORKERS = 4

Outcome = Union[AssignmentProposal, NoCandidateFound]


@dataclass
class ResolutionReport:
    blocks_analyzed: int
    gaps_found: int
    proposals: List[AssignmentProposal] = field(default_factory=list)
    unresolved: List[NoCandidateFound] = field(default_factory=list)
    reevaluated: int = 0

    @property
    def resolved_count(self) -> int:
        return len(self.proposals)

    @property
    def unresolved_count(self) -> int:
        return len(self.unresolved)

    @property
    def assignments(self) -> List[Assignment]:
        return [p.assignment for p in self.proposals]

    def summary(self) -> Dict[str, Any]:
        return {
            "blocks_analyzed": self.blocks_analyzed,
            "gaps_found": self.gaps_found,
            "resolved": self.resolved_count,
            "unresolved": self.unresolved_count,
            "reevaluated": self.reevaluated,
        }


def _with_accepted_workload(
    candidates: List[TherapistCandidate],
    gap: GapDescriptor,
    accepted: List[Assignment],
) -> List[TherapistCandidate]:
    """Bump reported workloads by what this run has already handed out that day."""
    out = []
    for c in candidates:
        if c.daily_workload is None:
            out.append(c)
            continue
        extra = sum(1 for a in accepted if a.therapist_id == c.therapist_id and a.date == gap.date)
        out.append(replace(c, daily_workload=c.daily_workload + extra) if extra else c)
    return out


def resolve_gaps(
    blocks: Iterable[TimeBlock],
    assignments: Iterable[Assignment],
    candidate_source: Any,
    options: Optional[AutoAssignOptions] = None,
    min_confidence: float = 0.0,
    max_workers: int = DEFAULT_MAX_WORKERS,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> ResolutionReport:
    """
    Propose assignments for every gap in `blocks`.

    candidate_source: object with list_eligible_therapists(patient_id, date,
                      time_range) → List[TherapistCandidate].

    Returns a ResolutionReport; the snapshot passed in is never mutated.
    """
    options = options or AutoAssignOptions()
    blocks = list(blocks)
    snapshot = list(assignments)

    analyses = sort_by_severity(detect_coverage_gaps(blocks, snapshot, start_date, end_date))
    gaps: List[GapDescriptor] = [g for a in analyses for g in a.gaps]
    report = ResolutionReport(
        blocks_analyzed=sum(
            1 for b in blocks
            if (start_date is None or b.date >= start_date) and (end_date is None or b.date <= end_date)
        ),
        gaps_found=len(gaps),
    )
    if not gaps:
        logger.info("No coverage gaps to resolve")
        return report

    def _evaluate(gap: GapDescriptor) -> Tuple[List[TherapistCandidate], Outcome]:
        candidates = list(candidate_source.list_eligible_therapists(gap.patient_id, gap.date, gap.time_range))
        return candidates, auto_assign(gap, gap.patient_id, candidates, snapshot, options)

    workers = max(1, min(max_workers, len(gaps)))
    logger.info(f"Evaluating {len(gaps)} gap(s) with {workers} worker(s)")
    with ThreadPoolExecutor(max_workers=workers) as executor:
        evaluated = list(executor.map(_evaluate, gaps))

    detector = ConflictDetector(options.conflict_rules)
    accepted: List[Assignment] = []
    for gap, (candidates, outcome) in zip(gaps, evaluated):
        if isinstance(outcome, AssignmentProposal) and accepted:
            check = detector.detect(outcome.assignment, snapshot + accepted)
            if not check.is_valid:
                logger.warning(
                    f"Proposal for {gap} went stale "
                    f"({', '.join(c.conflict_type for c in check.errors)}); re-evaluating"
                )
                report.reevaluated += 1
                outcome = auto_assign(
                    gap, gap.patient_id,
                    _with_accepted_workload(candidates, gap, accepted),
                    snapshot + accepted, options,
                )

        if isinstance(outcome, NoCandidateFound):
            logger.warning(f"Unresolved: {outcome}")
            report.unresolved.append(outcome)
            continue

        if outcome.confidence_score < min_confidence:
            logger.warning(
                f"Unresolved: {gap} best candidate {outcome.therapist_id} "
                f"confidence {outcome.confidence_score:.2f} < {min_confidence:.2f}"
            )
            report.unresolved.append(NoCandidateFound(gap, REASON_LOW_CONFIDENCE, {
                "therapist_id": outcome.therapist_id,
                "confidence_score": outcome.confidence_score,
                "min_confidence": min_confidence,
            }))
            continue

        accepted.append(outcome.assignment)
        report.proposals.append(outcome)

    logger.info(
        f"Resolved {report.resolved_count}/{report.gaps_found} gap(s), "
        f"{report.unresolved_count} unresolved"
    )
    return report
