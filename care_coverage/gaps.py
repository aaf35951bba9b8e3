"""
gaps.py — Gap Analyzer

Computes the uncovered sub-intervals of a time block and rolls them up into
per-block and per-day coverage views.

Gap walk (find_gaps):
  1. Drop cancelled assignments, clip the rest to the block range
  2. Sort by start time
  3. Walk left to right with cursor = block start; an assignment starting
     after the cursor leaves a gap [cursor, start); cursor = max(cursor, end)
  4. A cursor short of block end leaves a final gap [cursor, block end)

The result is ordered, pairwise non-overlapping, and together with the
assignment coverage it exactly tiles the block. A block with no assignment
yields a single "uncovered" gap; gaps next to existing coverage are "partial".

Gap severity:
  adjusted share = gap minutes / block minutes × priority multiplier
  (low 1.0, medium 1.2, high 1.5, critical 2.0)
  ≥0.8 critical, ≥0.5 high, ≥0.2 medium, else low; "none" without gaps
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from care_coverage.models import (
    GAP_PARTIAL,
    GAP_UNCOVERED,
    Assignment,
    GapDescriptor,
    TimeBlock,
    TimeRange,
    from_minutes,
)
from care_coverage.policy import (
    COVERAGE_ALERTS,
    GAP_SEVERITY_THRESHOLDS,
    PRIORITY_MULTIPLIERS,
    SEVERITY_ORDER,
    VOID_STATUSES,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Gap walk
# ---------------------------------------------------------------------------

def _make_gap(block: TimeBlock, start: int, end: int, kind: str) -> GapDescriptor:
    return GapDescriptor(
        start_time=from_minutes(start),
        end_time=from_minutes(end),
        duration_minutes=end - start,
        kind=kind,
        time_block_id=block.id,
        patient_id=block.patient_id,
        service_type=block.service_type,
        priority=block.priority,
        location_id=block.location_id,
        date=block.date,
    )


def covered_ranges(block: TimeBlock, assignments: Iterable[Assignment]) -> List[TimeRange]:
    """Non-cancelled assignment ranges clipped to the block, sorted by start."""
    b_start, b_end = block.time_range.start_minutes, block.time_range.end_minutes
    clipped = []
    for a in assignments:
        if a.status == "cancelled":
            continue
        start = max(a.time_range.start_minutes, b_start)
        end = min(a.time_range.end_minutes, b_end)
        if start < end:
            clipped.append(TimeRange(from_minutes(start), from_minutes(end)))
    clipped.sort(key=lambda r: (r.start_minutes, r.end_minutes))
    return clipped


def find_gaps(block: TimeBlock, assignments: Iterable[Assignment]) -> List[GapDescriptor]:
    """Uncovered sub-intervals of `block`, ordered by start time."""
    ranges = covered_ranges(block, assignments)
    b_start, b_end = block.time_range.start_minutes, block.time_range.end_minutes
    if b_start >= b_end:
        return []
    if not ranges:
        return [_make_gap(block, b_start, b_end, GAP_UNCOVERED)]

    gaps = []
    cursor = b_start
    for rng in ranges:
        if rng.start_minutes > cursor:
            gaps.append(_make_gap(block, cursor, rng.start_minutes, GAP_PARTIAL))
        cursor = max(cursor, rng.end_minutes)
        if cursor >= b_end:
            break
    if cursor < b_end:
        gaps.append(_make_gap(block, cursor, b_end, GAP_PARTIAL))
    return gaps


def coverage_percentage(block: TimeBlock, assignments: Iterable[Assignment]) -> float:
    """Share of the block covered by at least one assignment, in [0, 1]."""
    total = block.duration_minutes
    if total <= 0:
        return 0.0
    uncovered = sum(g.duration_minutes for g in find_gaps(block, assignments))
    return (total - uncovered) / total


def gap_severity(gaps: List[GapDescriptor], block: TimeBlock) -> str:
    if not gaps:
        return "none"
    total = block.duration_minutes
    if total <= 0:
        return "low"
    share = sum(g.duration_minutes for g in gaps) / total
    adjusted = share * PRIORITY_MULTIPLIERS.get(block.priority, 1.0)
    for threshold, severity in GAP_SEVERITY_THRESHOLDS:
        if adjusted >= threshold:
            return severity
    return "low"


# ---------------------------------------------------------------------------
# Per-block analysis
# ---------------------------------------------------------------------------

@dataclass
class BlockCoverage:
    block: TimeBlock
    gaps: List[GapDescriptor]
    total_gap_minutes: int
    coverage_percentage: float
    severity: str

    @property
    def has_gaps(self) -> bool:
        return bool(self.gaps)


def analyze_block(block: TimeBlock, assignments: Iterable[Assignment]) -> BlockCoverage:
    own = [a for a in assignments if a.time_block_id == block.id]
    gaps = find_gaps(block, own)
    total_gap = sum(g.duration_minutes for g in gaps)
    pct = (block.duration_minutes - total_gap) / block.duration_minutes if block.duration_minutes > 0 else 0.0
    return BlockCoverage(
        block=block,
        gaps=gaps,
        total_gap_minutes=total_gap,
        coverage_percentage=pct,
        severity=gap_severity(gaps, block),
    )


def detect_coverage_gaps(
    blocks: Iterable[TimeBlock],
    assignments: Iterable[Assignment],
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[BlockCoverage]:
    """
    Analyse every block in [start_date, end_date] and return only those with
    gaps, ordered by date then start time.
    """
    by_block: Dict[str, List[Assignment]] = {}
    for a in assignments:
        by_block.setdefault(a.time_block_id, []).append(a)

    results = []
    for block in blocks:
        if start_date and block.date < start_date:
            continue
        if end_date and block.date > end_date:
            continue
        analysis = analyze_block(block, by_block.get(block.id, []))
        if analysis.has_gaps:
            results.append(analysis)

    results.sort(key=lambda r: (r.block.date, r.block.start_time, r.block.id))
    logger.info(
        f"Coverage scan: {len(results)} block(s) with gaps, "
        f"{sum(len(r.gaps) for r in results)} gap(s) total"
    )
    return results


def sort_by_severity(analyses: List[BlockCoverage]) -> List[BlockCoverage]:
    """Critical first, then by date and start time."""
    return sorted(
        analyses,
        key=lambda r: (-SEVERITY_ORDER.get(r.severity, 0), r.block.date, r.block.start_time, r.block.id),
    )


# ---------------------------------------------------------------------------
# Per-day summary
# ---------------------------------------------------------------------------

@dataclass
class CoverageSummary:
    patient_id: str
    coverage_date: date
    total_required_minutes: int
    total_covered_minutes: int
    total_gap_minutes: int
    coverage_percentage: float
    status: str
    alert_level: str
    requires_attention: bool
    gap_count: int
    largest_gap_minutes: int
    total_therapists: int
    primary_therapist_id: Optional[str] = None
    primary_therapist_minutes: int = 0
    substitute_count: int = 0
    continuity_score: float = 0.0
    preference_score: float = 0.0
    recommendations: List[Dict[str, Any]] = field(default_factory=list)


def _coverage_status(required: int, covered: int, pct: float, largest_gap: int) -> tuple:
    if covered > required:
        return "overbooked", "medium"
    if required == 0 or pct >= 1.0:
        return "full", "none"
    if pct >= COVERAGE_ALERTS["partial_min"]:
        level = "medium" if largest_gap > COVERAGE_ALERTS["large_gap_alert_minutes"] else "low"
        return "partial", level
    if pct >= COVERAGE_ALERTS["minimal_min"]:
        return "minimal", "high"
    return "uncovered", "critical"


def _recommendations(summary: CoverageSummary, has_assignments: bool) -> List[Dict[str, Any]]:
    recs = []
    if summary.total_required_minutes and summary.coverage_percentage < COVERAGE_ALERTS["partial_min"]:
        recs.append({
            "type": "coverage",
            "description": (
                f"Coverage is only {summary.coverage_percentage * 100:.1f}%. "
                f"Need to fill {summary.total_gap_minutes} minutes of gaps."
            ),
            "priority": "critical" if summary.coverage_percentage < COVERAGE_ALERTS["minimal_min"] else "high",
            "action_required": "assign_therapists",
        })
    if summary.largest_gap_minutes > COVERAGE_ALERTS["large_gap_review_minutes"]:
        recs.append({
            "type": "large_gap",
            "description": (
                f"Large {summary.largest_gap_minutes}-minute gap detected. "
                f"Consider splitting into smaller sessions."
            ),
            "priority": "medium",
            "action_required": "review_schedule",
        })
    if (summary.continuity_score < COVERAGE_ALERTS["continuity_review_score"]
            and summary.total_therapists > 2):
        recs.append({
            "type": "continuity",
            "description": (
                f"{summary.total_therapists} different therapists assigned. "
                f"Consider consolidating for better continuity."
            ),
            "priority": "medium",
            "action_required": "optimize_assignments",
        })
    if has_assignments and summary.preference_score < COVERAGE_ALERTS["preference_review_score"]:
        recs.append({
            "type": "preferences",
            "description": "Few preferred therapists assigned. Review patient preferences and therapist availability.",
            "priority": "low",
            "action_required": "review_preferences",
        })
    if summary.status == "overbooked":
        excess = summary.total_covered_minutes - summary.total_required_minutes
        recs.append({
            "type": "overbooked",
            "description": f"Patient is overbooked by {excess} minutes. Review schedule to avoid excessive billing.",
            "priority": "high",
            "action_required": "reduce_coverage",
        })
    return recs


def summarize_daily_coverage(
    patient_id: str,
    coverage_date: date,
    blocks: Iterable[TimeBlock],
    assignments: Iterable[Assignment],
) -> CoverageSummary:
    """
    Roll one patient's day into a CoverageSummary.

    Covered minutes are summed per assignment (not unioned), so stacked
    assignments show up as "overbooked".
    """
    day_blocks = [b for b in blocks if b.patient_id == patient_id and b.date == coverage_date]
    day_assignments = [
        a for a in assignments
        if a.patient_id == patient_id and a.date == coverage_date and a.status not in VOID_STATUSES
    ]

    required = sum(max(0, b.duration_minutes) for b in day_blocks)
    covered = sum(a.duration_minutes for a in day_assignments)
    pct = covered / required if required > 0 else 0.0

    gap_count = 0
    largest_gap = 0
    gap_minutes = 0
    for block in day_blocks:
        for gap in find_gaps(block, [a for a in day_assignments if a.time_block_id == block.id]):
            gap_count += 1
            gap_minutes += gap.duration_minutes
            largest_gap = max(largest_gap, gap.duration_minutes)

    minutes_by_therapist: Dict[str, int] = {}
    for a in day_assignments:
        minutes_by_therapist[a.therapist_id] = minutes_by_therapist.get(a.therapist_id, 0) + a.duration_minutes
    primary_id, primary_minutes = None, 0
    for therapist_id, minutes in sorted(minutes_by_therapist.items()):
        if minutes > primary_minutes:
            primary_id, primary_minutes = therapist_id, minutes

    n_therapists = len(minutes_by_therapist)
    if day_assignments:
        continuity = max(0.0, 1 - (n_therapists - 1) * 0.2)
        preference = sum(1 for a in day_assignments if a.assignment_method == "preferred") / len(day_assignments)
    else:
        continuity = preference = 0.0

    status, alert = _coverage_status(required, covered, pct, largest_gap)
    summary = CoverageSummary(
        patient_id=patient_id,
        coverage_date=coverage_date,
        total_required_minutes=required,
        total_covered_minutes=covered,
        total_gap_minutes=gap_minutes,
        coverage_percentage=pct,
        status=status,
        alert_level=alert,
        requires_attention=(
            alert in ("high", "critical") or gap_count > COVERAGE_ALERTS["max_gaps_before_attention"]
        ),
        gap_count=gap_count,
        largest_gap_minutes=largest_gap,
        total_therapists=n_therapists,
        primary_therapist_id=primary_id,
        primary_therapist_minutes=primary_minutes,
        substitute_count=sum(1 for a in day_assignments if a.assignment_type == "substitute"),
        continuity_score=continuity,
        preference_score=preference,
    )
    summary.recommendations = _recommendations(summary, bool(day_assignments))
    return summary
