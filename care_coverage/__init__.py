"""
Care Coverage & Assignment Engine

Modules:
- models: Time blocks, assignments, gaps, candidates, validation
- conflicts: Conflict detection (therapist/patient double-booking, soft rules)
- gaps: Gap analysis, coverage percentage, daily coverage summaries
- engine: Auto-assignment heuristic for a single gap
- resolver: Bulk gap resolution (parallel evaluation, serialized acceptance)
- continuity: Therapist continuity scoring and grades
- store / coordinator: Schedule store, candidate source, notifier, locked commits
- config: CSV / JSON loaders
"""

from .models import (
    Assignment,
    AssignmentProposal,
    GapDescriptor,
    NoCandidateFound,
    TherapistCandidate,
    TimeBlock,
    TimeRange,
    ValidationError,
    create_assignment,
    transition_status,
    validate_assignment,
)

from .conflicts import (
    Conflict,
    ConflictDetector,
    ConflictError,
    ConflictResult,
    ConflictSeverity,
    detect_conflicts,
)

from .gaps import (
    analyze_block,
    coverage_percentage,
    detect_coverage_gaps,
    find_gaps,
    gap_severity,
    summarize_daily_coverage,
)

from .engine import AutoAssignOptions, auto_assign, score_candidate
from .resolver import ResolutionReport, resolve_gaps
from .continuity import ContinuityReport, analysis_window, score_continuity, summarize_continuity
from .store import InMemoryScheduleStore, StaticCandidateSource, WebhookNotifier
from .coordinator import AssignmentCoordinator

__all__ = [
    "Assignment",
    "AssignmentProposal",
    "GapDescriptor",
    "NoCandidateFound",
    "TherapistCandidate",
    "TimeBlock",
    "TimeRange",
    "ValidationError",
    "create_assignment",
    "transition_status",
    "validate_assignment",
    "Conflict",
    "ConflictDetector",
    "ConflictError",
    "ConflictResult",
    "ConflictSeverity",
    "detect_conflicts",
    "analyze_block",
    "coverage_percentage",
    "detect_coverage_gaps",
    "find_gaps",
    "gap_severity",
    "summarize_daily_coverage",
    "AutoAssignOptions",
    "auto_assign",
    "score_candidate",
    "ResolutionReport",
    "resolve_gaps",
    "ContinuityReport",
    "analysis_window",
    "score_continuity",
    "summarize_continuity",
    "InMemoryScheduleStore",
    "StaticCandidateSource",
    "WebhookNotifier",
    "AssignmentCoordinator",
]
