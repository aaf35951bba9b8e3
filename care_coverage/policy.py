"""
policy.py — Coverage & Assignment Policy Tables

Business policy for the coverage engine, kept in one place so the numbers
can be reviewed (and overridden via config/policy.json) without touching
the algorithms.

VOCABULARIES
────────────
  Assignment status:  assigned, confirmed, in_progress, completed,
                      cancelled, no_show
  Assignment type:    primary, substitute, backup, support
  Assignment method:  auto, manual, preferred, emergency
  Service type:       direct, indirect, supervision, noOw, lunch, circle,
                      cleaning
  Block priority:     low, medium, high, critical

AUTO-ASSIGNMENT SCORE (0–100 scale, confidence = score / 100)
──────────────────────────────────────────────────────────────
  base 50
  +30 preferred therapist
  +10 continuity (≥1 assignment with the patient in the last 7 days)
  −5  per assignment already on the therapist's day
  +5  gap inside the therapist's optimal working hours
  Qualitative ordering must hold: preferred > continuity > fresh > fatigued.

CONTINUITY SCORE (0–100)
────────────────────────
  100 − 25/error − 15/warning − 5/info
  +10 if top therapist share ≥ 60%, else +5 if ≥ 50%
  Grades: ≥90 A, ≥80 B, ≥70 C, ≥60 D, else F
"""

from typing import Any, Dict, List, Tuple

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------
ASSIGNMENT_STATUSES = frozenset({
    "assigned", "confirmed", "in_progress", "completed", "cancelled", "no_show",
})

# Statuses that hold a therapist's time
ACTIVE_STATUSES = frozenset({"assigned", "confirmed", "in_progress"})

# Statuses ignored by conflict detection and continuity history
VOID_STATUSES = frozenset({"cancelled", "no_show"})

ASSIGNMENT_TYPES = frozenset({"primary", "substitute", "backup", "support"})
ASSIGNMENT_METHODS = frozenset({"auto", "manual", "preferred", "emergency"})

SERVICE_TYPES = frozenset({
    "direct", "indirect", "supervision", "noOw", "lunch", "circle", "cleaning",
})

# Service types where the patient can only be with one therapist at a time
EXCLUSIVE_SERVICE_TYPES = frozenset({"direct"})

# Service types counted as sessions by the continuity scorer
DIRECT_SERVICE_TYPES = frozenset({"direct"})

PRIORITIES = ("low", "medium", "high", "critical")

# Substitute-style assignments that warn when the therapist is new to the patient
SUBSTITUTE_TYPES = frozenset({"substitute", "backup"})

# status → statuses it may move to
STATUS_TRANSITIONS: Dict[str, frozenset] = {
    "assigned":    frozenset({"confirmed", "in_progress", "cancelled", "no_show"}),
    "confirmed":   frozenset({"in_progress", "cancelled", "no_show"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "completed":   frozenset(),
    "cancelled":   frozenset(),
    "no_show":     frozenset(),
}

# ---------------------------------------------------------------------------
# Validation / conflict rules
# ---------------------------------------------------------------------------
CONFLICT_RULES: Dict[str, Any] = {
    "duration_tolerance_minutes": 1,
    "tight_scheduling_buffer_minutes": 15,
    "patient_daily_limit_hours": 8.0,
    "patient_daily_limit_warning_ratio": 0.8,
}

# ---------------------------------------------------------------------------
# Auto-assignment weights (tunable policy)
# ---------------------------------------------------------------------------
ASSIGNMENT_WEIGHTS: Dict[str, float] = {
    "base": 50.0,
    "preferred_bonus": 30.0,
    "continuity_bonus": 10.0,
    "fatigue_penalty": 5.0,
    "optimal_hours_bonus": 5.0,
    "continuity_window_days": 7,
}

# ---------------------------------------------------------------------------
# Continuity thresholds
# ---------------------------------------------------------------------------
CONTINUITY_THRESHOLDS: Dict[str, Any] = {
    "max_therapists_per_day": 3,
    "max_therapists_per_period": 5,
    "period_min_days": 7,
    "primary_min_sessions": 5,
    "primary_share": 0.50,
    "strong_primary_share": 0.60,
    "fragmentation_min_therapists": 3,
    "consolidate_min_sessions": 3,
    "optimal_structure_min_sessions": 10,
}

SEVERITY_PENALTIES: Dict[str, int] = {
    "error": 25,
    "warning": 15,
    "info": 5,
}

PRIMARY_SHARE_BONUSES: List[Tuple[float, int]] = [
    (0.60, 10),
    (0.50, 5),
]

GRADE_CUTOFFS: List[Tuple[int, str]] = [
    (90, "A"),
    (80, "B"),
    (70, "C"),
    (60, "D"),
]
FAILING_GRADE = "F"

# ---------------------------------------------------------------------------
# Gap severity
# ---------------------------------------------------------------------------
PRIORITY_MULTIPLIERS: Dict[str, float] = {
    "low": 1.0,
    "medium": 1.2,
    "high": 1.5,
    "critical": 2.0,
}

# adjusted gap share → severity, first match wins
GAP_SEVERITY_THRESHOLDS: List[Tuple[float, str]] = [
    (0.8, "critical"),
    (0.5, "high"),
    (0.2, "medium"),
]

SEVERITY_ORDER: Dict[str, int] = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
    "none": 0,
}

# ---------------------------------------------------------------------------
# Daily coverage summary
# ---------------------------------------------------------------------------
COVERAGE_ALERTS: Dict[str, Any] = {
    "partial_min": 0.8,
    "minimal_min": 0.5,
    "large_gap_alert_minutes": 60,
    "large_gap_review_minutes": 120,
    "max_gaps_before_attention": 3,
    "continuity_review_score": 0.6,
    "preference_review_score": 0.5,
}
