"""
config.py — Configuration for the Coverage & Assignment Engine

Loads time blocks, assignments and the therapist roster from CSV, and
policy overrides from JSON.

config/
  time_blocks.csv   id, patient_id, date, start_time, end_time,
                    service_type, priority, location_id, can_split
  assignments.csv   id, time_block_id, patient_id, therapist_id, date,
                    start_time, end_time, assignment_type, status,
                    assignment_method, confidence_score, service_type,
                    location_id, split_coverage  (optional file)
  therapists.csv    therapist_id, name, availability, optimal_hours,
                    service_types, preferred_patients, excluded_patients,
                    unavailable_dates
  policy.json       overrides for the policy.py tables (optional file)

List-valued columns are semicolon-separated:
  availability = "08:00-12:00;13:00-17:00"
  preferred_patients = "P1;P3"
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from care_coverage.models import (
    Assignment,
    TimeBlock,
    TimeRange,
    ValidationError,
    parse_date,
    validate_assignment,
    validate_time_block,
)
from care_coverage.policy import (
    ASSIGNMENT_WEIGHTS,
    CONFLICT_RULES,
    CONTINUITY_THRESHOLDS,
    COVERAGE_ALERTS,
    GAP_SEVERITY_THRESHOLDS,
    GRADE_CUTOFFS,
    PRIORITY_MULTIPLIERS,
    SEVERITY_PENALTIES,
)

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_TIME_BLOCKS_PATH = DEFAULT_CONFIG_DIR / "time_blocks.csv"
DEFAULT_ASSIGNMENTS_PATH = DEFAULT_CONFIG_DIR / "assignments.csv"
DEFAULT_THERAPISTS_PATH = DEFAULT_CONFIG_DIR / "therapists.csv"
DEFAULT_POLICY_PATH = DEFAULT_CONFIG_DIR / "policy.json"

# policy.json sections that may be overridden
POLICY_SECTIONS = ("assignment_weights", "conflict_rules", "continuity_thresholds")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:
        return True
    s = str(value).strip()
    return not s or s.lower() == "nan"


def _text(value: Any, default: Optional[str] = None) -> Optional[str]:
    return default if _is_blank(value) else str(value).strip()


def _parse_yes_no(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if _is_blank(value):
        return False
    return str(value).strip().lower() in ("yes", "true", "1", "y")


def _parse_list(raw: Any) -> List[str]:
    """Semicolon- (or comma-) separated list → stripped non-empty items."""
    if _is_blank(raw):
        return []
    s = str(raw).replace(",", ";")
    return [p.strip() for p in s.split(";") if p.strip()]


def _optional_float(value: Any) -> Optional[float]:
    return None if _is_blank(value) else float(value)


def _optional_int(value: Any) -> Optional[int]:
    return None if _is_blank(value) else int(float(value))


def _read_csv(path: Path):
    import pandas as pd

    return pd.read_csv(path, dtype=str, keep_default_na=False)


# ---------------------------------------------------------------------------
# Time blocks
# ---------------------------------------------------------------------------

def load_time_blocks(path: Optional[Path] = None) -> List[TimeBlock]:
    """
    Load time blocks. Required file.

    Raises:
        FileNotFoundError if missing; ValueError naming the row if malformed.
    """
    path = Path(path) if path else DEFAULT_TIME_BLOCKS_PATH
    if not path.exists():
        raise FileNotFoundError(f"Time blocks file not found: {path}")

    df = _read_csv(path)
    blocks: List[TimeBlock] = []
    for i, row in df.iterrows():
        try:
            block = TimeBlock(
                id=str(row["id"]).strip(),
                patient_id=str(row["patient_id"]).strip(),
                date=row["date"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                service_type=_text(row.get("service_type"), "direct"),
                priority=_text(row.get("priority"), "medium"),
                location_id=_text(row.get("location_id")),
                can_split=_parse_yes_no(row.get("can_split")),
            )
        except (KeyError, ValidationError) as e:
            raise ValueError(f"{path.name} row {i + 2}: {e}") from e
        errors = validate_time_block(block)
        if errors:
            raise ValueError(f"{path.name} row {i + 2}: {'; '.join(errors)}")
        blocks.append(block)

    logger.info(f"Loaded {len(blocks)} time blocks from {path}")
    return blocks


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------

def load_assignments(path: Optional[Path] = None) -> List[Assignment]:
    """Load committed assignments. A missing file means an empty schedule."""
    path = Path(path) if path else DEFAULT_ASSIGNMENTS_PATH
    if not path.exists():
        logger.warning(f"Assignments file not found: {path}. Starting from an empty schedule.")
        return []

    df = _read_csv(path)
    assignments: List[Assignment] = []
    for i, row in df.iterrows():
        try:
            assignment = Assignment(
                id=str(row["id"]).strip(),
                time_block_id=str(row["time_block_id"]).strip(),
                patient_id=str(row["patient_id"]).strip(),
                therapist_id=str(row["therapist_id"]).strip(),
                date=row["date"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                duration_minutes=_optional_int(row.get("duration_minutes")),
                assignment_type=_text(row.get("assignment_type"), "primary"),
                status=_text(row.get("status"), "assigned"),
                assignment_method=_text(row.get("assignment_method"), "manual"),
                confidence_score=_optional_float(row.get("confidence_score")),
                service_type=_text(row.get("service_type"), "direct"),
                location_id=_text(row.get("location_id")),
                split_coverage=_parse_yes_no(row.get("split_coverage")),
            )
        except (KeyError, ValueError) as e:
            raise ValueError(f"{path.name} row {i + 2}: {e}") from e
        errors = validate_assignment(assignment)
        if errors:
            raise ValueError(f"{path.name} row {i + 2}: {'; '.join(errors)}")
        assignments.append(assignment)

    logger.info(f"Loaded {len(assignments)} assignments from {path}")
    return assignments


# ---------------------------------------------------------------------------
# Therapist roster
# ---------------------------------------------------------------------------

def load_therapists(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """
    Load the therapist roster (see store.StaticCandidateSource for the dict
    shape). Required file.
    """
    path = Path(path) if path else DEFAULT_THERAPISTS_PATH
    if not path.exists():
        raise FileNotFoundError(f"Therapist roster not found: {path}")

    df = _read_csv(path)
    roster: List[Dict[str, Any]] = []
    for i, row in df.iterrows():
        try:
            service_types = _parse_list(row.get("service_types"))
            optimal = _text(row.get("optimal_hours"))
            roster.append({
                "therapist_id": str(row["therapist_id"]).strip(),
                "name": _text(row.get("name"), ""),
                "availability": [TimeRange.parse(w) for w in _parse_list(row.get("availability"))],
                "optimal_hours": TimeRange.parse(optimal) if optimal else None,
                "service_types": frozenset(service_types) if service_types else None,
                "preferred_patients": set(_parse_list(row.get("preferred_patients"))),
                "excluded_patients": set(_parse_list(row.get("excluded_patients"))),
                "unavailable_dates": {parse_date(d) for d in _parse_list(row.get("unavailable_dates"))},
            })
        except (KeyError, ValueError) as e:
            raise ValueError(f"{path.name} row {i + 2}: {e}") from e

    ids = [p["therapist_id"] for p in roster]
    duplicates = sorted({t for t in ids if ids.count(t) > 1})
    if duplicates:
        raise ValueError(f"Duplicate therapist ids in {path.name}: {duplicates}")

    logger.info(f"Loaded {len(roster)} therapists from {path}")
    return roster


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

def get_config() -> Dict[str, Any]:
    return {
        "assignment_weights":    ASSIGNMENT_WEIGHTS.copy(),
        "conflict_rules":        CONFLICT_RULES.copy(),
        "continuity_thresholds": CONTINUITY_THRESHOLDS.copy(),
        "severity_penalties":    SEVERITY_PENALTIES.copy(),
        "grade_cutoffs":         list(GRADE_CUTOFFS),
        "priority_multipliers":  PRIORITY_MULTIPLIERS.copy(),
        "gap_severity_thresholds": list(GAP_SEVERITY_THRESHOLDS),
        "coverage_alerts":       COVERAGE_ALERTS.copy(),
    }


def load_policy(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Defaults from get_config() with policy.json overrides merged per section.
    Unknown sections are ignored with a warning.
    """
    policy = get_config()
    path = Path(path) if path else DEFAULT_POLICY_PATH
    if not path.exists():
        logger.info(f"No policy overrides at {path}; using defaults")
        return policy

    with open(path) as f:
        overrides = json.load(f)
    for section, values in overrides.items():
        if section not in POLICY_SECTIONS:
            logger.warning(f"Ignoring unknown policy section '{section}' in {path}")
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Policy section '{section}' in {path} must be an object")
        policy[section].update(values)
    logger.info(f"Policy overrides loaded from {path}: {sorted(overrides)}")
    return policy


def save_policy(policy: Dict[str, Any], path: Optional[Path] = None) -> None:
    """Persist the overridable policy sections to JSON."""
    path = Path(path) if path else DEFAULT_POLICY_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {s: copy.deepcopy(policy[s]) for s in POLICY_SECTIONS if s in policy}
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    logger.info(f"Policy saved to {path}")


# ---------------------------------------------------------------------------
# Quick validation
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    blocks = load_time_blocks()
    print(f"Loaded {len(blocks)} time blocks")
    assignments = load_assignments()
    print(f"Loaded {len(assignments)} assignments")
    for p in load_therapists():
        windows = ", ".join(str(w) for w in p["availability"]) or "(none)"
        print(f"  {p['therapist_id']:<5} {p['name']:<20} {windows}")
