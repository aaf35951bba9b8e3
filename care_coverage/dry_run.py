"""
dry_run.py — Coverage run without touching the schedule of record

Full orchestration:
  1. Load time blocks, assignments, therapist roster, policy overrides
  2. Audit committed assignments for double-booking
  3. Detect coverage gaps in the period
  4. Resolve gaps (parallel auto-assignment, serialized commits into an
     in-memory copy of the schedule)
  5. Summarise daily coverage and score continuity
  6. Export CSV, Excel, continuity report, run log
  7. Print summary to console

Usage:
  python -m care_coverage.dry_run --start 2024-01-14 --end 2024-01-20
  python -m care_coverage.dry_run --start 2024-01-14 --end 2024-01-20 --min-confidence 0.6 --visual
"""

import argparse
import json
import logging
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

from care_coverage.config import DEFAULT_CONFIG_DIR, PROJECT_ROOT, load_assignments, load_policy, load_therapists, load_time_blocks
from care_coverage.conflicts import ConflictDetector
from care_coverage.continuity import ContinuitySummary, summarize_continuity
from care_coverage.coordinator import AssignmentCoordinator
from care_coverage.engine import AutoAssignOptions
from care_coverage.exporter import (
    export_continuity_report,
    export_coverage_excel,
    export_gaps_csv,
    export_proposals_csv,
)
from care_coverage.gaps import detect_coverage_gaps, summarize_daily_coverage
from care_coverage.resolver import DEFAULT_MAX_WORKERS
from care_coverage.store import InMemoryScheduleStore, StaticCandidateSource, assignment_to_dict

logger = logging.getLogger(__name__)

OUTPUTS_DIR = PROJECT_ROOT / "outputs"
RUN_LOG_FILENAME = "dry_run_resolution_log.json"


# ---------------------------------------------------------------------------
# Visual analysis (matplotlib)
# ---------------------------------------------------------------------------

def _generate_visual_analysis(continuity: ContinuitySummary, output_dir: Path, prefix: str) -> None:
    """Bar chart of continuity score per patient, coloured by grade."""
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        logger.warning("matplotlib not installed — skip visual analysis. Install with: pip install matplotlib")
        return

    if not continuity.reports:
        return
    grade_colors = {"A": "#2e8b57", "B": "#4a90d9", "C": "#f0ad4e", "D": "#d9534f", "F": "#b22222"}
    patients = sorted(continuity.reports, key=lambda p: continuity.reports[p].score)
    scores = [continuity.reports[p].score for p in patients]
    colors = [grade_colors[continuity.reports[p].grade] for p in patients]

    fig, ax = plt.subplots(figsize=(max(6, len(patients) * 0.6), 5))
    ax.bar(range(len(patients)), scores, color=colors, alpha=0.85, width=0.65)
    ax.axhline(continuity.average_score, color="crimson", linewidth=1.8, linestyle="--",
               label=f"Mean: {continuity.average_score:.1f}")
    for bar, val in zip(ax.patches, scores):
        ax.text(bar.get_x() + bar.get_width() / 2, bar.get_height() + 1, str(val), ha="center", va="bottom", fontsize=8)
    ax.set_xticks(list(range(len(patients))))
    ax.set_xticklabels(patients, rotation=40, ha="right", fontsize=9)
    ax.set_ylim(0, 110)
    ax.set_ylabel("Continuity Score")
    ax.set_title("Continuity Score by Patient (dry_run)", fontsize=13, fontweight="bold")
    ax.legend()
    ax.grid(axis="y", alpha=0.3)
    fig.tight_layout()
    fig.savefig(output_dir / f"{prefix}_continuity_scores.png", dpi=150)
    plt.close(fig)
    print(f"  ✓ Visual  → {prefix}_continuity_scores.png")


def _append_run_log(output_dir: Path, entry: Dict[str, Any]) -> None:
    log_path = output_dir / RUN_LOG_FILENAME
    try:
        existing: List[Dict[str, Any]] = []
        if log_path.exists():
            with open(log_path) as f:
                data = json.load(f)
                existing = data if isinstance(data, list) else [data]
        existing.append(entry)
        with open(log_path, "w") as f:
            json.dump(existing, f, indent=2)
    except Exception as e:
        logger.warning(f"Could not write run log: {e}")


def _dates(start: date, end: date) -> List[date]:
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------

def run_dry_run(
    start_date: date,
    end_date: date,
    config_dir: Path = DEFAULT_CONFIG_DIR,
    output_dir: Path = OUTPUTS_DIR,
    min_confidence: float = 0.0,
    workers: int = DEFAULT_MAX_WORKERS,
    visual: bool = False,
) -> Dict[str, Any]:
    """
    Detect and resolve coverage gaps for [start_date, end_date] in dry-run
    mode. Input files are never modified.

    Returns:
        Dict with audit conflicts, gaps, resolution report, committed
        proposals, coverage summaries, continuity summary, output paths
    """
    config_dir = Path(config_dir)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    prefix = f"dry_run_{start_date}_{end_date}"
    sep = "=" * 70

    print(f"\n{sep}")
    print("  DRY RUN MODE — schedule of record is not modified")
    print(f"  Period: {start_date} → {end_date}")
    print(f"{sep}\n")

    # ── 1. Load configuration ──────────────────────────────────────────────
    print("Step 1/6: Loading configuration...")
    blocks = load_time_blocks(config_dir / "time_blocks.csv")
    assignments = load_assignments(config_dir / "assignments.csv")
    roster = load_therapists(config_dir / "therapists.csv")
    policy = load_policy(config_dir / "policy.json")
    print(f"  ✓ {len(blocks)} time blocks | {len(assignments)} assignments | {len(roster)} therapists")

    options = AutoAssignOptions(
        weights=policy["assignment_weights"],
        conflict_rules=policy["conflict_rules"],
    )

    # ── 2. Audit committed schedule ────────────────────────────────────────
    print("\nStep 2/6: Auditing committed assignments...")
    audit = ConflictDetector(policy["conflict_rules"]).audit(assignments)
    for c in audit:
        print(f"  ✗ {c}")
    if not audit:
        print("  ✓ No double-booking in committed schedule")

    # ── 3. Gap detection ───────────────────────────────────────────────────
    print("\nStep 3/6: Detecting coverage gaps...")
    gaps_before = detect_coverage_gaps(blocks, assignments, start_date, end_date)
    gap_count = sum(len(a.gaps) for a in gaps_before)
    print(f"  ✓ {gap_count} gap(s) across {len(gaps_before)} block(s)")

    # ── 4. Resolution ──────────────────────────────────────────────────────
    print("\nStep 4/6: Resolving gaps...")
    store = InMemoryScheduleStore(blocks, assignments)
    coordinator = AssignmentCoordinator(store, StaticCandidateSource(roster, store), options=options)
    outcome = coordinator.resolve_and_commit(
        start_date=start_date, end_date=end_date,
        min_confidence=min_confidence, max_workers=workers,
    )
    report = outcome.report
    print(f"  ✓ Resolved {report.resolved_count} / {report.gaps_found} gap(s)")
    for p in report.proposals:
        a = p.assignment
        print(f"    {a.date}  {a.patient_id:<6} {p.gap.time_range}  →  {a.therapist_id}  "
              f"[score {p.score:g}, confidence {p.confidence_score:.2f}]")
    for u in report.unresolved:
        print(f"    {u.gap.date}  {u.gap.patient_id:<6} {u.gap.time_range}  →  UNRESOLVED  Reason: {u.reason}")
    for a, result in outcome.rejected:
        print(f"  ✗ Commit rejected for {a.therapist_id} {a.date}: {len(result.errors)} conflict(s)")

    # ── 5. Coverage & continuity ───────────────────────────────────────────
    print("\nStep 5/6: Summarising coverage and continuity...")
    final_blocks = store.list_time_blocks(start_date=start_date, end_date=end_date)
    final_assignments = store.list_assignments(start_date=start_date, end_date=end_date)
    patient_ids = sorted({b.patient_id for b in final_blocks})

    summaries = [
        summarize_daily_coverage(pid, d, final_blocks, final_assignments)
        for pid in patient_ids
        for d in _dates(start_date, end_date)
        if any(b.patient_id == pid and b.date == d for b in final_blocks)
    ]
    attention = [s for s in summaries if s.requires_attention]
    continuity = summarize_continuity(
        patient_ids, final_assignments, start_date, end_date,
        thresholds=policy["continuity_thresholds"],
    )
    gaps_after = detect_coverage_gaps(final_blocks, final_assignments, start_date, end_date)
    print(f"  ✓ {len(summaries)} patient-day(s), {len(attention)} need attention")
    print(f"  ✓ Continuity: {continuity.patients_with_issues}/{continuity.total_patients} patient(s) with issues, "
          f"average score {continuity.average_score:.1f}")

    # ── 6. Export ──────────────────────────────────────────────────────────
    print("\nStep 6/6: Exporting outputs...")
    gaps_path = output_dir / f"{prefix}_gaps.csv"
    proposals_path = output_dir / f"{prefix}_proposals.csv"
    xlsx_path = output_dir / f"{prefix}_coverage.xlsx"
    continuity_path = output_dir / f"{prefix}_continuity_report.txt"

    export_gaps_csv(gaps_before, gaps_path)
    export_proposals_csv(report, proposals_path)
    export_coverage_excel(summaries, gaps_after, xlsx_path)
    export_continuity_report(continuity, continuity_path)
    _append_run_log(output_dir, {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "prefix": prefix,
        **report.summary(),
        "min_confidence": min_confidence,
        "committed": [assignment_to_dict(a) for a in outcome.committed],
        "unresolved": [
            {"date": str(u.gap.date), "patient_id": u.gap.patient_id,
             "range": str(u.gap.time_range), "reason": u.reason}
            for u in report.unresolved
        ],
    })

    print(f"  ✓ Gaps:       {gaps_path.name}")
    print(f"  ✓ Proposals:  {proposals_path.name}")
    print(f"  ✓ Excel:      {xlsx_path.name}")
    print(f"  ✓ Continuity: {continuity_path.name}")

    # ── Summary ────────────────────────────────────────────────────────────
    print(f"\n{sep}")
    print("  SUMMARY")
    print(f"{sep}")
    print(f"  Period:              {start_date} → {end_date}")
    print(f"  Audit conflicts:     {len(audit)}")
    print(f"  Gaps found:          {report.gaps_found}")
    print(f"  Resolved:            {report.resolved_count}")
    print(f"  Unresolved:          {report.unresolved_count}")
    print(f"  Gaps remaining:      {sum(len(a.gaps) for a in gaps_after)}")
    print(f"  Avg continuity:      {continuity.average_score:.1f}")

    if visual:
        _generate_visual_analysis(continuity, output_dir, prefix)

    print(f"\n{sep}\n")

    return {
        "audit": audit,
        "gaps": gaps_before,
        "report": report,
        "committed": outcome.committed,
        "coverage": summaries,
        "continuity": continuity,
        "outputs": {
            "gaps": gaps_path,
            "proposals": proposals_path,
            "excel": xlsx_path,
            "continuity": continuity_path,
        },
    }


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="Dry-run coverage gap detection and auto-assignment"
    )
    parser.add_argument("--start",          required=True, help="Start date YYYY-MM-DD")
    parser.add_argument("--end",            required=True, help="End date YYYY-MM-DD")
    parser.add_argument("--config-dir",     default=None,  help="Input directory (default: config/)")
    parser.add_argument("--output-dir",     default=None,  help="Output directory (default: outputs/)")
    parser.add_argument("--min-confidence", type=float, default=0.0,
                        help="Leave gaps unresolved when the best confidence is below this (0-1)")
    parser.add_argument("--workers",        type=int, default=DEFAULT_MAX_WORKERS,
                        help="Parallel gap evaluations")
    parser.add_argument("--visual",         action="store_true", help="Generate matplotlib continuity chart")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        start = datetime.strptime(args.start, "%Y-%m-%d").date()
        end   = datetime.strptime(args.end,   "%Y-%m-%d").date()
    except ValueError as e:
        print(f"Invalid date format: {e}")
        sys.exit(1)

    if start > end:
        print("Error: start date must be before end date")
        sys.exit(1)
    if not 0.0 <= args.min_confidence <= 1.0:
        print("Error: --min-confidence must be between 0 and 1")
        sys.exit(1)

    run_dry_run(
        start, end,
        config_dir=Path(args.config_dir) if args.config_dir else DEFAULT_CONFIG_DIR,
        output_dir=Path(args.output_dir) if args.output_dir else OUTPUTS_DIR,
        min_confidence=args.min_confidence,
        workers=args.workers,
        visual=args.visual,
    )


if __name__ == "__main__":
    main()
