"""
exporter.py — Export layer for coverage runs

Outputs:
  - CSV: one row per gap (date, block, range, kind, severity)
  - CSV: one row per gap outcome (proposed therapist or unresolved reason)
  - Excel (.xlsx): "Daily Coverage" and "Gaps" sheets with header styling
  - Continuity audit report (.txt): per-patient score, grade, warnings and
    recommendations plus system-wide recommendations

Usage:
  from care_coverage.exporter import export_gaps_csv, export_coverage_excel
"""

import csv
import logging
from pathlib import Path
from typing import Any, List

from care_coverage.continuity import ContinuitySummary
from care_coverage.gaps import BlockCoverage, CoverageSummary
from care_coverage.models import format_time
from care_coverage.resolver import ResolutionReport

logger = logging.getLogger(__name__)

GAP_FIELDS = [
    "date", "time_block_id", "patient_id", "start_time", "end_time",
    "duration_minutes", "kind", "severity", "priority", "service_type",
]

PROPOSAL_FIELDS = [
    "date", "time_block_id", "patient_id", "start_time", "end_time",
    "outcome", "therapist_id", "score", "confidence_score", "reason", "warnings",
]


def _gap_rows(analyses: List[BlockCoverage]) -> List[dict]:
    rows = []
    for analysis in analyses:
        for gap in analysis.gaps:
            rows.append({
                "date": gap.date.isoformat() if gap.date else "",
                "time_block_id": gap.time_block_id,
                "patient_id": gap.patient_id,
                "start_time": format_time(gap.start_time),
                "end_time": format_time(gap.end_time),
                "duration_minutes": gap.duration_minutes,
                "kind": gap.kind,
                "severity": analysis.severity,
                "priority": gap.priority,
                "service_type": gap.service_type,
            })
    return rows


# ---------------------------------------------------------------------------
# CSV Export
# ---------------------------------------------------------------------------

def export_gaps_csv(analyses: List[BlockCoverage], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=GAP_FIELDS)
        writer.writeheader()
        for row in _gap_rows(analyses):
            writer.writerow(row)
    logger.info(f"Gaps CSV exported → {output_path}")


def export_proposals_csv(report: ResolutionReport, output_path: Path) -> None:
    """Proposed assignments first, then unresolved gaps with their reason."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=PROPOSAL_FIELDS)
        writer.writeheader()
        for p in report.proposals:
            a = p.assignment
            writer.writerow({
                "date": a.date.isoformat(),
                "time_block_id": a.time_block_id,
                "patient_id": a.patient_id,
                "start_time": format_time(a.start_time),
                "end_time": format_time(a.end_time),
                "outcome": "proposed",
                "therapist_id": a.therapist_id,
                "score": f"{p.score:g}",
                "confidence_score": f"{p.confidence_score:.2f}",
                "reason": "",
                "warnings": "; ".join(w.conflict_type for w in p.warnings),
            })
        for u in report.unresolved:
            g = u.gap
            writer.writerow({
                "date": g.date.isoformat() if g.date else "",
                "time_block_id": g.time_block_id,
                "patient_id": g.patient_id,
                "start_time": format_time(g.start_time),
                "end_time": format_time(g.end_time),
                "outcome": "unresolved",
                "therapist_id": u.details.get("therapist_id", ""),
                "score": "",
                "confidence_score": "",
                "reason": u.reason,
                "warnings": "",
            })
    logger.info(f"Proposals CSV exported → {output_path}")


# ---------------------------------------------------------------------------
# Excel Export
# ---------------------------------------------------------------------------

def export_coverage_excel(
    summaries: List[CoverageSummary],
    analyses: List[BlockCoverage],
    output_path: Path,
) -> None:
    """Two sheets: one row per patient-day, one row per gap."""
    import pandas as pd

    output_path.parent.mkdir(parents=True, exist_ok=True)
    daily = pd.DataFrame([
        {
            "Date": s.coverage_date.isoformat(),
            "Patient": s.patient_id,
            "Required (min)": s.total_required_minutes,
            "Covered (min)": s.total_covered_minutes,
            "Coverage %": round(s.coverage_percentage * 100, 1),
            "Status": s.status,
            "Alert": s.alert_level,
            "Attention": "yes" if s.requires_attention else "",
            "Gaps": s.gap_count,
            "Largest Gap (min)": s.largest_gap_minutes,
            "Therapists": s.total_therapists,
            "Primary": s.primary_therapist_id or "",
        }
        for s in summaries
    ])
    gaps = pd.DataFrame(_gap_rows(analyses), columns=GAP_FIELDS)

    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        daily.to_excel(writer, sheet_name="Daily Coverage", index=False)
        gaps.to_excel(writer, sheet_name="Gaps", index=False)
        _format_sheet(writer, "Daily Coverage")
        _format_sheet(writer, "Gaps")

    logger.info(f"Excel exported → {output_path}")


def _format_sheet(writer: Any, sheet_name: str) -> None:
    """Header styling, column widths, alternate row shading."""
    try:
        from openpyxl.styles import Alignment, Font, PatternFill
        ws = writer.sheets[sheet_name]
        header_fill = PatternFill("solid", fgColor="1F4E79")
        header_font = Font(bold=True, color="FFFFFF")

        for cell in ws[1]:
            cell.fill = header_fill
            cell.font = header_font
            cell.alignment = Alignment(horizontal="center")

        for col in ws.columns:
            max_len = max((len(str(c.value)) for c in col if c.value is not None), default=8)
            ws.column_dimensions[col[0].column_letter].width = min(max_len + 2, 30)

        alt = PatternFill("solid", fgColor="EBF3FB")
        for i, row in enumerate(ws.iter_rows(min_row=2), start=2):
            if i % 2 == 0:
                for cell in row:
                    cell.fill = alt

    except Exception as e:
        logger.warning(f"Excel formatting failed (non-critical): {e}")


# ---------------------------------------------------------------------------
# Continuity Report
# ---------------------------------------------------------------------------

def export_continuity_report(summary: ContinuitySummary, output_path: Path) -> str:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    sep = "=" * 70
    rule = "─" * 70

    lines = [
        sep,
        f"  CONTINUITY AUDIT REPORT  {summary.window_start} → {summary.window_end}",
        sep,
        "",
        f"  Patients analysed:     {summary.total_patients}",
        f"  Patients with issues:  {summary.patients_with_issues}",
        f"  Average score:         {summary.average_score:.1f}",
        "",
        rule,
        f"  {'Patient':<12} {'Sessions':>8} {'Therapists':>10} {'Primary':<10} {'Share':>6} {'Score':>6}  Grade",
        rule,
    ]

    for pid in sorted(summary.reports):
        r = summary.reports[pid]
        primary = r.primary_therapist
        share = f"{primary.percentage:.0%}" if primary else "-"
        lines.append(
            f"  {pid:<12} {r.total_sessions:>8d} {len(r.therapists):>10d} "
            f"{(primary.therapist_id if primary else '-'):<10} {share:>6} {r.score:>6d}  {r.grade}"
        )

    flagged = [summary.reports[pid] for pid in sorted(summary.reports) if summary.reports[pid].has_issues]
    if flagged:
        lines += ["", rule, "  Warnings & Recommendations", rule]
        for r in flagged:
            lines.append(f"  {r.patient_id}  (score {r.score}, grade {r.grade})")
            for w in r.warnings:
                lines.append(f"    {w}")
            for rec in r.recommendations:
                lines.append(f"    → [{rec['priority']}] {rec['message']}")

    lines += ["", rule, "  System-wide", rule]
    for rec in summary.recommendations:
        lines.append(f"  [{rec['priority']}] {rec['message']}")

    lines.append("")
    lines.append(sep)

    report_text = "\n".join(lines)
    with open(output_path, "w") as f:
        f.write(report_text)

    logger.info(f"Continuity report exported → {output_path}")
    return report_text
