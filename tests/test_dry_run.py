"""
tests/test_dry_run.py — End-to-end dry run on the sample configuration.

Week of 2024-01-14 → 2024-01-20: six gaps, all resolved, clean audit.
"""

import csv
import json
import sys
from datetime import date
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from care_coverage.conflicts import ConflictDetector
from care_coverage.config import DEFAULT_CONFIG_DIR
from care_coverage.dry_run import RUN_LOG_FILENAME, main, run_dry_run

START = date(2024, 1, 14)
END = date(2024, 1, 20)


@pytest.fixture
def result(tmp_path):
    return run_dry_run(START, END, config_dir=DEFAULT_CONFIG_DIR, output_dir=tmp_path, workers=2)


# ============================================================
# Orchestration
# ============================================================

class TestDryRun:

    def test_committed_schedule_is_clean(self, result):
        assert result["audit"] == []

    def test_gaps_detected(self, result):
        spans = sorted(
            (str(g.date), g.time_block_id, str(g.time_range), g.kind)
            for analysis in result["gaps"] for g in analysis.gaps
        )
        assert spans == [
            ("2024-01-15", "B1", "10:30-12:00", "partial"),
            ("2024-01-15", "B2", "13:00-15:00", "uncovered"),
            ("2024-01-16", "B4", "10:00-12:00", "partial"),
            ("2024-01-16", "B5", "11:30-13:00", "partial"),
            ("2024-01-17", "B6", "09:00-12:00", "uncovered"),
            ("2024-01-17", "B7", "14:00-16:00", "uncovered"),
        ]

    def test_every_gap_resolved(self, result):
        report = result["report"]
        assert report.gaps_found == 6
        assert report.resolved_count == 6
        assert report.unresolved_count == 0
        assert len(result["committed"]) == 6

    def test_expected_therapists(self, result):
        picks = {p.gap.time_block_id: (p.therapist_id, p.score) for p in result["report"].proposals}
        assert picks == {
            "B1": ("T1", 90),
            "B2": ("T1", 85),
            "B4": ("T2", 85),
            "B5": ("T3", 60),
            "B6": ("T1", 95),
            "B7": ("T5", 80),
        }

    def test_committed_set_has_no_conflicts(self, result):
        assert ConflictDetector().audit(result["committed"]) == []

    def test_coverage_complete_after_run(self, result):
        assert all(s.status == "full" for s in result["coverage"])

    def test_continuity(self, result):
        continuity = result["continuity"]
        assert sorted(continuity.reports) == ["P1", "P2", "P3"]
        assert continuity.patients_with_issues == 0
        assert all(r.grade == "A" for r in continuity.reports.values())

    def test_min_confidence_leaves_gaps_open(self, tmp_path):
        result = run_dry_run(START, END, output_dir=tmp_path, min_confidence=0.92)
        report = result["report"]
        assert [p.gap.time_block_id for p in report.proposals] == ["B6"]
        assert report.unresolved_count == 5
        assert {u.reason for u in report.unresolved} == {"low_confidence"}


# ============================================================
# Outputs
# ============================================================

class TestOutputs:

    def test_files_written(self, result):
        for path in result["outputs"].values():
            assert path.exists(), f"Missing output {path.name}"

    def test_gaps_csv(self, result):
        with open(result["outputs"]["gaps"], newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 6
        assert {r["kind"] for r in rows} == {"partial", "uncovered"}

    def test_proposals_csv(self, result):
        with open(result["outputs"]["proposals"], newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["outcome"] for r in rows] == ["proposed"] * 6

    def test_excel_sheets(self, result):
        openpyxl = pytest.importorskip("openpyxl")
        wb = openpyxl.load_workbook(result["outputs"]["excel"])
        assert wb.sheetnames == ["Daily Coverage", "Gaps"]
        assert wb["Daily Coverage"]["A1"].value == "Date"
        assert wb["Daily Coverage"]["A1"].font.bold

    def test_continuity_report(self, result):
        text = result["outputs"]["continuity"].read_text()
        assert "CONTINUITY AUDIT REPORT" in text
        assert "All patients have good therapist continuity" in text

    def test_run_log_appends(self, tmp_path):
        run_dry_run(START, END, output_dir=tmp_path)
        run_dry_run(START, END, output_dir=tmp_path)
        entries = json.loads((tmp_path / RUN_LOG_FILENAME).read_text())
        assert len(entries) == 2
        assert entries[0]["resolved"] == 6

    def test_input_files_untouched(self, tmp_path):
        before = (DEFAULT_CONFIG_DIR / "assignments.csv").read_text()
        run_dry_run(START, END, output_dir=tmp_path)
        assert (DEFAULT_CONFIG_DIR / "assignments.csv").read_text() == before


# ============================================================
# CLI
# ============================================================

class TestCli:

    def test_main_writes_outputs(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", [
            "dry_run", "--start", "2024-01-14", "--end", "2024-01-20",
            "--output-dir", str(tmp_path), "--workers", "1",
        ])
        main()
        assert (tmp_path / "dry_run_2024-01-14_2024-01-20_gaps.csv").exists()
        assert (tmp_path / "dry_run_2024-01-14_2024-01-20_coverage.xlsx").exists()

    @pytest.mark.parametrize("argv", [
        ["--start", "14/01/2024", "--end", "2024-01-20"],
        ["--start", "2024-01-20", "--end", "2024-01-14"],
        ["--start", "2024-01-14", "--end", "2024-01-20", "--min-confidence", "1.5"],
    ])
    def test_bad_arguments_exit(self, tmp_path, monkeypatch, argv):
        monkeypatch.setattr(sys, "argv", ["dry_run", *argv, "--output-dir", str(tmp_path)])
        with pytest.raises(SystemExit):
            main()
