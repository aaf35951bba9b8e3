#!/usr/bin/env python3
"""
Dry Run - Detect and resolve coverage gaps without modifying the schedule

Usage:
  python scripts/run_dry_run.py --start 2024-01-14 --end 2024-01-20
  python scripts/run_dry_run.py --start 2024-01-14 --end 2024-01-20 --min-confidence 0.6

Outputs to outputs/ directory.
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from care_coverage.dry_run import main

if __name__ == "__main__":
    main()
