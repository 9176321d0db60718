#!/usr/bin/env python3
"""
Entry point used by cron to pull trade-show listings from the event directory.

Usage:
    python3 scripts/discover_directory_events.py --log-level DEBUG
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.cli import main


if __name__ == "__main__":
    raise SystemExit(main(["directory", *sys.argv[1:]]))
