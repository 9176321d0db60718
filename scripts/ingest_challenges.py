#!/usr/bin/env python3
"""
Entry point used by cron to turn category news into civic challenges.

Usage:
    python3 scripts/ingest_challenges.py --max-items 30
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.cli import main


if __name__ == "__main__":
    raise SystemExit(main(["challenges", *sys.argv[1:]]))
