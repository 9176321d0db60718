#!/usr/bin/env python3
"""
Entry point used by cron to discover civic-tech events from search and news.

Usage:
    python3 scripts/discover_events.py --skip-news
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.cli import main


if __name__ == "__main__":
    raise SystemExit(main(["events", *sys.argv[1:]]))
