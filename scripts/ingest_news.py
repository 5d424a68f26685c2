#!/usr/bin/env python3
"""
Entry point used by cron/systemd to poll the regional news feeds.

Usage:
    python3 scripts/ingest_news.py --once
    python3 scripts/ingest_news.py --interval-minutes 15
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from kynews.services.scheduler import main


if __name__ == "__main__":
    raise SystemExit(main())
