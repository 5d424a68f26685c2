#!/usr/bin/env python3
"""
Upsert feed definitions from assets/feeds.seed.json into the news database.

Usage:
    python3 scripts/seed_feeds.py --seed assets/feeds.seed.json
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from kynews.services.feed_seeds import main


if __name__ == "__main__":
    raise SystemExit(main())
