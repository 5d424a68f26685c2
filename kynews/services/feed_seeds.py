"""
Loading feed definitions from a JSON seed file into the feeds table.

The file holds either a list of feed objects or `{"feeds": [...]}`; each object needs `id`
and `url`, everything else falls back to target-region defaults.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Sequence

from kynews.services.errors import KyNewsError
from kynews.services.settings import IngestSettings
from kynews.services.store import NewsStore

LOGGER = logging.getLogger(__name__)

DEFAULT_SEED_PATH = Path("assets/feeds.seed.json")


def load_feed_seeds(path: Path = DEFAULT_SEED_PATH) -> List[Dict[str, Any]]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise KyNewsError(f"Unable to read feed seeds from {path}: {exc}") from exc
    feeds = data.get("feeds", []) if isinstance(data, dict) else data
    if not isinstance(feeds, list):
        raise KyNewsError(f"Feed seeds in {path} must be a list")
    return [feed for feed in feeds if isinstance(feed, dict)]


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Upsert feed definitions into the news database.")
    parser.add_argument("--seed", type=Path, default=DEFAULT_SEED_PATH, help="Feed seed JSON file.")
    parser.add_argument("--db-path", type=Path, default=None, help="SQLite database path.")
    parser.add_argument(
        "--keep-missing",
        action="store_true",
        help="Do not delete feeds that are absent from the seed file.",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    settings = IngestSettings.from_env().with_overrides(db_path=args.db_path)
    store = NewsStore(settings.db_path)
    try:
        count = store.seed_feeds(load_feed_seeds(args.seed), prune=not args.keep_missing)
    except KyNewsError:
        LOGGER.exception("Feed seeding failed.")
        return 1
    finally:
        store.close()
    LOGGER.info("Seeded %s feeds from %s", count, args.seed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
