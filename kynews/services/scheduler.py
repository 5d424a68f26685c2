"""
Timer-driven and on-demand execution of ingest cycles.

Overlap is prevented at two levels: an in-process lock (so a manual trigger never runs on top
of a timer tick) and a lease row in the database (so two processes sharing one database never
ingest at the same time). A trigger that cannot get both is skipped, not queued.
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
import threading
import uuid
from pathlib import Path
from typing import Sequence

from kynews.services.feed_seeds import load_feed_seeds
from kynews.services.news_ingestion import (
    SOURCE_CRON,
    SOURCE_MANUAL,
    SOURCE_MANUAL_FEED,
    CycleSummary,
    NewsIngestor,
)
from kynews.services.settings import IngestSettings
from kynews.services.store import RUN_OK, NewsStore

LOGGER = logging.getLogger(__name__)

LEASE_NAME = "ingest"


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class IngestScheduler:
    def __init__(
        self,
        ingestor: NewsIngestor,
        lease_seconds: int = 1800,
        holder: str | None = None,
    ) -> None:
        self.ingestor = ingestor
        self.store = ingestor.store
        self.lease_seconds = lease_seconds
        self.holder = holder or _default_holder()
        self._lock = threading.Lock()
        self._stop = threading.Event()

    def trigger(
        self,
        source: str = SOURCE_CRON,
        force: bool = False,
        feed_ids: Sequence[str] | None = None,
    ) -> CycleSummary | None:
        """Run one cycle now, or return None if another cycle holds the lock or lease."""
        if not self._lock.acquire(blocking=False):
            LOGGER.info("Skipping %s trigger: a cycle is already running in this process.", source)
            return None
        try:
            try:
                leased = self.store.acquire_lease(LEASE_NAME, self.holder, self.lease_seconds)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Could not acquire ingest lease.")
                return None
            if not leased:
                LOGGER.info("Skipping %s trigger: ingest lease held by another process.", source)
                return None
            try:
                return self.ingestor.run_cycle(source=source, force=force, feed_ids=feed_ids)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Ingest cycle crashed.")
                return None
            finally:
                try:
                    self.store.release_lease(LEASE_NAME, self.holder)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Could not release ingest lease.")
        finally:
            self._lock.release()

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self, interval_minutes: int) -> None:
        """Run a cycle at startup and then every `interval_minutes` until `stop()` is called."""
        interval = max(1, interval_minutes) * 60
        LOGGER.info("Scheduler started (every %s minutes, holder=%s)", interval_minutes, self.holder)
        while not self._stop.is_set():
            self.trigger(SOURCE_CRON)
            if self._stop.wait(interval):
                break
        LOGGER.info("Scheduler stopped.")


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest regional news feeds on a schedule.")
    parser.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help="SQLite database path (default: $KYNEWS_DB_PATH or data/dev.sqlite).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit instead of polling on an interval.",
    )
    parser.add_argument(
        "--interval-minutes",
        type=int,
        default=None,
        help="Minutes between cycles (default: $INGEST_INTERVAL_MINUTES or 15).",
    )
    parser.add_argument(
        "--feed-id",
        action="append",
        default=None,
        help="Only ingest this feed (repeatable). Implies --once.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore stored ETag/Last-Modified and refetch every feed.",
    )
    parser.add_argument(
        "--seed",
        type=Path,
        default=None,
        help="Feed definitions (JSON) to upsert before ingesting.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    settings = IngestSettings.from_env().with_overrides(
        db_path=args.db_path,
        interval_minutes=args.interval_minutes,
    )
    LOGGER.info("Starting news ingestion against %s", settings.db_path)

    store = NewsStore(settings.db_path)
    try:
        if args.seed:
            store.seed_feeds(load_feed_seeds(args.seed))
        scheduler = IngestScheduler(NewsIngestor(store, settings), lease_seconds=settings.lease_seconds)
        if args.once or args.feed_id:
            if args.feed_id:
                source = SOURCE_MANUAL_FEED
            else:
                source = SOURCE_MANUAL if args.force else SOURCE_CRON
            summary = scheduler.trigger(source, force=args.force, feed_ids=args.feed_id)
            return 0 if summary is not None and summary.status == RUN_OK else 1
        try:
            scheduler.run_forever(settings.interval_minutes)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted; shutting down.")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
