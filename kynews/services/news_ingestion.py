"""
One ingest cycle over the configured feeds: fetch, parse, upsert, enrich, classify, tag and
prune, with every outcome written to the run ledger. The module exposes a reusable
`NewsIngestor` that the scheduler (or a test) drives one `run_cycle()` at a time.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from kynews.services.article_enricher import ArticleEnricher, needs_article_fetch
from kynews.services.content_tags import compute_tags
from kynews.services.dedup import article_signature, find_duplicate
from kynews.services.errors import HttpStatusError, KyNewsError, PersistenceError
from kynews.services.feed_fetcher import FeedFetcher
from kynews.services.feed_parser import parse_feed, parse_listing_page
from kynews.services.gazetteer import PatternTables, build_pattern_tables
from kynews.services.geo_classifier import GeoOptions, classify_region
from kynews.services.identity import canonical_url, content_hash, is_http_url, make_item_id, to_https_url
from kynews.services.models import (
    FETCH_MODE_SCRAPE,
    Feed,
    FeedEntry,
    ItemClassification,
    ItemRecord,
    ItemState,
)
from kynews.services.settings import IngestSettings
from kynews.services.store import (
    RUN_FAILED,
    RUN_OK,
    UPSERT_INSERTED,
    UPSERT_UNCHANGED,
    UPSERT_UPDATED,
    FeedRunMetric,
    NewsStore,
)
from kynews.services.text import word_count

LOGGER = logging.getLogger(__name__)

SOURCE_CRON = "cron"
SOURCE_MANUAL = "manual"
SOURCE_MANUAL_FEED = "manual-feed"

FEED_OK = "ok"
FEED_ERROR = "error"
FEED_NOT_MODIFIED = "not_modified"

ITEM_UNCHANGED = "unchanged"
ITEM_KEPT = "kept"
ITEM_SKIPPED = "skipped"
ITEM_PRUNED = "pruned"
ITEM_EXCLUDED = "excluded"
ITEM_FAILED = "failed"

REJECT_LOW_QUALITY = "low_quality"
REJECT_NOT_RELEVANT = "not_relevant"


@dataclass
class FeedOutcome:
    feed_id: str
    status: str
    http_status: int | None = None
    items_seen: int = 0
    items_upserted: int = 0
    items_pruned: int = 0
    items_excluded: int = 0
    items_failed: int = 0
    error: str | None = None


@dataclass
class CycleSummary:
    source: str
    run_id: int | None = None
    status: str = RUN_OK
    feeds: List[FeedOutcome] = field(default_factory=list)
    error: str | None = None

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.feeds if outcome.status == status)

    def to_details(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "feeds_processed": len(self.feeds),
            "feeds_ok": self.count(FEED_OK),
            "feeds_not_modified": self.count(FEED_NOT_MODIFIED),
            "feeds_failed": self.count(FEED_ERROR),
            "items_seen": sum(outcome.items_seen for outcome in self.feeds),
            "items_upserted": sum(outcome.items_upserted for outcome in self.feeds),
            "items_pruned": sum(outcome.items_pruned for outcome in self.feeds),
            "items_excluded": sum(outcome.items_excluded for outcome in self.feeds),
            "items_failed": sum(outcome.items_failed for outcome in self.feeds),
            "errors": {outcome.feed_id: outcome.error for outcome in self.feeds if outcome.error},
            "error": self.error,
        }


def best_text(item: ItemState) -> str:
    """Richest text we hold for an item: article excerpt, then content, then summary."""
    return item.article_text_excerpt or item.content or item.summary or ""


def classification_body(item: ItemState) -> str:
    parts: List[str] = []
    for value in (item.summary, item.article_text_excerpt or item.content):
        if value and value not in parts:
            parts.append(value)
    return "\n".join(parts)


def build_item_record(feed: Feed, entry: FeedEntry) -> ItemRecord:
    url = canonical_url(entry.link) if entry.link else ""
    image = to_https_url(entry.image) if is_http_url(entry.image) else None
    record_id = make_item_id(entry.link, entry.guid, entry.title, entry.published_at)
    return ItemRecord(
        id=record_id,
        title=entry.title,
        url=url,
        guid=entry.guid,
        author=entry.author,
        region_scope=(feed.region_scope or "").lower(),
        published_at=entry.published_at,
        summary=entry.description,
        content=entry.content,
        image_url=image,
        hash=content_hash(
            entry.title,
            url,
            entry.description,
            entry.content,
            entry.author,
            entry.published_at,
        ),
    )


class NewsIngestor:
    """Runs ingest cycles against one store. Not re-entrant; see `IngestScheduler`."""

    def __init__(
        self,
        store: NewsStore,
        settings: IngestSettings | None = None,
        tables: PatternTables | None = None,
        fetcher: FeedFetcher | None = None,
        enricher: ArticleEnricher | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or IngestSettings()
        self.tables = tables or build_pattern_tables(ambiguous_places=self.settings.ambiguous_places)
        self.fetcher = fetcher or FeedFetcher(
            timeout=self.settings.feed_timeout,
            user_agent=self.settings.user_agent,
        )
        self.enricher = enricher or ArticleEnricher(
            timeout=self.settings.article_timeout,
            max_chars=self.settings.article_max_chars,
            excerpt_chars=self.settings.excerpt_max_chars,
            user_agent=self.settings.user_agent,
        )
        self.geo_options = GeoOptions(
            out_of_state_window=self.settings.out_of_state_window,
            body_mention_threshold=self.settings.body_mention_threshold,
        )

    def run_cycle(
        self,
        source: str = SOURCE_CRON,
        force: bool = False,
        feed_ids: Sequence[str] | None = None,
    ) -> CycleSummary:
        """
        Process every selected feed in order and close out the run record. Per-feed failures are
        recorded and skipped; anything escaping that marks the run failed without raising.
        """
        summary = CycleSummary(source=source)
        try:
            summary.run_id = self.store.start_run(source)
            feeds = self.store.list_feeds(
                enabled_only=True,
                feed_ids=list(feed_ids) if feed_ids else None,
                limit=None if feed_ids else self.settings.max_feeds_per_run,
            )
            LOGGER.info("Run %s (%s): processing %s feeds (force=%s)", summary.run_id, source, len(feeds), force)
            for feed in feeds:
                summary.feeds.append(self.process_feed(feed, summary.run_id, source=source, force=force))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Ingest run %s failed", summary.run_id)
            summary.status = RUN_FAILED
            summary.error = str(exc)
        if summary.run_id is not None:
            try:
                self.store.finish_run(summary.run_id, summary.status, summary.to_details())
            except PersistenceError:
                LOGGER.exception("Failed to close run %s", summary.run_id)
                summary.status = RUN_FAILED
        LOGGER.info(
            "Run %s finished %s: %s feeds (%s failed, %s not modified)",
            summary.run_id,
            summary.status,
            len(summary.feeds),
            summary.count(FEED_ERROR),
            summary.count(FEED_NOT_MODIFIED),
        )
        return summary

    def process_feed(
        self,
        feed: Feed,
        run_id: int | None,
        source: str = SOURCE_CRON,
        force: bool = False,
    ) -> FeedOutcome:
        outcome = FeedOutcome(feed_id=feed.id, status=FEED_OK)
        started = time.monotonic()
        etag, last_modified = feed.etag, feed.last_modified
        try:
            result = self.fetcher.fetch(feed, force=force)
            etag, last_modified = result.etag, result.last_modified
            outcome.http_status = result.status
            if result.not_modified:
                outcome.status = FEED_NOT_MODIFIED
            else:
                entries = self._parse(feed, result.body or b"", result.final_url or feed.url)
                entries = entries[: self.settings.max_items_per_feed]
                outcome.items_seen = len(entries)
                for entry in entries:
                    self._tally(outcome, self.process_entry(feed, entry))
        except Exception as exc:  # noqa: BLE001
            outcome.status = FEED_ERROR
            outcome.error = str(exc) or exc.__class__.__name__
            if isinstance(exc, HttpStatusError):
                outcome.http_status = exc.status
            if isinstance(exc, KyNewsError):
                LOGGER.warning("Feed %s failed: %s", feed.id, outcome.error)
            else:
                LOGGER.exception("Feed %s failed unexpectedly", feed.id)
            self._safe(self.store.record_error, feed.id, outcome.error, run_id)
        finally:
            self._safe(self.store.update_feed_meta, feed.id, etag, last_modified)
        self._safe(
            self.store.record_feed_metric,
            FeedRunMetric(
                feed_id=feed.id,
                status=outcome.status,
                run_id=run_id,
                source=source,
                http_status=outcome.http_status,
                duration_ms=int((time.monotonic() - started) * 1000),
                items_seen=outcome.items_seen,
                items_upserted=outcome.items_upserted,
                error_message=outcome.error,
            ),
        )
        LOGGER.info(
            "Feed %s: %s (seen=%s upserted=%s pruned=%s excluded=%s)",
            feed.id,
            outcome.status,
            outcome.items_seen,
            outcome.items_upserted,
            outcome.items_pruned,
            outcome.items_excluded,
        )
        return outcome

    def _parse(self, feed: Feed, body: bytes, base_url: str) -> List[FeedEntry]:
        if feed.fetch_mode == FETCH_MODE_SCRAPE:
            return parse_listing_page(
                body,
                base_url,
                selectors=feed.scraper_selectors,
                max_links=self.settings.max_items_per_feed,
            )
        return parse_feed(body)

    @staticmethod
    def _tally(outcome: FeedOutcome, result: str) -> None:
        if result in (ITEM_KEPT, ITEM_PRUNED, ITEM_EXCLUDED):
            outcome.items_upserted += 1
        if result == ITEM_PRUNED:
            outcome.items_pruned += 1
        elif result == ITEM_EXCLUDED:
            outcome.items_excluded += 1
        elif result == ITEM_FAILED:
            outcome.items_failed += 1

    @staticmethod
    def _safe(func: Any, *args: Any) -> None:
        try:
            func(*args)
        except PersistenceError:
            LOGGER.exception("Ledger write %s failed", getattr(func, "__name__", func))

    def process_entry(self, feed: Feed, entry: FeedEntry) -> str:
        """
        Persist and classify one entry. Any failure is contained to this item: it is logged,
        counted as failed, and the item stays unprocessed for this feed so the next run retries it.
        """
        record_id: str | None = None
        try:
            record = build_item_record(feed, entry)
            record_id = record.id
            return self._process_record(feed, record)
        except PersistenceError:
            LOGGER.warning("Feed %s item %s: store error", feed.id, record_id or entry.link, exc_info=True)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Feed %s item %s failed", feed.id, record_id or entry.link, exc_info=True)
        return ITEM_FAILED

    def _process_record(self, feed: Feed, record: ItemRecord) -> str:
        if self.store.was_rejected(feed.id, record.id, record.hash):
            return ITEM_SKIPPED
        upserted = self.store.upsert_item(feed.id, record)
        if upserted == UPSERT_UNCHANGED:
            return ITEM_UNCHANGED
        if upserted in (UPSERT_INSERTED, UPSERT_UPDATED):
            self.mark_duplicate(record)
        item = self.store.get_item_state(record.id)
        if item is None:
            return ITEM_FAILED

        if needs_article_fetch(item):
            fetch = self.enricher.fetch(item.url)
            LOGGER.debug("Article fetch for %s: %s", item.id, fetch.status)
            self.store.apply_enrichment(item.id, fetch)
            item = self.store.get_item_state(item.id) or item

        words = word_count(best_text(item))
        if words < self.settings.min_article_words:
            deleted = self.store.remove_item_from_feed(feed.id, item.id, record.hash, REJECT_LOW_QUALITY)
            LOGGER.info(
                "Feed %s item %s pruned: %s words < %s (deleted=%s)",
                feed.id,
                item.id,
                words,
                self.settings.min_article_words,
                deleted,
            )
            return ITEM_PRUNED

        classification = self.classify_item(feed, item)
        if not feed.is_target(self.tables.target_scope):
            self.store.finalize_item(feed.id, item.id, classification.tags)
            return ITEM_KEPT
        if not classification.relevant:
            self.store.update_tags(item.id, classification.tags)
            action = self.store.exclude_from_region(feed.id, item.id, record.hash, REJECT_NOT_RELEVANT)
            LOGGER.info("Feed %s item %s excluded from region: %s", feed.id, item.id, action)
            return ITEM_EXCLUDED
        self.store.finalize_item(
            feed.id,
            item.id,
            classification.tags,
            state_code=(feed.state_code or self.tables.state_code).upper(),
            counties=classification.counties,
        )
        return ITEM_KEPT

    def mark_duplicate(self, record: ItemRecord) -> str | None:
        """Store the item's MinHash signature and flag it when a recent item tells the same story."""
        signature = article_signature(record.title, record.summary)
        if signature is None:
            return None
        duplicate_of, similarity = find_duplicate(signature, self.store.recent_signatures(record.id))
        self.store.set_signature(record.id, signature, duplicate_of)
        if duplicate_of:
            LOGGER.info("Item %s duplicates %s (similarity %.2f)", record.id, duplicate_of, similarity)
        return duplicate_of

    def classify_item(self, feed: Feed, item: ItemState) -> ItemClassification:
        """Tags for every item; region relevance and counties for target-region feeds only."""
        tags = compute_tags(item.title, item.summary, item.content, item.url)
        if not feed.is_target(self.tables.target_scope):
            return ItemClassification(relevant=False, tags=tags)
        geo = classify_region(item.title, classification_body(item), self.tables, self.geo_options)
        if not geo.relevant:
            LOGGER.info(
                "Feed %s item %s not relevant (failed=%s, body_mentions=%s, out_of_state=%s): %s",
                feed.id,
                item.id,
                geo.failed_tier,
                geo.body_mentions,
                geo.out_of_state,
                item.title,
            )
            return ItemClassification(relevant=False, tags=tags)
        counties = list(geo.counties)
        # Every target feed carrying the item contributes its home county, this feed's first.
        defaults = [feed.default_county, *self.store.linked_default_counties(item.id)]
        for name in defaults:
            default_county = self.tables.normalize_county(name)
            if default_county and default_county not in counties:
                counties.append(default_county)
        LOGGER.debug("Feed %s item %s relevant at %s tier: %s", feed.id, item.id, geo.tier, counties)
        return ItemClassification(relevant=True, tags=tags, counties=counties)
