"""
SQLite persistence for feeds, items, item locations and the run ledger.

Every write goes through a short transaction of its own so a failure on one item never rolls
back work already done for the rest of the feed. Timestamps use SQLite's `datetime('now')`
(UTC, "YYYY-MM-DD HH:MM:SS").
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Sequence

from kynews.services.dedup import LOOKBACK_HOURS
from kynews.services.errors import PersistenceError
from kynews.services.models import NATIONAL_SCOPE, ArticleFetch, Feed, ItemRecord, ItemState

LOGGER = logging.getLogger(__name__)

UPSERT_INSERTED = "inserted"
UPSERT_UPDATED = "updated"
UPSERT_UNCHANGED = "unchanged"
UPSERT_LINKED = "linked"

EXCLUDE_DEMOTED = "demoted"
EXCLUDE_UNLINKED = "unlinked"
EXCLUDE_DELETED = "deleted"

RUN_RUNNING = "running"
RUN_OK = "ok"
RUN_FAILED = "failed"

ERROR_MAX_CHARS = 4_000

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL,
    state_code TEXT NOT NULL DEFAULT 'KY',
    default_county TEXT,
    region_scope TEXT NOT NULL DEFAULT 'ky',
    fetch_mode TEXT NOT NULL DEFAULT 'rss',
    scraper_selectors TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    etag TEXT,
    last_modified TEXT,
    last_checked_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    url TEXT NOT NULL,
    guid TEXT,
    author TEXT,
    region_scope TEXT NOT NULL DEFAULT 'ky',
    published_at TEXT,
    summary TEXT,
    content TEXT,
    image_url TEXT,
    hash TEXT,
    fetched_at TEXT NOT NULL DEFAULT (datetime('now')),
    article_checked_at TEXT,
    article_fetch_status TEXT,
    article_text_excerpt TEXT,
    tags TEXT NOT NULL DEFAULT '',
    minhash TEXT,
    is_duplicate INTEGER NOT NULL DEFAULT 0,
    duplicate_of TEXT
);
CREATE TABLE IF NOT EXISTS feed_items (
    feed_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    processed_at TEXT,
    PRIMARY KEY (feed_id, item_id)
);
CREATE TABLE IF NOT EXISTS item_locations (
    item_id TEXT NOT NULL,
    state_code TEXT NOT NULL,
    county TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (item_id, state_code, county)
);
CREATE TABLE IF NOT EXISTS item_rejections (
    feed_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    hash TEXT,
    reason TEXT NOT NULL,
    rejected_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (feed_id, item_id)
);
CREATE TABLE IF NOT EXISTS fetch_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL DEFAULT (datetime('now')),
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    source TEXT NOT NULL DEFAULT 'cron',
    details_json TEXT
);
CREATE TABLE IF NOT EXISTS fetch_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    feed_id TEXT,
    at TEXT NOT NULL DEFAULT (datetime('now')),
    error TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS feed_run_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    feed_id TEXT NOT NULL,
    source TEXT,
    status TEXT NOT NULL,
    http_status INTEGER,
    duration_ms INTEGER,
    items_seen INTEGER NOT NULL DEFAULT 0,
    items_upserted INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    checked_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS ingest_lease (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_items_published ON items(published_at);
CREATE INDEX IF NOT EXISTS idx_items_region ON items(region_scope);
CREATE INDEX IF NOT EXISTS idx_items_fetched ON items(fetched_at);
CREATE INDEX IF NOT EXISTS idx_feed_items_item ON feed_items(item_id);
CREATE INDEX IF NOT EXISTS idx_item_locations_county ON item_locations(state_code, county);
CREATE INDEX IF NOT EXISTS idx_fetch_errors_feed ON fetch_errors(feed_id, at);
CREATE INDEX IF NOT EXISTS idx_feed_run_metrics_run ON feed_run_metrics(run_id);
"""

# Columns added after the first schema release; databases created earlier gain them on open.
ADDED_COLUMNS = {
    "items": (
        ("minhash", "TEXT"),
        ("is_duplicate", "INTEGER NOT NULL DEFAULT 0"),
        ("duplicate_of", "TEXT"),
    ),
    "feed_items": (("processed_at", "TEXT"),),
}

ITEM_STATE_COLUMNS = (
    "id, title, url, summary, content, image_url, published_at, article_checked_at, "
    "article_fetch_status, article_text_excerpt, tags, region_scope"
)


@dataclass
class FeedRunMetric:
    feed_id: str
    status: str
    run_id: int | None = None
    source: str | None = None
    http_status: int | None = None
    duration_ms: int | None = None
    items_seen: int = 0
    items_upserted: int = 0
    error_message: str | None = None


def _feed_from_row(row: sqlite3.Row) -> Feed:
    selectors = None
    if row["scraper_selectors"]:
        try:
            parsed = json.loads(row["scraper_selectors"])
            selectors = [str(value) for value in parsed] if isinstance(parsed, list) else None
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring malformed scraper selectors for feed %s", row["id"])
    return Feed(
        id=row["id"],
        url=row["url"],
        name=row["name"],
        category=row["category"],
        region_scope=row["region_scope"],
        state_code=row["state_code"],
        default_county=row["default_county"],
        fetch_mode=row["fetch_mode"],
        scraper_selectors=selectors,
        enabled=bool(row["enabled"]),
        etag=row["etag"],
        last_modified=row["last_modified"],
        last_checked_at=row["last_checked_at"],
    )


def _item_state_from_row(row: sqlite3.Row) -> ItemState:
    return ItemState(**{key: row[key] for key in row.keys()})


class NewsStore:
    """Thread-safe wrapper around one SQLite connection."""

    def __init__(self, db_path: Path | str, target_scope: str = "ky") -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.target_scope = target_scope
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        self.init_schema()

    def init_schema(self) -> None:
        with self.lock:
            try:
                self.conn.executescript(SCHEMA)
                for table, columns in ADDED_COLUMNS.items():
                    for column, ddl in columns:
                        self._ensure_column(table, column, ddl)
            except sqlite3.Error as exc:
                raise PersistenceError(f"Failed to initialize schema at {self.db_path}: {exc}") from exc

    def _ensure_column(self, table: str, column: str, ddl: str) -> None:
        existing = {row[1] for row in self.conn.execute(f"PRAGMA table_info({table})").fetchall()}
        if column not in existing:
            LOGGER.info("Adding column %s.%s", table, column)
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            self.conn.commit()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        with self.lock:
            try:
                with self.conn:
                    yield self.conn.cursor()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self.lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    # Feeds

    def seed_feeds(self, entries: Iterable[Mapping[str, Any]], prune: bool = True) -> int:
        """Upsert feed definitions; with `prune`, feeds missing from `entries` are removed."""
        rows = []
        for entry in entries:
            feed_id = str(entry.get("id") or "").strip()
            url = str(entry.get("url") or "").strip()
            if not feed_id or not url:
                LOGGER.warning("Skipping feed seed without id/url: %s", entry)
                continue
            selectors = entry.get("scraper_selectors") or entry.get("selectors")
            rows.append(
                (
                    feed_id,
                    str(entry.get("name") or feed_id),
                    str(entry.get("category") or ""),
                    url,
                    str(entry.get("state_code") or "KY").upper(),
                    entry.get("default_county") or None,
                    str(entry.get("region_scope") or "ky").lower(),
                    str(entry.get("fetch_mode") or "rss").lower(),
                    json.dumps(list(selectors)) if selectors else None,
                    0 if entry.get("enabled") in (False, 0, "0") else 1,
                )
            )
        with self.transaction() as cur:
            cur.executemany(
                """
                INSERT INTO feeds (
                    id, name, category, url, state_code, default_county, region_scope,
                    fetch_mode, scraper_selectors, enabled
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    category = excluded.category,
                    url = excluded.url,
                    state_code = excluded.state_code,
                    default_county = excluded.default_county,
                    region_scope = excluded.region_scope,
                    fetch_mode = excluded.fetch_mode,
                    scraper_selectors = excluded.scraper_selectors,
                    enabled = excluded.enabled
                """,
                rows,
            )
            if prune:
                keep = [row[0] for row in rows]
                placeholders = ",".join("?" for _ in keep) or "''"
                cur.execute(f"DELETE FROM feed_items WHERE feed_id NOT IN ({placeholders})", keep)
                cur.execute(f"DELETE FROM feeds WHERE id NOT IN ({placeholders})", keep)
                cur.execute("DELETE FROM items WHERE id NOT IN (SELECT item_id FROM feed_items)")
                cur.execute("DELETE FROM item_locations WHERE item_id NOT IN (SELECT id FROM items)")
        LOGGER.info("Seeded %s feeds (prune=%s)", len(rows), prune)
        return len(rows)

    def list_feeds(
        self,
        enabled_only: bool = True,
        feed_ids: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> List[Feed]:
        """Feeds in polling order: least recently checked first."""
        clauses: List[str] = []
        params: List[Any] = []
        if enabled_only:
            clauses.append("enabled = 1")
        if feed_ids:
            clauses.append(f"id IN ({','.join('?' for _ in feed_ids)})")
            params.extend(feed_ids)
        sql = "SELECT * FROM feeds"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY COALESCE(last_checked_at, '1970-01-01 00:00:00') ASC, name ASC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [_feed_from_row(row) for row in self._query(sql, params)]

    def get_feed(self, feed_id: str) -> Feed | None:
        rows = self._query("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _feed_from_row(rows[0]) if rows else None

    def update_feed_meta(self, feed_id: str, etag: str | None, last_modified: str | None) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE feeds
                SET etag = ?, last_modified = ?, last_checked_at = datetime('now')
                WHERE id = ?
                """,
                (etag, last_modified, feed_id),
            )

    # Items

    def upsert_item(self, feed_id: str, record: ItemRecord) -> str:
        """
        Insert or update an item and link it to `feed_id`. Returns "unchanged" only when this
        feed already finished processing the item at the same content hash; "linked" when the
        content is unchanged but the link is new or its processing never completed. A content
        change reopens the item for every feed that carries it. Feed-supplied summary, content
        and image never replace a stored value with an empty one, and a non-target feed never
        demotes a target-region item.
        """
        with self.transaction() as cur:
            existing = cur.execute("SELECT hash FROM items WHERE id = ?", (record.id,)).fetchone()
            link = cur.execute(
                "SELECT processed_at FROM feed_items WHERE feed_id = ? AND item_id = ?",
                (feed_id, record.id),
            ).fetchone()
            same_hash = existing is not None and existing["hash"] == record.hash
            if same_hash and link is not None and link["processed_at"]:
                return UPSERT_UNCHANGED
            cur.execute(
                """
                INSERT INTO items (
                    id, title, url, guid, author, region_scope, published_at,
                    summary, content, image_url, hash
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    url = excluded.url,
                    guid = COALESCE(excluded.guid, items.guid),
                    author = COALESCE(excluded.author, items.author),
                    region_scope = CASE
                        WHEN excluded.region_scope = ? THEN excluded.region_scope
                        ELSE items.region_scope
                    END,
                    published_at = COALESCE(excluded.published_at, items.published_at),
                    summary = COALESCE(excluded.summary, items.summary),
                    content = COALESCE(excluded.content, items.content),
                    image_url = COALESCE(excluded.image_url, items.image_url),
                    hash = excluded.hash
                """,
                (
                    record.id,
                    record.title,
                    record.url,
                    record.guid,
                    record.author,
                    record.region_scope,
                    record.published_at,
                    record.summary,
                    record.content,
                    record.image_url,
                    record.hash,
                    self.target_scope,
                ),
            )
            if existing is not None and not same_hash:
                cur.execute("UPDATE feed_items SET processed_at = NULL WHERE item_id = ?", (record.id,))
            cur.execute(
                "INSERT OR IGNORE INTO feed_items (feed_id, item_id) VALUES (?, ?)",
                (feed_id, record.id),
            )
        if existing is None:
            return UPSERT_INSERTED
        return UPSERT_LINKED if same_hash else UPSERT_UPDATED

    def get_item_state(self, item_id: str) -> ItemState | None:
        rows = self._query(f"SELECT {ITEM_STATE_COLUMNS} FROM items WHERE id = ?", (item_id,))
        return _item_state_from_row(rows[0]) if rows else None

    def apply_enrichment(self, item_id: str, fetch: ArticleFetch) -> None:
        """Record the article check; extracted values only fill fields that are still empty."""
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE items SET
                    article_checked_at = datetime('now'),
                    article_fetch_status = ?,
                    article_text_excerpt = COALESCE(?, article_text_excerpt),
                    content = COALESCE(NULLIF(content, ''), ?),
                    image_url = COALESCE(NULLIF(image_url, ''), ?),
                    published_at = COALESCE(published_at, ?)
                WHERE id = ?
                """,
                (fetch.status, fetch.text, fetch.text, fetch.image_url, fetch.published_at, item_id),
            )

    def _write_tags(self, cur: sqlite3.Cursor, item_id: str, tags: str) -> bool:
        cur.execute("UPDATE items SET tags = ? WHERE id = ? AND tags IS NOT ?", (tags, item_id, tags))
        return cur.rowcount > 0

    def _write_locations(
        self, cur: sqlite3.Cursor, item_id: str, state_code: str, counties: Sequence[str]
    ) -> None:
        rows = [(item_id, state_code, "")]
        rows.extend((item_id, state_code, county) for county in dict.fromkeys(counties) if county)
        cur.execute("DELETE FROM item_locations WHERE item_id = ? AND state_code = ?", (item_id, state_code))
        cur.executemany(
            "INSERT OR IGNORE INTO item_locations (item_id, state_code, county) VALUES (?, ?, ?)",
            rows,
        )

    def _write_rejection(
        self, cur: sqlite3.Cursor, feed_id: str, item_id: str, item_hash: str | None, reason: str
    ) -> None:
        cur.execute(
            """
            INSERT INTO item_rejections (feed_id, item_id, hash, reason, rejected_at)
            VALUES (?, ?, ?, ?, datetime('now'))
            ON CONFLICT(feed_id, item_id) DO UPDATE SET
                hash = excluded.hash,
                reason = excluded.reason,
                rejected_at = excluded.rejected_at
            """,
            (feed_id, item_id, item_hash, reason),
        )

    def update_tags(self, item_id: str, tags: str) -> bool:
        with self.transaction() as cur:
            return self._write_tags(cur, item_id, tags)

    def rewrite_locations(self, item_id: str, state_code: str, counties: Sequence[str]) -> None:
        """Replace this item's locations for `state_code` with a state row plus one row per county."""
        with self.transaction() as cur:
            self._write_locations(cur, item_id, state_code, counties)

    def finalize_item(
        self,
        feed_id: str,
        item_id: str,
        tags: str,
        state_code: str | None = None,
        counties: Sequence[str] = (),
    ) -> None:
        """
        Store the classification outcome and mark the item processed for `feed_id`, all in one
        transaction. Until this commits, the next upsert of the same content reports "linked"
        so the item is processed again.
        """
        with self.transaction() as cur:
            self._write_tags(cur, item_id, tags)
            if state_code:
                self._write_locations(cur, item_id, state_code, counties)
            cur.execute(
                "UPDATE feed_items SET processed_at = datetime('now') WHERE feed_id = ? AND item_id = ?",
                (feed_id, item_id),
            )

    def linked_default_counties(self, item_id: str) -> List[str]:
        """Default counties of every target-region feed carrying the item, ordered by feed id."""
        rows = self._query(
            """
            SELECT f.default_county FROM feed_items fi JOIN feeds f ON f.id = fi.feed_id
            WHERE fi.item_id = ? AND LOWER(f.region_scope) = ?
                AND f.default_county IS NOT NULL AND f.default_county != ''
            ORDER BY f.id
            """,
            (item_id, self.target_scope.lower()),
        )
        return [row["default_county"] for row in rows]

    def _delete_if_orphaned(self, cur: sqlite3.Cursor, item_id: str) -> bool:
        remaining = cur.execute("SELECT 1 FROM feed_items WHERE item_id = ? LIMIT 1", (item_id,)).fetchone()
        if remaining is not None:
            return False
        cur.execute("DELETE FROM item_locations WHERE item_id = ?", (item_id,))
        cur.execute("DELETE FROM items WHERE id = ?", (item_id,))
        return True

    def remove_item_from_feed(
        self, feed_id: str, item_id: str, item_hash: str | None = None, reason: str | None = None
    ) -> bool:
        """
        Unlink an item from one feed; returns True when that orphaned (and deleted) it. With a
        `reason`, the rejection is recorded in the same transaction.
        """
        with self.transaction() as cur:
            cur.execute("DELETE FROM feed_items WHERE feed_id = ? AND item_id = ?", (feed_id, item_id))
            if reason:
                self._write_rejection(cur, feed_id, item_id, item_hash, reason)
            return self._delete_if_orphaned(cur, item_id)

    def exclude_from_region(
        self, feed_id: str, item_id: str, item_hash: str | None = None, reason: str | None = None
    ) -> str:
        """
        Take an item out of the target region after it failed classification for `feed_id`.
        Items still carried by another target-region feed keep their scope and locations; items
        carried only by non-target feeds are demoted to national scope and lose their locations;
        items left with no feed at all are deleted.
        """
        with self.transaction() as cur:
            cur.execute("DELETE FROM feed_items WHERE feed_id = ? AND item_id = ?", (feed_id, item_id))
            if reason:
                self._write_rejection(cur, feed_id, item_id, item_hash, reason)
            if self._delete_if_orphaned(cur, item_id):
                return EXCLUDE_DELETED
            target = cur.execute(
                """
                SELECT 1 FROM feed_items fi JOIN feeds f ON f.id = fi.feed_id
                WHERE fi.item_id = ? AND LOWER(f.region_scope) = ?
                LIMIT 1
                """,
                (item_id, self.target_scope.lower()),
            ).fetchone()
            if target is not None:
                return EXCLUDE_UNLINKED
            cur.execute("DELETE FROM item_locations WHERE item_id = ?", (item_id,))
            cur.execute("UPDATE items SET region_scope = ? WHERE id = ?", (NATIONAL_SCOPE, item_id))
        return EXCLUDE_DEMOTED

    def record_rejection(self, feed_id: str, item_id: str, item_hash: str | None, reason: str) -> None:
        with self.transaction() as cur:
            self._write_rejection(cur, feed_id, item_id, item_hash, reason)

    def was_rejected(self, feed_id: str, item_id: str, item_hash: str | None) -> bool:
        rows = self._query(
            "SELECT 1 FROM item_rejections WHERE feed_id = ? AND item_id = ? AND hash IS ?",
            (feed_id, item_id, item_hash),
        )
        return bool(rows)

    # Near-duplicates

    def recent_signatures(
        self, exclude_id: str, hours: int = LOOKBACK_HOURS, limit: int = 500
    ) -> List[tuple[str, str]]:
        """MinHash signatures of canonical (non-duplicate) items fetched in the last `hours`, newest first."""
        rows = self._query(
            """
            SELECT id, minhash FROM items
            WHERE fetched_at >= datetime('now', ?) AND id != ? AND minhash IS NOT NULL AND is_duplicate = 0
            ORDER BY fetched_at DESC, id LIMIT ?
            """,
            (f"-{int(hours)} hours", exclude_id, limit),
        )
        return [(row["id"], row["minhash"]) for row in rows]

    def set_signature(self, item_id: str, signature: str, duplicate_of: str | None = None) -> None:
        with self.transaction() as cur:
            cur.execute(
                "UPDATE items SET minhash = ?, is_duplicate = ?, duplicate_of = ? WHERE id = ?",
                (signature, 1 if duplicate_of else 0, duplicate_of, item_id),
            )

    # Reads

    def list_items(
        self,
        feed_id: str | None = None,
        region_scope: str | None = None,
        county: str | None = None,
        tag: str | None = None,
        fetch_status: str | None = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if feed_id:
            clauses.append("EXISTS (SELECT 1 FROM feed_items fi WHERE fi.item_id = items.id AND fi.feed_id = ?)")
            params.append(feed_id)
        if region_scope:
            clauses.append("items.region_scope = ?")
            params.append(region_scope)
        if county:
            clauses.append(
                "EXISTS (SELECT 1 FROM item_locations il WHERE il.item_id = items.id AND il.county = ?)"
            )
            params.append(county)
        if tag:
            clauses.append("(',' || items.tags || ',') LIKE ?")
            params.append(f"%,{tag},%")
        if fetch_status:
            clauses.append("items.article_fetch_status = ?")
            params.append(fetch_status)
        sql = "SELECT * FROM items"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY COALESCE(items.published_at, items.fetched_at) DESC, items.id LIMIT ?"
        params.append(limit)
        return [dict(row) for row in self._query(sql, params)]

    def count_items(self) -> int:
        return int(self._query("SELECT COUNT(*) AS n FROM items")[0]["n"])

    def feed_item_ids(self, feed_id: str) -> List[str]:
        rows = self._query("SELECT item_id FROM feed_items WHERE feed_id = ? ORDER BY item_id", (feed_id,))
        return [row["item_id"] for row in rows]

    def item_locations(self, item_id: str) -> List[tuple[str, str]]:
        rows = self._query(
            "SELECT state_code, county FROM item_locations WHERE item_id = ? ORDER BY state_code, county",
            (item_id,),
        )
        return [(row["state_code"], row["county"]) for row in rows]

    # Run ledger

    def start_run(self, source: str) -> int:
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO fetch_runs (started_at, status, source) VALUES (datetime('now'), ?, ?)",
                (RUN_RUNNING, source),
            )
            return int(cur.lastrowid)

    def finish_run(self, run_id: int, status: str, details: Mapping[str, Any] | None = None) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE fetch_runs
                SET finished_at = datetime('now'), status = ?, details_json = ?
                WHERE id = ?
                """,
                (status, json.dumps(details or {}, sort_keys=True, default=str), run_id),
            )

    def record_error(self, feed_id: str | None, error: str, run_id: int | None = None) -> None:
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO fetch_errors (run_id, feed_id, at, error) VALUES (?, ?, datetime('now'), ?)",
                (run_id, feed_id, (error or "unknown error")[:ERROR_MAX_CHARS]),
            )

    def record_feed_metric(self, metric: FeedRunMetric) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO feed_run_metrics (
                    run_id, feed_id, source, status, http_status, duration_ms,
                    items_seen, items_upserted, error_message, checked_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                """,
                (
                    metric.run_id,
                    metric.feed_id,
                    metric.source,
                    metric.status,
                    metric.http_status,
                    metric.duration_ms,
                    metric.items_seen,
                    metric.items_upserted,
                    (metric.error_message or None) and metric.error_message[:ERROR_MAX_CHARS],
                ),
            )

    def get_run(self, run_id: int) -> Dict[str, Any] | None:
        rows = self._query("SELECT * FROM fetch_runs WHERE id = ?", (run_id,))
        return dict(rows[0]) if rows else None

    def recent_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._query("SELECT * FROM fetch_runs ORDER BY id DESC LIMIT ?", (limit,))]

    def fetch_errors(self, feed_id: str | None = None) -> List[Dict[str, Any]]:
        if feed_id:
            rows = self._query("SELECT * FROM fetch_errors WHERE feed_id = ? ORDER BY id", (feed_id,))
        else:
            rows = self._query("SELECT * FROM fetch_errors ORDER BY id")
        return [dict(row) for row in rows]

    def feed_metrics(self, run_id: int) -> List[Dict[str, Any]]:
        rows = self._query("SELECT * FROM feed_run_metrics WHERE run_id = ? ORDER BY id", (run_id,))
        return [dict(row) for row in rows]

    # Lease

    def acquire_lease(self, name: str, holder: str, ttl_seconds: int) -> bool:
        """Take the named lease unless another holder has an unexpired one."""
        with self.transaction() as cur:
            cur.execute(
                "DELETE FROM ingest_lease WHERE name = ? AND (expires_at <= datetime('now') OR holder = ?)",
                (name, holder),
            )
            cur.execute(
                """
                INSERT OR IGNORE INTO ingest_lease (name, holder, acquired_at, expires_at)
                VALUES (?, ?, datetime('now'), datetime('now', ?))
                """,
                (name, holder, f"+{int(ttl_seconds)} seconds"),
            )
            row = cur.execute("SELECT holder FROM ingest_lease WHERE name = ?", (name,)).fetchone()
        return row is not None and row["holder"] == holder

    def release_lease(self, name: str, holder: str) -> None:
        with self.transaction() as cur:
            cur.execute("DELETE FROM ingest_lease WHERE name = ? AND holder = ?", (name, holder))
