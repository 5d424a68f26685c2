"""
Runtime configuration for the ingestion cycle. Values come from the environment (optionally
seeded from a `.env` file at the repo root) and may be overridden by CLI flags.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DB_PATH = Path("data/dev.sqlite")
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; KyNewsIngester/1.0; +https://localkynews.com)"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-integer %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        LOGGER.warning("Ignoring non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def _env_list(name: str) -> tuple[str, ...] | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class IngestSettings:
    db_path: Path = DEFAULT_DB_PATH
    interval_minutes: int = 15
    feed_timeout: int = 15
    article_timeout: int = 12
    article_max_chars: int = 2_000_000
    excerpt_max_chars: int = 10_000
    min_article_words: int = 50
    max_feeds_per_run: int = 200
    max_items_per_feed: int = 60
    user_agent: str = DEFAULT_USER_AGENT
    # None keeps the gazetteer's own ambiguous list.
    ambiguous_places: tuple[str, ...] | None = None
    out_of_state_window: int = 12
    body_mention_threshold: int = 2
    lease_seconds: int = 1800

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "IngestSettings":
        if load_env_file and load_dotenv(dotenv_path=REPO_ROOT / ".env"):
            LOGGER.debug("Loaded environment variables from .env file.")
        return cls(
            db_path=Path(os.getenv("KYNEWS_DB_PATH") or DEFAULT_DB_PATH),
            interval_minutes=_env_int("INGEST_INTERVAL_MINUTES", 15),
            feed_timeout=_env_int("FEED_TIMEOUT_SECONDS", 15),
            article_timeout=_env_int("ARTICLE_TIMEOUT_SECONDS", 12),
            article_max_chars=_env_int("ARTICLE_MAX_CHARS", 2_000_000),
            excerpt_max_chars=_env_int("ARTICLE_EXCERPT_MAX_CHARS", 10_000),
            min_article_words=_env_int("MIN_ARTICLE_WORDS", 50),
            max_feeds_per_run=_env_int("MAX_FEEDS_PER_RUN", 200),
            max_items_per_feed=_env_int("MAX_ITEMS_PER_FEED", 60),
            user_agent=os.getenv("RSS_USER_AGENT") or DEFAULT_USER_AGENT,
            ambiguous_places=_env_list("KYNEWS_AMBIGUOUS_PLACES"),
            out_of_state_window=_env_int("KYNEWS_OUT_OF_STATE_WINDOW", 12),
            body_mention_threshold=_env_int("KYNEWS_BODY_MENTION_THRESHOLD", 2),
            lease_seconds=_env_int("INGEST_LEASE_SECONDS", 1800),
        )

    def with_overrides(self, **overrides: Any) -> "IngestSettings":
        """Return a copy with every non-None override applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **applied) if applied else self
