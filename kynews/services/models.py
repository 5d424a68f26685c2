"""Records passed between the fetch, parse, enrich, classify and persist stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

FETCH_MODE_RSS = "rss"
FETCH_MODE_SCRAPE = "scrape"
NATIONAL_SCOPE = "national"


@dataclass
class Feed:
    id: str
    url: str
    name: str = ""
    category: str = ""
    region_scope: str = "ky"
    state_code: str = "KY"
    default_county: str | None = None
    fetch_mode: str = FETCH_MODE_RSS
    scraper_selectors: Sequence[str] | None = None
    enabled: bool = True
    etag: str | None = None
    last_modified: str | None = None
    last_checked_at: str | None = None

    def is_target(self, target_scope: str) -> bool:
        return (self.region_scope or "").lower() == target_scope.lower()


@dataclass
class FetchResult:
    status: int
    etag: str | None
    last_modified: str | None
    body: bytes | None
    final_url: str | None = None

    @property
    def not_modified(self) -> bool:
        return self.status == 304


@dataclass
class FeedEntry:
    title: str
    link: str
    guid: str | None = None
    description: str | None = None
    content: str | None = None
    published_at: str | None = None
    author: str | None = None
    image: str | None = None


@dataclass
class ArticleFetch:
    status: str
    text: str | None = None
    image_url: str | None = None
    published_at: str | None = None


@dataclass
class ItemRecord:
    """Row-shaped view of an item as it is written to the store."""

    id: str
    title: str
    url: str
    guid: str | None
    author: str | None
    region_scope: str
    published_at: str | None
    summary: str | None
    content: str | None
    image_url: str | None
    hash: str


@dataclass
class ItemState:
    """Current persisted state of an item; drives the enrichment and quality decisions."""

    id: str
    title: str
    url: str
    summary: str | None = None
    content: str | None = None
    image_url: str | None = None
    published_at: str | None = None
    article_checked_at: str | None = None
    article_fetch_status: str | None = None
    article_text_excerpt: str | None = None
    tags: str | None = None
    region_scope: str | None = None


@dataclass
class ItemClassification:
    relevant: bool
    tags: str
    counties: list[str] = field(default_factory=list)

    def to_serializable(self) -> dict[str, Any]:
        return {"relevant": self.relevant, "tags": self.tags, "counties": list(self.counties)}
