"""
Normalization of RSS 2.0 / Atom payloads (via feedparser) and scraped listing pages into
`FeedEntry` records. Parsing keeps no state between calls.
"""

from __future__ import annotations

import logging
import re
import xml.sax
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Sequence
from urllib.parse import urljoin

import feedparser
from bs4 import BeautifulSoup

from kynews.services.errors import ParseError
from kynews.services.identity import is_http_url
from kynews.services.models import FeedEntry
from kynews.services.text import clean_html_fragment, collapse_whitespace, truncate

LOGGER = logging.getLogger(__name__)

UNTITLED = "(untitled)"
SUMMARY_MAX_CHARS = 2_000
CONTENT_MAX_CHARS = 50_000
DEFAULT_LISTING_SELECTORS = ("article a", "h2 a")
INLINE_IMG_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)
DATE_FIELDS = ("published", "updated", "created", "dc_date")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value)
    if isinstance(value, dict):
        for key in ("href", "url", "value", "#text"):
            candidate = value.get(key)
            if isinstance(candidate, str):
                return candidate
    return ""


def pick_link(entry: Any) -> str:
    """Resolve an entry link from a plain string, a list of link objects, or the guid."""
    link = entry.get("link")
    if isinstance(link, str) and link.strip():
        return link.strip()
    if link:
        resolved = _as_text(link).strip()
        if resolved:
            return resolved
    links = entry.get("links") or []
    if links:
        alternate = next((item for item in links if (item.get("rel") or "alternate") == "alternate"), None)
        resolved = _as_text(alternate or links[0]).strip()
        if resolved:
            return resolved
    guid = _as_text(entry.get("id")).strip()
    if is_http_url(guid):
        return guid
    return ""


def _first_image(entry: Any) -> str | None:
    for enclosure in entry.get("enclosures") or []:
        href = _as_text(enclosure).strip()
        kind = (enclosure.get("type") or "").lower()
        if href and (kind.startswith("image/") or not kind):
            return href
    for key in ("media_content", "media_thumbnail"):
        for media in entry.get(key) or []:
            url = _as_text(media).strip()
            medium = (media.get("medium") or media.get("type") or "image").lower()
            if url and ("image" in medium or key == "media_thumbnail"):
                return url
    image = entry.get("image")
    if image:
        href = _as_text(image).strip()
        if href:
            return href
    for block in _content_blocks(entry):
        match = INLINE_IMG_RE.search(block)
        if match:
            return match.group(1)
    return None


def _content_blocks(entry: Any) -> List[str]:
    blocks = [_as_text(item) for item in entry.get("content") or []]
    blocks.append(_as_text(entry.get("summary")))
    return [block for block in blocks if block]


def _struct_to_iso(value: Any) -> str | None:
    try:
        return datetime(*value[:6], tzinfo=timezone.utc).isoformat()
    except (TypeError, ValueError):
        return None


def parse_date(raw: str | None) -> str | None:
    """Return an ISO-8601 UTC timestamp for RFC 822 or ISO-8601 input, else None."""
    if not raw:
        return None
    text = raw.strip()
    parsed: datetime | None = None
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            LOGGER.debug("Unable to parse feed date %s", raw)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _entry_date(entry: Any) -> str | None:
    for field_name in DATE_FIELDS:
        struct = entry.get(f"{field_name}_parsed")
        if struct:
            iso = _struct_to_iso(struct)
            if iso:
                return iso
        iso = parse_date(_as_text(entry.get(field_name)))
        if iso:
            return iso
    return None


def _entry_author(entry: Any) -> str | None:
    author = _as_text(entry.get("author")).strip()
    if author:
        return author
    detail = entry.get("author_detail") or {}
    name = (detail.get("name") or "").strip() if isinstance(detail, dict) else ""
    return name or None


def parse_feed(payload: bytes | str) -> List[FeedEntry]:
    """
    Parse an RSS/Atom document into entries, in document order. Raises ParseError when the
    payload is not a recognizable feed or is not well-formed XML, even if feedparser salvaged
    some entries from it. Encoding and content-type mismatches are tolerated.
    """
    parsed = feedparser.parse(payload)
    if parsed.get("bozo") and isinstance(parsed.get("bozo_exception"), xml.sax.SAXException):
        raise ParseError(f"Malformed feed XML: {parsed.get('bozo_exception')}")
    entries = list(getattr(parsed, "entries", []) or [])
    if not entries:
        if parsed.get("bozo") or not parsed.get("version"):
            reason = parsed.get("bozo_exception") or "unrecognized feed format"
            raise ParseError(f"Malformed feed payload: {reason}")
        return []
    if parsed.get("bozo"):
        LOGGER.debug("Feed parsed with recoverable issues: %s", parsed.get("bozo_exception"))

    results: List[FeedEntry] = []
    for entry in entries:
        title = clean_html_fragment(_as_text(entry.get("title"))) or UNTITLED
        link = pick_link(entry)
        guid = _as_text(entry.get("id")).strip() or None
        if not link and not guid and title == UNTITLED:
            continue
        raw_summary = _as_text(entry.get("summary"))
        content_blocks = [_as_text(item) for item in entry.get("content") or []]
        content_text = clean_html_fragment(" ".join(block for block in content_blocks if block))
        results.append(
            FeedEntry(
                title=title,
                link=link,
                guid=guid,
                description=truncate(clean_html_fragment(raw_summary), SUMMARY_MAX_CHARS) or None,
                content=truncate(content_text, CONTENT_MAX_CHARS) or None,
                published_at=_entry_date(entry),
                author=_entry_author(entry),
                image=_first_image(entry),
            )
        )
    return results


def parse_listing_page(
    html: str | bytes,
    base_url: str,
    selectors: Sequence[str] | None = None,
    max_links: int = 50,
) -> List[FeedEntry]:
    """Turn a section/listing page into entries, one per distinct article link."""
    soup = BeautifulSoup(html, "html.parser")
    candidates = []
    for selector in selectors or DEFAULT_LISTING_SELECTORS:
        candidates.extend(soup.select(selector))
    if not candidates:
        candidates.extend(soup.find_all("a"))
    results: List[FeedEntry] = []
    seen_links: set[str] = set()
    for tag in candidates:
        if len(results) >= max_links:
            break
        href = tag.get("href")
        if not href:
            continue
        try:
            full_url = urljoin(base_url, href)
        except ValueError:
            LOGGER.debug("Skipping unparseable listing link %s", href)
            continue
        if not is_http_url(full_url) or full_url in seen_links or full_url.rstrip("/") == base_url.rstrip("/"):
            continue
        title = collapse_whitespace(tag.get_text(" ", strip=True))
        if not title:
            continue
        seen_links.add(full_url)
        results.append(FeedEntry(title=title, link=full_url, guid=full_url))
    return results
