"""
Stable identity for feed items: canonical URLs, deterministic item ids and content
fingerprints. Everything here is pure so repeated ingestion of the same article collapses to
one row.
"""

from __future__ import annotations

import hashlib
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAM_RE = re.compile(r"^(utm_|fbclid$|gclid$|mc_eid$|mkt_tok$)", re.IGNORECASE)
ITEM_ID_LENGTH = 24


def to_https_url(value: str | None) -> str | None:
    if not value:
        return None
    url = value.strip()
    if url.startswith("//"):
        return f"https:{url}"
    if url.lower().startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def is_http_url(value: str | None) -> bool:
    if not value:
        return False
    try:
        scheme = urlsplit(value.strip()).scheme
    except ValueError:
        return False
    return scheme.lower() in {"http", "https"}


def canonical_url(value: str | None) -> str:
    """
    Normalize an article URL for dedup: tracking parameters and fragment dropped, trailing
    slashes removed, and the scheme forced to https. Unparseable input is returned trimmed.
    """
    if not value:
        return ""
    raw = value.strip()
    try:
        parts = urlsplit(to_https_url(raw) or raw)
    except ValueError:
        return raw
    if parts.scheme.lower() not in {"http", "https"} or not parts.netloc:
        return raw
    query = [
        (key, val)
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if not TRACKING_PARAM_RE.match(key)
    ]
    path = parts.path.rstrip("/") or "/"
    return urlunsplit(("https", parts.netloc.lower(), path, urlencode(query), ""))


def stable_hash(parts: list[str | None]) -> str:
    joined = "|".join(part or "" for part in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def make_item_id(
    url: str | None,
    guid: str | None = None,
    title: str | None = None,
    published_at: str | None = None,
) -> str:
    canonical = canonical_url(url) if url else ""
    basis = canonical or (guid or "").strip() or f"{title or ''}__{published_at or ''}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()[:ITEM_ID_LENGTH]


def content_hash(
    title: str | None,
    url: str | None,
    summary: str | None,
    content: str | None,
    author: str | None,
    published_at: str | None,
) -> str:
    return stable_hash([title, url, summary, content, author, published_at])
