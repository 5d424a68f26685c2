"""
Article page enrichment: fetch the article HTML once per item, pull a cover image and a
readable text excerpt out of it, and report a permanent fetch status.
"""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from kynews.services.feed_parser import parse_date
from kynews.services.identity import is_http_url, to_https_url
from kynews.services.models import ArticleFetch, ItemState
from kynews.services.settings import DEFAULT_USER_AGENT
from kynews.services.text import collapse_whitespace

LOGGER = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_SKIP = "skip"
STATUS_NON_HTML = "non_html"
STATUS_ERROR = "error"

HTML_CONTENT_TYPES = ("text/html", "application/xhtml")
JUNK_TAGS = [
    "script",
    "style",
    "noscript",
    "iframe",
    "svg",
    "canvas",
    "form",
    "header",
    "footer",
    "nav",
    "aside",
    "button",
]
META_IMAGE_KEYS = ("og:image", "og:image:url", "og:image:secure_url", "twitter:image", "twitter:image:src")
META_PUBLISHED_KEYS = ("article:published_time", "og:published_time", "datePublished", "pubdate")
INLINE_IMAGE_ATTRS = ("src", "data-src", "data-lazy-src", "data-original")
NON_CONTENT_IMAGE_RE = re.compile(r"\b(sprite|logo|icon|avatar)\b", re.IGNORECASE)


def needs_article_fetch(item: ItemState) -> bool:
    """
    An article page is fetched only while the item lacks an image or body text, and only if
    it has never been checked. Once `article_checked_at` is set the page is never requested
    again, whatever the earlier outcome was.
    """
    if item.article_checked_at:
        return False
    seed_text = (item.content or item.summary or "").strip()
    return not item.image_url or not seed_text


def _meta_content(soup: BeautifulSoup, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        for attr in ("property", "name", "itemprop"):
            tag = soup.find("meta", attrs={attr: key})
            if tag and tag.get("content"):
                return str(tag["content"]).strip()
    return None


def _resolve(base_url: str, raw: str) -> str | None:
    try:
        resolved = urljoin(base_url, raw)
    except ValueError:
        return None
    return to_https_url(resolved) if is_http_url(resolved) else None


def extract_meta_image(soup: BeautifulSoup, base_url: str) -> str | None:
    raw = _meta_content(soup, META_IMAGE_KEYS)
    if not raw:
        return None
    return _resolve(base_url, raw)


def extract_inline_image(soup: BeautifulSoup, base_url: str) -> str | None:
    for img in soup.find_all("img"):
        for attr in INLINE_IMAGE_ATTRS:
            raw = (img.get(attr) or "").strip()
            if not raw or raw.lower().startswith("data:"):
                continue
            if NON_CONTENT_IMAGE_RE.search(raw):
                break
            resolved = _resolve(base_url, raw)
            if resolved:
                return resolved
    return None


def extract_readable_text(soup: BeautifulSoup, max_chars: int) -> str | None:
    """Strip chrome, then read the first of article / main / #main / body that has text."""
    for tag in soup(JUNK_TAGS):
        tag.decompose()
    candidates: list[Any] = [
        soup.find("article"),
        soup.find("main"),
        soup.find(id="main"),
        soup.body,
        soup,
    ]
    for node in candidates:
        if node is None:
            continue
        text = collapse_whitespace(node.get_text(" ", strip=True))
        if text:
            return text[:max_chars]
    return None


def extract_article(html: str, base_url: str, excerpt_chars: int) -> ArticleFetch:
    soup = BeautifulSoup(html, "html.parser")
    image = extract_meta_image(soup, base_url)
    published = parse_date(_meta_content(soup, META_PUBLISHED_KEYS))
    if not image:
        image = extract_inline_image(soup, base_url)
    text = extract_readable_text(soup, excerpt_chars)
    return ArticleFetch(status=STATUS_OK, text=text, image_url=image, published_at=published)


class ArticleEnricher:
    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: int = 12,
        max_chars: int = 2_000_000,
        excerpt_chars: int = 10_000,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_chars = max_chars
        self.excerpt_chars = excerpt_chars
        self.user_agent = user_agent

    def fetch(self, url: str | None) -> ArticleFetch:
        """Fetch and extract one article page. Never raises; failures come back as a status."""
        if not url or not is_http_url(url):
            return ArticleFetch(status=STATUS_SKIP)
        try:
            response = self.session.get(
                url,
                timeout=self.timeout,
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.9",
                },
                allow_redirects=True,
            )
        except requests.RequestException:
            LOGGER.warning("Failed to fetch article body for %s", url, exc_info=True)
            return ArticleFetch(status=STATUS_ERROR)
        if not 200 <= response.status_code < 300:
            return ArticleFetch(status=f"http_{response.status_code}")
        content_type = (response.headers.get("Content-Type") or "").lower()
        if not any(kind in content_type for kind in HTML_CONTENT_TYPES):
            LOGGER.debug("Skipping non-HTML article %s (%s)", url, content_type)
            return ArticleFetch(status=STATUS_NON_HTML)
        try:
            html = (response.text or "")[: self.max_chars]
            return extract_article(html, response.url or url, self.excerpt_chars)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Failed to parse article HTML for %s", url, exc_info=True)
            return ArticleFetch(status=STATUS_ERROR)
