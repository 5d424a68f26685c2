"""
Conditional HTTP retrieval of feed documents. Uses the feed's stored ETag/Last-Modified so
unchanged feeds cost a 304 round trip, and maps transport failures onto the pipeline's error
types.
"""

from __future__ import annotations

import logging

import requests

from kynews.services.errors import ContentTypeError, HttpStatusError, NetworkError
from kynews.services.models import FETCH_MODE_SCRAPE, Feed, FetchResult
from kynews.services.settings import DEFAULT_USER_AGENT

LOGGER = logging.getLogger(__name__)

FEED_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"
)
PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
ERROR_SNIPPET_CHARS = 200
XML_PREFIXES = (b"<?xml", b"<rss", b"<feed", b"<rdf")


def looks_like_html_page(content_type: str, body: bytes | None) -> bool:
    """An HTML content type whose body does not open like an XML feed (an error or login page)."""
    if "text/html" not in content_type.lower():
        return False
    head = (body or b"").lstrip(b"\xef\xbb\xbf \t\r\n")[:64].lower()
    return not head.startswith(XML_PREFIXES)


class FeedFetcher:
    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: int = 15,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.user_agent = user_agent

    def build_headers(self, feed: Feed, force: bool = False) -> dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": PAGE_ACCEPT if feed.fetch_mode == FETCH_MODE_SCRAPE else FEED_ACCEPT,
        }
        if not force:
            if feed.etag:
                headers["If-None-Match"] = feed.etag
            if feed.last_modified:
                headers["If-Modified-Since"] = feed.last_modified
        return headers

    def fetch(self, feed: Feed, force: bool = False) -> FetchResult:
        """
        Fetch `feed.url`, returning the body for 2xx and no body for 304. Cache tokens fall
        back to the feed's previous values when the response omits them.
        """
        headers = self.build_headers(feed, force=force)
        try:
            response = self.session.get(
                feed.url,
                headers=headers,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.Timeout as exc:
            raise NetworkError(f"Timed out after {self.timeout}s fetching {feed.url}") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"Request failed for {feed.url}: {exc}") from exc

        etag = response.headers.get("ETag") or feed.etag
        last_modified = response.headers.get("Last-Modified") or feed.last_modified
        if response.status_code == 304:
            LOGGER.debug("Feed %s not modified", feed.id)
            return FetchResult(
                status=304,
                etag=etag,
                last_modified=last_modified,
                body=None,
                final_url=response.url or feed.url,
            )
        if not 200 <= response.status_code < 300:
            snippet = (response.text or "")[:ERROR_SNIPPET_CHARS]
            raise HttpStatusError(response.status_code, feed.url, snippet)
        content_type = response.headers.get("Content-Type") or ""
        if feed.fetch_mode != FETCH_MODE_SCRAPE and looks_like_html_page(content_type, response.content):
            raise ContentTypeError(content_type, feed.url)
        return FetchResult(
            status=response.status_code,
            etag=etag,
            last_modified=last_modified,
            body=response.content,
            final_url=response.url or feed.url,
        )
