"""
Exception types raised by the ingestion pipeline. Classification code never raises; everything
else surfaces one of these so the cycle can isolate failures per feed or per item.
"""

from __future__ import annotations


class KyNewsError(Exception):
    """Base class for pipeline failures."""


class NetworkError(KyNewsError):
    """Connection failure, timeout, or aborted transfer."""


class HttpStatusError(KyNewsError):
    def __init__(self, status: int, url: str, snippet: str = "") -> None:
        self.status = status
        self.url = url
        self.snippet = snippet
        message = f"HTTP {status} for {url}"
        if snippet:
            message = f"{message} :: {snippet}"
        super().__init__(message)


class ContentTypeError(KyNewsError):
    def __init__(self, content_type: str, url: str) -> None:
        self.content_type = content_type
        self.url = url
        super().__init__(f"Unexpected content type {content_type or '(none)'} for {url}")


class ParseError(KyNewsError):
    """Malformed feed or article markup."""


class PersistenceError(KyNewsError):
    """Store constraint violation or unavailable database."""
