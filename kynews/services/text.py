"""Small text helpers shared by the parser, enricher and quality gate."""

from __future__ import annotations

import re
from typing import Pattern, Sequence

from bs4 import BeautifulSoup

WHITESPACE_RE = re.compile(r"\s+")


def collapse_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return WHITESPACE_RE.sub(" ", value).strip()


def clean_html_fragment(value: str | None) -> str:
    """Best-effort HTML to text converter for summaries/descriptions."""
    if not value:
        return ""
    if "<" not in value and "&" not in value:
        return collapse_whitespace(value)
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return collapse_whitespace(soup.get_text(" ", strip=True))


def truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit] if len(value) > limit else value


def word_count(value: str | None) -> int:
    if not value:
        return 0
    return len(value.split())


def build_term_pattern(terms: Sequence[str], case_sensitive: bool = False) -> Pattern[str] | None:
    """
    Compile place names or phrases into one alternation. Longer terms go first so that
    "Bowling Green" wins over "Green"; inner whitespace matches any run of whitespace.
    Lookarounds stand in for word boundaries so terms ending in punctuation ("Ky.") work.
    """
    cleaned = sorted({term.strip() for term in terms if term and term.strip()}, key=lambda t: (-len(t), t))
    if not cleaned:
        return None
    parts = [r"\s+".join(re.escape(word) for word in term.split()) for term in cleaned]
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(r"(?<!\w)(?:" + "|".join(parts) + r")(?!\w)", flags)
