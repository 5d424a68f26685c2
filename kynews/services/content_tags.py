"""
Topical tags (sports, obituary, schools) computed from article text. The tag string is a pure
function of its inputs so it can be recomputed on every pass without churn.
"""

from __future__ import annotations

import re
from typing import List

from kynews.services.text import clean_html_fragment

TAG_SPORTS = "sports"
TAG_OBITUARY = "obituary"
TAG_SCHOOLS = "schools"
TAG_ORDER = (TAG_SPORTS, TAG_OBITUARY, TAG_SCHOOLS)

SPORTS_RE = re.compile(
    r"\b(sports?|football|basketball|baseball|soccer|volleyball|wrestling|athletic(?:s)?|nfl|nba|mlb"
    r"|nhl|ncaa|hockey|olympics?|olympic|swimming|swimmer|tennis|golf|golfer|gymnastics?|gymnast"
    r"|cycling|cyclist|lacrosse|softball|rugby|rowing|track\s+and\s+field|medal|athlete|tournament"
    r"|championship|semifinal|quarterfinal)\b",
    re.IGNORECASE,
)

SCHOOLS_RE = re.compile(
    r"\b(school|schools|school\s+district|district|classroom|students?|teachers?|principal|university"
    r"|college|graduation|enrollment|school\s+sports?|high\s+school|middle\s+school|elementary\s+school"
    r"|board\s+of\s+education|superintendent|academic|curriculum|semester|tuition|homecoming|prom"
    r"|school\s+board|faculty|campus)\b",
    re.IGNORECASE,
)

OBITUARY_PHRASES = (
    "obituar",
    "passed away",
    "in loving memory",
    "in memory of",
    "in memoriam",
    "survived by",
    "predeceased",
    "laid to rest",
    "celebration of life",
    "death notice",
    "funeral arrangements",
    "memorial service for",
    "graveside service",
    "condolences to the family",
    "funeral home",
    "funeral service",
    "visitation will be held",
    "visitation from",
    "visitation at",
)

OBITUARY_URL_SEGMENT = "/notice/"
OBITUARY_URL_COMPANIONS = ("funeral", "dignit", "legacy")
FUNERAL_HOME_URL_FRAGMENTS = ("funeralhome", "funeral-home")


def text_only(value: str | None) -> str:
    """Plain text of a possibly-HTML field."""
    return clean_html_fragment(value)


def _combined(*parts: str | None) -> str:
    return " ".join(text for text in (text_only(part) for part in parts) if text)


def is_sports_content(title: str | None, summary: str | None = None, content: str | None = None) -> bool:
    return bool(SPORTS_RE.search(_combined(title, summary, content)))


def is_schools_content(title: str | None, summary: str | None = None, content: str | None = None) -> bool:
    return bool(SCHOOLS_RE.search(_combined(title, summary, content)))


def is_obituary_url(url: str | None) -> bool:
    lowered = (url or "").lower()
    if not lowered:
        return False
    if OBITUARY_URL_SEGMENT in lowered and any(token in lowered for token in OBITUARY_URL_COMPANIONS):
        return True
    return any(fragment in lowered for fragment in FUNERAL_HOME_URL_FRAGMENTS)


def is_obituary_content(
    title: str | None,
    summary: str | None = None,
    content: str | None = None,
    url: str | None = None,
) -> bool:
    if is_obituary_url(url):
        return True
    haystack = " ".join(part for part in (title or "", url or "", text_only(summary), text_only(content)) if part)
    haystack = haystack.lower()
    return any(phrase in haystack for phrase in OBITUARY_PHRASES)


def compute_tag_list(
    title: str | None,
    summary: str | None = None,
    content: str | None = None,
    url: str | None = None,
) -> List[str]:
    tags: List[str] = []
    if is_sports_content(title, summary, content):
        tags.append(TAG_SPORTS)
    if is_obituary_content(title, summary, content, url):
        tags.append(TAG_OBITUARY)
    if is_schools_content(title, summary, content):
        tags.append(TAG_SCHOOLS)
    return tags


def compute_tags(
    title: str | None,
    summary: str | None = None,
    content: str | None = None,
    url: str | None = None,
) -> str:
    """Comma-joined tags in fixed order, e.g. "sports,schools"; empty string when none apply."""
    return ",".join(compute_tag_list(title, summary, content, url))
