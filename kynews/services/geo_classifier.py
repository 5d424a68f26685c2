"""
Tiered, precision-biased detection of target-region relevance and county tags.

The classifier looks at two views of an article (the title alone, and title plus body) and
accepts it when the title carries a strong place signal, or when the body mentions the region
often enough. Place names that other states share only count next to an explicit state
mention, and matches sitting close to another state's place name are discarded.
"""

from __future__ import annotations

import logging
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Iterable, List, Pattern, Sequence

from kynews.services.gazetteer import PatternTables

LOGGER = logging.getLogger(__name__)

TIER_TITLE = "title"
TIER_BODY = "body"
FAILED_BODY = "body"
FAILED_AMBIGUOUS = "ambiguous_city"
FAILED_OUT_OF_STATE = "out_of_state"

TOKEN_RE = re.compile(r"\S+")


@dataclass(frozen=True)
class GeoOptions:
    out_of_state_window: int = 12
    body_mention_threshold: int = 2


@dataclass
class GeoClassification:
    relevant: bool
    counties: List[str] = field(default_factory=list)
    tier: str | None = None
    failed_tier: str | None = None
    body_mentions: int = 0
    out_of_state: bool = False


@dataclass(frozen=True)
class PlaceMatch:
    kind: str
    start: int
    end: int
    counties: tuple[str, ...] = ()
    flagged: bool = False

    def overlaps(self, start: int, end: int) -> bool:
        return self.start < end and start < self.end


@dataclass
class ViewScan:
    explicit: List[PlaceMatch]
    region: List[PlaceMatch]
    ambiguous: List[PlaceMatch]
    county: List[PlaceMatch]
    city: List[PlaceMatch]

    @property
    def has_explicit(self) -> bool:
        return bool(self.explicit)

    def prospective(self) -> Iterable[PlaceMatch]:
        yield from self.region
        yield from self.ambiguous
        yield from self.county
        yield from self.city


def _spans(pattern: Pattern[str] | None, text: str) -> List[tuple[int, int, str]]:
    if pattern is None or not text:
        return []
    return [(m.start(), m.end(), m.group(0)) for m in pattern.finditer(text)]


class _TokenIndex:
    """Maps character offsets to whitespace-token positions."""

    def __init__(self, text: str) -> None:
        self.starts = [m.start() for m in TOKEN_RE.finditer(text)]

    def token_at(self, offset: int) -> int:
        return max(bisect_right(self.starts, offset) - 1, 0)

    def distance(self, a: tuple[int, int], b: tuple[int, int]) -> int:
        a_first, a_last = self.token_at(a[0]), self.token_at(a[1] - 1)
        b_first, b_last = self.token_at(b[0]), self.token_at(b[1] - 1)
        if b_first > a_last:
            return b_first - a_last
        if a_first > b_last:
            return a_first - b_last
        return 0


def _county_matches(text: str, tables: PatternTables) -> List[PlaceMatch]:
    if tables.county_list_re is None or tables.county_name_re is None:
        return []
    matches: List[PlaceMatch] = []
    for match in tables.county_list_re.finditer(text):
        names = []
        for name_match in tables.county_name_re.finditer(match.group("names")):
            canonical = tables.canonical_county(name_match.group(0))
            if canonical and canonical not in names:
                names.append(canonical)
        if names:
            matches.append(PlaceMatch("county", match.start(), match.end(), tuple(names)))
    return matches


def _scan(text: str, tables: PatternTables, window: int) -> ViewScan:
    explicit = [
        PlaceMatch("explicit", start, end)
        for start, end, _ in _spans(tables.explicit_re, text) + _spans(tables.explicit_abbreviation_re, text)
    ]
    county = _county_matches(text, tables)

    def outside_counties(kind: str, spans: List[tuple[int, int, str]]) -> List[PlaceMatch]:
        found = []
        for start, end, raw in spans:
            if any(match.overlaps(start, end) for match in county):
                continue
            resolved = tables.county_for_city(raw) if kind == "city" else None
            found.append(PlaceMatch(kind, start, end, (resolved,) if resolved else ()))
        return found

    region = outside_counties("region", _spans(tables.region_re, text))
    ambiguous = outside_counties("ambiguous", _spans(tables.ambiguous_re, text))
    city = outside_counties("city", _spans(tables.city_re, text))

    # Another state's name inside one of our own place names or a shared landmark
    # ("Mount Washington", "Ohio River") is not an out-of-state signal.
    masked = explicit + region + ambiguous + county + city + [
        PlaceMatch("landmark", start, end) for start, end, _ in _spans(tables.landmark_re, text)
    ]
    others = [
        (start, end)
        for start, end, _ in _spans(tables.other_region_re, text)
        if not any(match.overlaps(start, end) for match in masked)
    ]
    scan = ViewScan(explicit=explicit, region=region, ambiguous=ambiguous, county=county, city=city)
    if not others:
        return scan

    index = _TokenIndex(text)

    def flag(matches: List[PlaceMatch]) -> List[PlaceMatch]:
        flagged = []
        for match in matches:
            near = any(index.distance((match.start, match.end), other) <= window for other in others)
            flagged.append(
                PlaceMatch(match.kind, match.start, match.end, match.counties, flagged=True) if near else match
            )
        return flagged

    return ViewScan(
        explicit=explicit,
        region=flag(region),
        ambiguous=flag(ambiguous),
        county=flag(county),
        city=flag(city),
    )


def _qualifying_counties(match: PlaceMatch, tables: PatternTables, has_explicit: bool) -> List[str]:
    if match.flagged:
        return []
    return [name for name in match.counties if has_explicit or name not in tables.ambiguous_counties]


def _view_counties(scan: ViewScan, tables: PatternTables, has_explicit: bool) -> List[str]:
    counties: List[str] = []
    for match in sorted(scan.county, key=lambda m: m.start):
        counties.extend(_qualifying_counties(match, tables, has_explicit))
    # City names resolve to a county only when the same view names the state.
    if scan.has_explicit:
        for match in scan.city:
            if not match.flagged:
                counties.extend(match.counties)
    return counties


def _distinct_count(matches: Sequence[PlaceMatch]) -> int:
    count = 0
    last_end = -1
    for match in sorted(matches, key=lambda m: (m.start, -(m.end - m.start))):
        if match.start >= last_end:
            count += 1
            last_end = match.end
    return count


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _classify(title: str, body: str, tables: PatternTables, options: GeoOptions) -> GeoClassification:
    window = options.out_of_state_window
    title_scan = _scan(title, tables, window)
    article = f"{title}\n{body}" if body else title
    body_offset = len(title) + 1 if body else len(article)
    full_scan = _scan(article, tables, window)
    has_explicit = full_scan.has_explicit

    def county_signal(match: PlaceMatch) -> bool:
        return bool(_qualifying_counties(match, tables, has_explicit))

    def counties() -> List[str]:
        combined = _view_counties(title_scan, tables, title_scan.has_explicit)
        combined += _view_counties(full_scan, tables, full_scan.has_explicit)
        return _dedupe(combined)

    title_strong = (
        title_scan.has_explicit
        or any(county_signal(match) for match in title_scan.county)
        or any(not match.flagged for match in title_scan.region)
        or (has_explicit and any(not match.flagged for match in title_scan.ambiguous))
    )
    if title_strong:
        return GeoClassification(relevant=True, counties=counties(), tier=TIER_TITLE)

    counted = list(full_scan.explicit)
    counted += [match for match in full_scan.region if not match.flagged]
    counted += [match for match in full_scan.county if county_signal(match)]
    if has_explicit:
        counted += [match for match in full_scan.ambiguous if not match.flagged]
    body_mentions = _distinct_count([match for match in counted if match.start >= body_offset])

    any_flagged = any(match.flagged for match in full_scan.prospective())
    any_unflagged_signal = (
        any(not match.flagged for match in full_scan.region)
        or any(county_signal(match) for match in full_scan.county)
        or any(not match.flagged for match in full_scan.city)
    )
    if any_flagged and not has_explicit and not any_unflagged_signal:
        return GeoClassification(
            relevant=False,
            failed_tier=FAILED_OUT_OF_STATE,
            body_mentions=body_mentions,
            out_of_state=True,
        )

    if body_mentions >= options.body_mention_threshold:
        return GeoClassification(
            relevant=True,
            counties=counties(),
            tier=TIER_BODY,
            body_mentions=body_mentions,
        )

    failed = FAILED_AMBIGUOUS if full_scan.ambiguous and not has_explicit else FAILED_BODY
    return GeoClassification(relevant=False, failed_tier=failed, body_mentions=body_mentions)


def classify_region(
    title: str | None,
    body: str | None,
    tables: PatternTables,
    options: GeoOptions | None = None,
) -> GeoClassification:
    """
    Decide whether an article belongs to the target region and which counties it names.
    Pure function of the text and the pattern tables; it never raises, and empty text is
    simply not relevant.
    """
    title_text = (title or "").strip()
    body_text = (body or "").strip()
    if not title_text and not body_text:
        return GeoClassification(relevant=False, failed_tier=FAILED_BODY)
    try:
        return _classify(title_text, body_text, tables, options or GeoOptions())
    except Exception:  # noqa: BLE001
        LOGGER.warning("Geographic classification failed; treating as not relevant.", exc_info=True)
        return GeoClassification(relevant=False, failed_tier=FAILED_BODY)
