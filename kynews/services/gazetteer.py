"""
Static place-name data for the target region and the compiled pattern tables built from it.

The tables are built once (usually at process start) and handed to the classifier by
reference; nothing in here mutates after construction.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Pattern, Sequence

from kynews.services.text import build_term_pattern

LOGGER = logging.getLogger(__name__)

DEFAULT_GAZETTEER_PATH = Path(__file__).resolve().parents[1] / "data" / "ky_gazetteer.json"

COUNTY_SEPARATOR = r"(?:\s*,\s*(?:(?:and|&)\s+)?|\s*/\s*|\s*-\s*|\s+(?:and|&)\s+)"
COUNTY_SUFFIX = r"\s+(?:count(?:y|ies)(?!\w)|co\.|co(?![\w-]))"


def _lookup_key(value: str) -> str:
    return " ".join(value.lower().split())


@dataclass(frozen=True)
class PatternTables:
    state_code: str
    state_name: str
    explicit_re: Pattern[str] | None
    explicit_abbreviation_re: Pattern[str] | None
    region_re: Pattern[str] | None
    ambiguous_re: Pattern[str] | None
    county_list_re: Pattern[str] | None
    county_name_re: Pattern[str] | None
    city_re: Pattern[str] | None
    other_region_re: Pattern[str] | None
    landmark_re: Pattern[str] | None
    county_lookup: Mapping[str, str]
    city_lookup: Mapping[str, str]
    ambiguous_counties: frozenset[str]

    @property
    def target_scope(self) -> str:
        return self.state_code.lower()

    def canonical_county(self, name: str) -> str | None:
        return self.county_lookup.get(_lookup_key(name))

    def county_for_city(self, name: str) -> str | None:
        return self.city_lookup.get(_lookup_key(name))

    def normalize_county(self, value: str | None) -> str:
        """Map "jefferson-county", "Jefferson County", "JEFFERSON" to the canonical "Jefferson"."""
        if not value:
            return ""
        base = re.sub(r"[-_]+", " ", value.strip())
        base = re.sub(r"\s+", " ", base)
        base = re.sub(r"\s+county$", "", base, flags=re.IGNORECASE).strip()
        if not base:
            return ""
        return self.canonical_county(base) or base


def load_gazetteer(path: Path = DEFAULT_GAZETTEER_PATH) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    LOGGER.debug(
        "Loaded gazetteer %s: %s counties, %s cities",
        path,
        len(data.get("counties", [])),
        len(data.get("cities", {})),
    )
    return data


def _county_patterns(counties: Sequence[str]) -> tuple[Pattern[str] | None, Pattern[str] | None]:
    if not counties:
        return None, None
    ordered = sorted({name.strip() for name in counties if name.strip()}, key=lambda n: (-len(n), n))
    alternation = "|".join(r"\s+".join(re.escape(word) for word in name.split()) for name in ordered)
    name = rf"(?<!\w)(?:{alternation})(?!\w)"
    list_pattern = re.compile(
        rf"(?P<names>{name}(?:{COUNTY_SEPARATOR}{name})*){COUNTY_SUFFIX}",
        re.IGNORECASE,
    )
    return list_pattern, re.compile(name, re.IGNORECASE)


def build_pattern_tables(
    gazetteer: Mapping[str, Any] | None = None,
    ambiguous_places: Sequence[str] | None = None,
) -> PatternTables:
    """
    Compile the gazetteer into immutable pattern tables. `ambiguous_places` replaces the
    gazetteer's ambiguous list; any place dropped from it is treated as unambiguous.
    """
    data = gazetteer if gazetteer is not None else load_gazetteer()
    state_code = str(data.get("state_code") or "KY").upper()
    state_name = str(data.get("state_name") or state_code)

    default_ambiguous = list(data.get("ambiguous_terms", []))
    ambiguous = list(ambiguous_places) if ambiguous_places is not None else default_ambiguous
    ambiguous_keys = {_lookup_key(term) for term in ambiguous}
    all_places = list(data.get("region_terms", [])) + default_ambiguous
    unambiguous = [term for term in all_places if _lookup_key(term) not in ambiguous_keys]

    counties = list(data.get("counties", []))
    county_list_re, county_name_re = _county_patterns(counties)
    cities: Dict[str, str] = dict(data.get("cities", {}))
    county_lookup = {_lookup_key(name): name for name in counties}

    return PatternTables(
        state_code=state_code,
        state_name=state_name,
        explicit_re=build_term_pattern(list(data.get("explicit_terms", [state_name]))),
        explicit_abbreviation_re=build_term_pattern(
            list(data.get("explicit_abbreviations", [state_code])), case_sensitive=True
        ),
        region_re=build_term_pattern(unambiguous),
        ambiguous_re=build_term_pattern(ambiguous),
        county_list_re=county_list_re,
        county_name_re=county_name_re,
        city_re=build_term_pattern(list(cities)),
        other_region_re=build_term_pattern(list(data.get("other_regions", []))),
        landmark_re=build_term_pattern(list(data.get("shared_landmarks", []))),
        county_lookup=county_lookup,
        city_lookup={_lookup_key(city): county for city, county in cities.items()},
        ambiguous_counties=frozenset(data.get("ambiguous_counties", [])),
    )
