"""
Geography - FIPS code utilities and query normalization.

Turns user supplied geography arguments (state names, county names, level,
year) into a validated GeoQuery whose identifiers are used by both the
statistics and the boundary fetchers.

Author: Mir Md Tasnim Alam
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Union

import pandas as pd

from .exceptions import InvalidGeographyError

logger = logging.getLogger(__name__)


# State FIPS codes
FIPS_CODES = {
    "01": "Alabama", "02": "Alaska", "04": "Arizona", "05": "Arkansas",
    "06": "California", "08": "Colorado", "09": "Connecticut", "10": "Delaware",
    "11": "District of Columbia", "12": "Florida", "13": "Georgia", "15": "Hawaii",
    "16": "Idaho", "17": "Illinois", "18": "Indiana", "19": "Iowa",
    "20": "Kansas", "21": "Kentucky", "22": "Louisiana", "23": "Maine",
    "24": "Maryland", "25": "Massachusetts", "26": "Michigan", "27": "Minnesota",
    "28": "Mississippi", "29": "Missouri", "30": "Montana", "31": "Nebraska",
    "32": "Nevada", "33": "New Hampshire", "34": "New Jersey", "35": "New Mexico",
    "36": "New York", "37": "North Carolina", "38": "North Dakota", "39": "Ohio",
    "40": "Oklahoma", "41": "Oregon", "42": "Pennsylvania", "44": "Rhode Island",
    "45": "South Carolina", "46": "South Dakota", "47": "Tennessee", "48": "Texas",
    "49": "Utah", "50": "Vermont", "51": "Virginia", "53": "Washington",
    "54": "West Virginia", "55": "Wisconsin", "56": "Wyoming", "72": "Puerto Rico"
}

# State name to FIPS lookup
STATE_NAME_TO_FIPS = {v.lower(): k for k, v in FIPS_CODES.items()}

STATE_ABBREV_TO_FIPS = {
    "al": "01", "ak": "02", "az": "04", "ar": "05", "ca": "06",
    "co": "08", "ct": "09", "de": "10", "dc": "11", "fl": "12",
    "ga": "13", "hi": "15", "id": "16", "il": "17", "in": "18",
    "ia": "19", "ks": "20", "ky": "21", "la": "22", "me": "23",
    "md": "24", "ma": "25", "mi": "26", "mn": "27", "ms": "28",
    "mo": "29", "mt": "30", "ne": "31", "nv": "32", "nh": "33",
    "nj": "34", "nm": "35", "ny": "36", "nc": "37", "nd": "38",
    "oh": "39", "ok": "40", "or": "41", "pa": "42", "ri": "44",
    "sc": "45", "sd": "46", "tn": "47", "tx": "48", "ut": "49",
    "vt": "50", "va": "51", "wa": "53", "wv": "54", "wi": "55",
    "wy": "56", "pr": "72"
}

DATASETS = ("acs5", "acs1", "dec")
DECENNIAL_YEARS = (2000, 2010, 2020)
BOUNDARY_DETAILS = ("cartographic", "full_detail")

# Per-level settings.
#   api_name:     name used in the Census API "for" clause
#   geo_columns:  identifier columns the API returns, in GEOID order
#   widths:       zero-padded width of each identifier column
#   first_year:   first vintage per dataset (None = level not published)
GEOGRAPHY_LEVELS = {
    "state": {
        "api_name": "state",
        "geo_columns": ["state"],
        "widths": [2],
        "requires_state": False,
        "allows_state": True,
        "allows_county": False,
        "first_year": {"acs5": 2009, "acs1": 2005, "dec": 2000},
    },
    "county": {
        "api_name": "county",
        "geo_columns": ["state", "county"],
        "widths": [2, 3],
        "requires_state": False,
        "allows_state": True,
        "allows_county": True,
        "first_year": {"acs5": 2009, "acs1": 2005, "dec": 2000},
    },
    "tract": {
        "api_name": "tract",
        "geo_columns": ["state", "county", "tract"],
        "widths": [2, 3, 6],
        "requires_state": True,
        "allows_state": True,
        "allows_county": True,
        "first_year": {"acs5": 2009, "acs1": None, "dec": 2000},
    },
    "block group": {
        "api_name": "block group",
        "geo_columns": ["state", "county", "tract", "block group"],
        "widths": [2, 3, 6, 1],
        "requires_state": True,
        "allows_state": True,
        "allows_county": True,
        "first_year": {"acs5": 2013, "acs1": None, "dec": 2000},
    },
    "place": {
        "api_name": "place",
        "geo_columns": ["state", "place"],
        "widths": [2, 5],
        "requires_state": True,
        "allows_state": True,
        "allows_county": False,
        "first_year": {"acs5": 2009, "acs1": 2005, "dec": 2000},
    },
    "zcta": {
        "api_name": "zip code tabulation area",
        "geo_columns": ["zip code tabulation area"],
        "widths": [5],
        "requires_state": False,
        "allows_state": False,
        "allows_county": False,
        "first_year": {"acs5": 2011, "acs1": None, "dec": 2010},
    },
}

GEOGRAPHY_ALIASES = {
    "block_group": "block group",
    "blockgroup": "block group",
    "bg": "block group",
    "zip code tabulation area": "zcta",
    "states": "state",
    "counties": "county",
    "tracts": "tract",
}

# Suffixes stripped when matching county names ("Orange County" -> "orange")
COUNTY_NAME_SUFFIXES = (
    " city and borough",
    " census area",
    " municipality",
    " municipio",
    " borough",
    " parish",
    " county",
)

CountyLookup = Callable[[str, int], Mapping[str, str]]


@dataclass(frozen=True)
class GeoQuery:
    """
    A validated geography request.

    All codes are canonical zero-padded FIPS strings so that the statistics
    and boundary sources derive identical GEOIDs from it.
    """

    geography: str
    state: Optional[str] = None
    county: Optional[str] = None
    year: int = 2022
    dataset: str = "acs5"
    boundary_detail: str = "cartographic"

    def __post_init__(self):
        if self.geography not in GEOGRAPHY_LEVELS:
            raise InvalidGeographyError(f"Unsupported geography: {self.geography}")
        if self.county and not self.state:
            raise InvalidGeographyError("A county requires a state")
        if self.boundary_detail not in BOUNDARY_DETAILS:
            raise InvalidGeographyError(
                f"Unknown boundary detail: {self.boundary_detail}"
            )

    @property
    def level(self) -> dict:
        return GEOGRAPHY_LEVELS[self.geography]

    @property
    def geoid_prefix(self) -> str:
        """State + county FIPS every GEOID in scope starts with."""
        return build_geoid(self.state or "", self.county)

    @property
    def cache_scope(self) -> tuple:
        return (self.geography, self.state, self.county, self.year, self.boundary_detail)

    def describe(self) -> str:
        parts = [self.geography]
        if self.state:
            parts.append(f"state={self.state}")
        if self.county:
            parts.append(f"county={self.county}")
        parts.append(f"{self.dataset} {self.year}")
        return " ".join(parts)


class GeographyNormalizer:
    """
    Validates raw geography arguments and resolves names to FIPS codes.

    Args:
        county_lookup: Callable returning {county_fips: county_name} for a
            state and year. Needed only when counties are given by name.
    """

    def __init__(self, county_lookup: Optional[CountyLookup] = None):
        self.county_lookup = county_lookup

    def normalize(
        self,
        geography: str,
        state: Optional[Union[str, int]] = None,
        county: Optional[Union[str, int]] = None,
        year: int = 2022,
        dataset: str = "acs5",
        boundary_detail: str = "cartographic"
    ) -> GeoQuery:
        """
        Build a GeoQuery from user arguments.

        Raises:
            InvalidGeographyError: If the arguments cannot form a valid query.
        """
        level_name = normalize_level(geography)
        level = GEOGRAPHY_LEVELS[level_name]

        if dataset not in DATASETS:
            raise InvalidGeographyError(
                f"Unknown dataset: {dataset} (expected one of {', '.join(DATASETS)})"
            )
        year = _validate_year(level_name, dataset, year)

        if county is not None and state is None:
            raise InvalidGeographyError("A county requires a state")
        if state is not None and not level["allows_state"]:
            raise InvalidGeographyError(f"{level_name} cannot be filtered by state")
        if county is not None and not level["allows_county"]:
            raise InvalidGeographyError(f"{level_name} does not nest within counties")
        if state is None and level["requires_state"]:
            raise InvalidGeographyError(f"A state is required for {level_name} queries")

        state_fips = resolve_state(state) if state is not None else None
        county_fips = None
        if county is not None:
            county_fips = self.resolve_county(state_fips, county, year)

        query = GeoQuery(
            geography=level_name,
            state=state_fips,
            county=county_fips,
            year=year,
            dataset=dataset,
            boundary_detail=boundary_detail,
        )
        logger.debug(f"Normalized query: {query.describe()}")
        return query

    def resolve_county(
        self,
        state_fips: str,
        county: Union[str, int],
        year: int
    ) -> str:
        """
        Get the 3-digit county FIPS code.

        Accepts a 3-digit code, a 5-digit state+county code, or a county name.
        """
        value = str(county).strip()

        if value.isdigit():
            if len(value) == 5:
                if value[:2] != state_fips:
                    raise InvalidGeographyError(
                        f"County {value} is not in state {state_fips}"
                    )
                return value[2:]
            if len(value) <= 3:
                return value.zfill(3)
            raise InvalidGeographyError(f"Invalid county FIPS code: {value}")

        if self.county_lookup is None:
            raise InvalidGeographyError(
                f"Cannot resolve county name '{value}' without a county lookup"
            )

        counties = self.county_lookup(state_fips, year)
        matches = match_county_name(value, counties)

        if not matches:
            raise InvalidGeographyError(
                f"Unknown county '{value}' in state {state_fips}"
            )
        if len(matches) > 1:
            names = ", ".join(counties[m] for m in matches)
            raise InvalidGeographyError(
                f"County '{value}' is ambiguous in state {state_fips}: {names}"
            )
        return matches[0]


def normalize_level(geography: str) -> str:
    """Map a geography name or alias onto a GEOGRAPHY_LEVELS key."""
    key = str(geography).strip().lower()
    key = GEOGRAPHY_ALIASES.get(key, key)
    if key not in GEOGRAPHY_LEVELS:
        raise InvalidGeographyError(f"Unsupported geography: {geography}")
    return key


def resolve_state(state: Union[str, int]) -> str:
    """
    Get FIPS code for a state.

    Args:
        state: State name, abbreviation, or FIPS code.

    Returns:
        Two-digit FIPS code.
    """
    value = str(state).strip()

    if value.isdigit():
        value = value.zfill(2)
        if value in FIPS_CODES:
            return value
        raise InvalidGeographyError(f"Unknown state FIPS code: {state}")

    lowered = value.lower()
    if lowered in STATE_NAME_TO_FIPS:
        return STATE_NAME_TO_FIPS[lowered]
    if lowered in STATE_ABBREV_TO_FIPS:
        return STATE_ABBREV_TO_FIPS[lowered]

    raise InvalidGeographyError(f"Unknown state: {state}")


def match_county_name(name: str, counties: Mapping[str, str]) -> List[str]:
    """Return the FIPS codes whose county name matches `name`, sorted."""
    wanted = _county_key(name)
    exact = []
    stripped = []

    for fips, county_name in counties.items():
        # API names look like "Orange County, California"
        short = county_name.split(",")[0].strip().lower()
        if short == name.strip().lower():
            exact.append(fips)
        elif _county_key(short) == wanted:
            stripped.append(fips)

    return sorted(exact or stripped)


def _county_key(name: str) -> str:
    key = name.strip().lower()
    for suffix in COUNTY_NAME_SUFFIXES:
        if key.endswith(suffix):
            return key[: -len(suffix)].strip()
    return key


def _validate_year(level_name: str, dataset: str, year: int) -> int:
    try:
        year = int(year)
    except (TypeError, ValueError):
        raise InvalidGeographyError(f"Invalid year: {year!r}") from None

    if dataset == "dec" and year not in DECENNIAL_YEARS:
        raise InvalidGeographyError(
            "Decennial Census only available for 2000, 2010, 2020"
        )
    if dataset == "acs1" and year == 2020:
        raise InvalidGeographyError("ACS 1-Year 2020 estimates were not released")

    first_year = GEOGRAPHY_LEVELS[level_name]["first_year"][dataset]
    if first_year is None:
        raise InvalidGeographyError(f"{level_name} is not published in {dataset}")
    if year < first_year:
        raise InvalidGeographyError(
            f"{level_name} is not available in {dataset} before {first_year}"
        )
    return year


def geoid_series(df: pd.DataFrame, geography: str) -> pd.Series:
    """
    Build GEOIDs from the identifier columns of an API response.

    Components are zero padded to their canonical widths so the result
    matches the GEOID column of TIGER boundary files.
    """
    level = GEOGRAPHY_LEVELS[geography]
    geoid = pd.Series("", index=df.index, dtype="object")
    for column, width in zip(level["geo_columns"], level["widths"]):
        geoid = geoid + df[column].astype(str).str.strip().str.zfill(width)
    return geoid


def parse_geoid(geoid: str) -> dict:
    """
    Parse a GEOID into component FIPS codes.

    Args:
        geoid: Full GEOID string

    Returns:
        Dict with state, county, tract, block_group as applicable
    """
    result = {}

    if len(geoid) >= 2:
        result["state"] = geoid[:2]
    if len(geoid) >= 5:
        result["county"] = geoid[2:5]
    if len(geoid) >= 11:
        result["tract"] = geoid[5:11]
    if len(geoid) >= 12:
        result["block_group"] = geoid[11:12]

    return result


def build_geoid(
    state: str,
    county: Optional[str] = None,
    tract: Optional[str] = None,
    block_group: Optional[str] = None
) -> str:
    """
    Build a GEOID from component FIPS codes.

    Args:
        state: 2-digit state FIPS
        county: 3-digit county FIPS
        tract: 6-digit tract code
        block_group: 1-digit block group code

    Returns:
        Concatenated GEOID
    """
    geoid = state
    if county:
        geoid += county
    if tract:
        geoid += tract
    if block_group:
        geoid += block_group

    return geoid
