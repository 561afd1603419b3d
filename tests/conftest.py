"""Shared fixtures: fake HTTP sessions serving Census-shaped payloads.

Nothing here touches the network; the API client and boundary fetcher are
given a FakeSession whose handler builds responses from a fixed unit list.
"""
from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from typing import Callable, Iterable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from census_geojoin.geography import GEOGRAPHY_LEVELS  # noqa: E402


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, content=b"", text=None):
        self.status_code = status_code
        self._json = json_data
        if json_data is not None and not content:
            content = json.dumps(json_data).encode("utf-8")
        self.content = content
        self.text = text if text is not None else content.decode("utf-8", "replace")

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json


class FakeSession:
    """Stands in for requests.Session; records every GET."""

    def __init__(self, handler: Callable[[str, dict], FakeResponse]):
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, params=None, timeout=None):
        params = dict(params or {})
        with self._lock:
            self.calls.append((url, params))
        return self.handler(url, params)


def default_value(geoid: str, variable: str) -> int:
    return sum(ord(c) for c in geoid + variable) * 10


def split_geoid(geoid: str, geography: str) -> list:
    parts, start = [], 0
    for width in GEOGRAPHY_LEVELS[geography]["widths"]:
        parts.append(geoid[start:start + width])
        start += width
    return parts


class CensusAPIStub:
    """Serves Census data API tables for a fixed set of units."""

    def __init__(
        self,
        geography: str,
        geoids: Iterable[str],
        values: Callable[[str, str], object] = default_value,
        counties: dict | None = None,
        unknown: Iterable[str] = (),
    ):
        self.geography = geography
        self.geoids = sorted(geoids)
        self.values = values
        self.counties = counties or {}
        self.unknown = set(unknown)

    def __call__(self, url: str, params: dict) -> FakeResponse:
        if params.get("get") == "NAME" and params.get("for") == "county:*":
            rows = [["NAME", "state", "county"]]
            state = params["in"].split(":")[1]
            for fips, name in sorted(self.counties.items()):
                rows.append([name, state, fips])
            return FakeResponse(200, json_data=rows)

        variables = params["get"].split(",")
        bad = [v for v in variables if v in self.unknown]
        if bad:
            return FakeResponse(400, text=f"error: error: unknown variable '{bad[0]}'")

        prefix = ""
        for token in params.get("in", "").split():
            key, _, value = token.partition(":")
            if value != "*" and key in ("state", "county"):
                prefix += value

        geo_columns = GEOGRAPHY_LEVELS[self.geography]["geo_columns"]
        rows = [variables + geo_columns]
        for geoid in self.geoids:
            if not geoid.startswith(prefix):
                continue
            values = [
                f"Unit {geoid}" if v == "NAME" else str(self.values(geoid, v))
                for v in variables
            ]
            rows.append(values + split_geoid(geoid, self.geography))
        if len(rows) == 1:
            return FakeResponse(204)
        return FakeResponse(200, json_data=rows)


def square(x: float, y: float, size: float = 0.01) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[
            [x, y], [x + size, y], [x + size, y + size], [x, y + size], [x, y],
        ]],
    }


def feature_collection(geoids: Iterable[str], crs: str | None = None) -> dict:
    features = []
    for i, geoid in enumerate(geoids):
        features.append({
            "type": "Feature",
            "geometry": square(-118.0 + i * 0.02, 33.6),
            "properties": {"GEOID": geoid, "NAMELSAD": f"Census Tract {geoid[-6:]}"},
        })
    document = {"type": "FeatureCollection", "features": features}
    if crs:
        document["crs"] = {"type": "name", "properties": {"name": crs}}
    return document


def geojson_handler(geoids: Iterable[str], status: int = 200, crs: str | None = None):
    payload = json.dumps(feature_collection(geoids, crs)).encode("utf-8")

    def handler(url, params):
        if status != 200:
            return FakeResponse(status, content=b"Not Found")
        return FakeResponse(200, content=payload)

    return handler


# Orange County (059) and Los Angeles County (037), California
ORANGE_TRACTS = ["06059001101", "06059001102", "06059001201", "06059001301"]
LA_TRACTS = ["06037101110", "06037101122"]
CA_COUNTIES = {
    "037": "Los Angeles County, California",
    "059": "Orange County, California",
    "073": "San Diego County, California",
}
