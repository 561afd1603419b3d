"""
Boundary fetcher - TIGER/Line and cartographic boundary downloads.

Author: Mir Md Tasnim Alam
"""

import io
import os
import json
import logging
import tempfile
import threading
import time
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Tuple

import geopandas as gpd
import pandas as pd
import requests

from .api_client import build_session, send_get, short_error_text
from .exceptions import RemoteServiceError, UnsupportedGeographyError
from .geography import GEOGRAPHY_LEVELS, GeoQuery
from .schemas import BOUNDARY_CRS, GEOID, GEOMETRY, NAME

logger = logging.getLogger(__name__)

CacheKey = Tuple[Hashable, ...]


class GeometryCache:
    """
    Cache for raw boundary payloads.

    Payloads live in memory for the lifetime of the object and, when a
    directory is given, on disk across processes. Entries older than `ttl`
    seconds are treated as missing. Concurrent callers asking for the same
    key wait for the first download instead of repeating it.

    Both layers are timestamped with `clock`; disk files carry the stored
    time as their modification time.

    Args:
        cache_dir: Directory for persisted payloads (None = memory only).
        ttl: Seconds an entry stays valid (None = never expires).
        enabled: When False every lookup calls the loader.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        ttl: Optional[float] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.ttl = ttl
        self.enabled = enabled
        self.clock = clock

        self.hits = 0
        self.misses = 0

        self._entries: Dict[CacheKey, Tuple[float, bytes]] = {}
        self._lock = threading.Lock()
        # key -> [lock, number of callers holding or waiting on it]
        self._key_locks: Dict[CacheKey, List] = {}

        if self.cache_dir and self.enabled:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def get_or_fetch(self, key: CacheKey, loader: Callable[[], bytes]) -> bytes:
        """Return the cached payload for `key`, calling `loader` on a miss."""
        if not self.enabled:
            return loader()

        with self._key_lock(key):
            payload = self.get(key)
            if payload is not None:
                with self._lock:
                    self.hits += 1
                logger.info(f"Loading cached boundaries: {key}")
                return payload

            with self._lock:
                self.misses += 1
            payload = loader()
            self.put(key, payload)
            return payload

    def get(self, key: CacheKey) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None:
            stored_at, payload = entry
            if not self._expired(stored_at):
                return payload
            with self._lock:
                self._entries.pop(key, None)

        path = self._path(key)
        if path is not None and path.exists():
            stored_at = path.stat().st_mtime
            if self._expired(stored_at):
                path.unlink()
                return None
            payload = path.read_bytes()
            with self._lock:
                self._entries[key] = (stored_at, payload)
            return payload

        return None

    def put(self, key: CacheKey, payload: bytes) -> None:
        now = self.clock()
        with self._lock:
            self._entries[key] = (now, payload)

        path = self._path(key)
        if path is not None:
            tmp = path.with_suffix(".part")
            tmp.write_bytes(payload)
            os.utime(tmp, (now, now))
            tmp.replace(path)
            logger.info(f"Cached boundaries: {path}")

    def evict_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        if self.ttl is None:
            return 0

        removed = 0
        with self._lock:
            for key in [k for k, (t, _) in self._entries.items() if self._expired(t)]:
                del self._entries[key]
                removed += 1

        if self.cache_dir and self.cache_dir.exists():
            for path in self.cache_dir.glob("*.zip"):
                if self._expired(path.stat().st_mtime):
                    path.unlink()
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        if self.cache_dir and self.cache_dir.exists():
            for path in self.cache_dir.glob("*.zip"):
                path.unlink()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"hits": self.hits, "misses": self.misses, "entries": len(self._entries)}

    @contextmanager
    def _key_lock(self, key: CacheKey) -> Iterator[None]:
        """Serialize loads of one key; the lock is discarded by its last user."""
        with self._lock:
            entry = self._key_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[key]

    def _expired(self, stored_at: float) -> bool:
        return self.ttl is not None and self.clock() - stored_at > self.ttl

    def _path(self, key: CacheKey) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        parts = ["us" if p is None else str(p).replace(" ", "-") for p in key]
        return self.cache_dir / ("_".join(parts) + ".zip")


class BoundaryFetcher:
    """
    Downloads boundaries for a GeoQuery and returns one feature per unit.

    Handles:
    - Cartographic boundary files (simplified, clipped to the shoreline)
    - TIGER/Line shapefiles (full detail, including water area)
    - Payload caching
    - Filtering national/state files down to the query scope
    """

    TIGER_BASE_URL = "https://www2.census.gov/geo/tiger/TIGER{year}"
    CB_BASE_URL = "https://www2.census.gov/geo/tiger/GENZ{year}/shp"
    CB_2010_BASE_URL = "https://www2.census.gov/geo/tiger/GENZ2010"
    CB_2000_BASE_URL = "https://www2.census.gov/geo/tiger/PREVGENZ"

    # Oldest boundary vintage; years before 2010 use the 2000 geography
    FIRST_YEAR = 2000

    # First vintage published with the current file naming
    CURRENT_NAMING = {"cartographic": 2013, "full_detail": 2011}

    # Levels published as one national file
    NATIONAL_LEVELS = ("state", "county", "zcta")

    # Mapping of geography to file naming convention: (file code, TIGER directory)
    FILE_CODES = {
        "state": ("state", "STATE"),
        "county": ("county", "COUNTY"),
        "tract": ("tract", "TRACT"),
        "block group": ("bg", "BG"),
        "place": ("place", "PLACE"),
    }

    # Summary level codes in the 2010 cartographic file names (gz_2010_*)
    SUMMARY_LEVELS = {
        "state": "040",
        "county": "050",
        "tract": "140",
        "block group": "150",
        "place": "160",
        "zcta": "860",
    }

    # 2000 cartographic files; "{state}" marks per-state files
    PREVGENZ_FILES = {
        "state": "st/st00shp/st99_d00_shp.zip",
        "county": "co/co00shp/co99_d00_shp.zip",
        "tract": "tr/tr00shp/tr{state}_d00_shp.zip",
        "block group": "bg/bg00shp/bg{state}_d00_shp.zip",
        "place": "pl/pl00shp/pl{state}_d00_shp.zip",
        "zcta": "zt/z500shp/zt{state}_d00_shp.zip",
    }

    GEOID_CANDIDATES = (
        "GEOID", "GEOID20", "GEOID10", "ZCTA5CE20", "ZCTA5CE10", "ZCTA5CE00",
    )

    # Full GEOID columns of the 2000 TIGER/Line files
    GEOID00_COLUMNS = {
        "state": "STATEFP00",
        "county": "CNTYIDFP00",
        "tract": "CTIDFP00",
        "block group": "BKGPIDFP00",
        "place": "PLCIDFP00",
    }

    # Identifier components of the 2000 cartographic files, in GEOID order
    COMPONENT_COLUMNS = {
        "state": ("STATE",),
        "county": ("STATE", "COUNTY"),
        "tract": ("STATE", "COUNTY", "TRACT"),
        "block group": ("STATE", "COUNTY", "TRACT", "BLKGROUP"),
        "place": ("STATE", "PLACEFP"),
        "zcta": ("ZCTA",),
    }

    NAME_CANDIDATES = (
        "NAMELSAD", "NAMELSAD20", "NAMELSAD10", "NAMELSAD00",
        "NAME", "NAME20", "NAME10", "NAME00",
    )

    def __init__(
        self,
        cache: Optional[GeometryCache] = None,
        session: Optional[requests.Session] = None,
        resolution: str = "500k",
        retries: int = 3,
        backoff_factor: float = 1.0,
        timeout: float = 60.0
    ):
        """
        Initialize the boundary fetcher.

        Args:
            cache: Payload cache (None disables caching).
            session: Preconfigured session (defaults to build_session()).
            resolution: Cartographic boundary resolution (500k, 5m, 20m).
            retries: Retry attempts for transient failures.
            backoff_factor: Exponential backoff factor between retries.
            timeout: Per-request timeout in seconds.
        """
        self.cache = cache
        self.session = session or build_session(retries, backoff_factor)
        self.resolution = resolution
        self.timeout = timeout

    def fetch_geometry(self, query: GeoQuery) -> gpd.GeoDataFrame:
        """
        Fetch boundaries for every unit in the query's scope.

        Returns:
            GeoDataFrame with GEOID, NAME and geometry columns in EPSG:4269,
            sorted by GEOID.
        """
        url = self.build_url(query)
        key = self.cache_key(query)

        def load() -> bytes:
            return self._download(url, query)

        if self.cache is not None:
            payload = self.cache.get_or_fetch(key, load)
        else:
            payload = load()

        gdf = self._read_payload(payload, url)
        features = self._to_features(gdf, query, url)

        logger.info(f"Loaded {len(features)} {query.geography} boundaries for {query.describe()}")
        return features

    def boundary_vintage(self, query: GeoQuery) -> int:
        """
        Year of the boundary files that serve a query.

        Years before 2010 use the 2000 geography. Cartographic files for 2011
        and 2012 were never published, so those years use the 2010 files.
        """
        if query.year < self.FIRST_YEAR:
            raise UnsupportedGeographyError(
                f"No boundaries published before {self.FIRST_YEAR} (requested {query.year})"
            )
        if query.year < 2010:
            return 2000
        if query.year < self.CURRENT_NAMING[query.boundary_detail]:
            return 2010
        return query.year

    def build_url(self, query: GeoQuery) -> str:
        """Build URL for the boundary file covering the query."""
        vintage = self.boundary_vintage(query)

        # National vs state-level files
        if query.geography in self.NATIONAL_LEVELS:
            scope = "us"
        else:
            if not query.state:
                raise UnsupportedGeographyError(
                    f"{query.geography} boundaries are only published per state"
                )
            scope = query.state

        if query.boundary_detail == "cartographic":
            return self._cartographic_url(query, vintage, scope)
        return self._tiger_url(query, vintage, scope)

    def cache_key(self, query: GeoQuery) -> CacheKey:
        """
        Cache key for the file behind a query.

        Files are published per state or nationally, so the county slot is
        always None and national levels drop the state. Years served by the
        same vintage share a key.
        """
        state = None if query.geography in self.NATIONAL_LEVELS else query.state
        if query.boundary_detail == "cartographic":
            detail = f"cartographic-{self.resolution}"
        else:
            detail = query.boundary_detail
        return (query.geography, state, None, self.boundary_vintage(query), detail)

    def _cartographic_url(self, query: GeoQuery, vintage: int, scope: str) -> str:
        resolution = self.resolution if query.geography in ("state", "county") else "500k"

        if vintage == 2000:
            path = self.PREVGENZ_FILES[query.geography]
            if "{state}" in path and scope == "us":
                raise UnsupportedGeographyError(
                    f"2000 cartographic {query.geography} boundaries are only published per state"
                )
            return f"{self.CB_2000_BASE_URL}/{path.format(state=scope)}"

        if vintage == 2010:
            level = self.SUMMARY_LEVELS[query.geography]
            return f"{self.CB_2010_BASE_URL}/gz_2010_{scope}_{level}_00_{resolution}.zip"

        geo_code, _ = self._file_code(query, vintage)
        filename = f"cb_{vintage}_{scope}_{geo_code}_{resolution}.zip"
        return f"{self.CB_BASE_URL.format(year=vintage)}/{filename}"

    def _tiger_url(self, query: GeoQuery, vintage: int, scope: str) -> str:
        geo_code, directory = self._file_code(query, vintage)

        # Decennial TIGER/Line files live under TIGER2010/<DIR>/<vintage>/
        if vintage in (2000, 2010):
            suffix = str(vintage)[2:]
            filename = f"tl_2010_{scope}_{geo_code}{suffix}.zip"
            return f"{self.TIGER_BASE_URL.format(year=2010)}/{directory}/{vintage}/{filename}"

        filename = f"tl_{vintage}_{scope}_{geo_code}.zip"
        return f"{self.TIGER_BASE_URL.format(year=vintage)}/{directory}/{filename}"

    def _file_code(self, query: GeoQuery, vintage: int) -> Tuple[str, str]:
        if query.geography == "zcta":
            if vintage >= 2020:
                return "zcta520", "ZCTA520"
            if vintage > 2010:
                return "zcta510", "ZCTA5"
            return "zcta5", "ZCTA5"

        codes = self.FILE_CODES.get(query.geography)
        if codes is None:
            raise UnsupportedGeographyError(
                f"Unsupported geography for TIGER: {query.geography}"
            )
        return codes

    def _download(self, url: str, query: GeoQuery) -> bytes:
        """Download a boundary payload."""
        logger.info(f"Downloading: {url}")
        stage = f"geometry {query.describe()}"

        response = send_get(self.session, url, stage, timeout=self.timeout)
        status = response.status_code

        if status == 404:
            raise UnsupportedGeographyError(
                f"No {query.boundary_detail} {query.geography} boundaries published "
                f"for {query.year}: {url}"
            )
        if status >= 400:
            raise RemoteServiceError(
                stage, f"HTTP {status}: {short_error_text(response.text)}",
                url=url, status=status
            )
        return response.content

    def _read_payload(self, payload: bytes, url: str) -> gpd.GeoDataFrame:
        """Parse a zipped shapefile or a GeoJSON document."""
        if zipfile.is_zipfile(io.BytesIO(payload)):
            return self._read_zipped_shapefile(payload, url)

        if payload.lstrip()[:1] == b"{":
            return self._read_geojson(payload, url)

        raise RemoteServiceError("geometry", "Payload is neither a zip archive nor GeoJSON", url=url)

    def _read_zipped_shapefile(self, payload: bytes, url: str) -> gpd.GeoDataFrame:
        with zipfile.ZipFile(io.BytesIO(payload)) as zf:
            # Find the shapefile
            shp_files = [f for f in zf.namelist() if f.endswith(".shp")]
            if not shp_files:
                raise RemoteServiceError("geometry", "No shapefile found in archive", url=url)

            with tempfile.TemporaryDirectory() as tmp:
                zf.extractall(tmp)
                return gpd.read_file(Path(tmp) / shp_files[0])

    def _read_geojson(self, payload: bytes, url: str) -> gpd.GeoDataFrame:
        try:
            document = json.loads(payload)
        except ValueError as e:
            raise RemoteServiceError("geometry", "Invalid GeoJSON payload", url=url) from e

        features = document.get("features") if isinstance(document, dict) else None
        if features is None:
            raise RemoteServiceError("geometry", "GeoJSON payload has no features", url=url)
        if not features:
            return gpd.GeoDataFrame({GEOID: []}, geometry=[], crs=BOUNDARY_CRS)

        gdf = gpd.GeoDataFrame.from_features(features)
        crs_name = (document.get("crs") or {}).get("properties", {}).get("name")
        if crs_name:
            gdf = gdf.set_crs(crs_name)
        return gdf

    def _to_features(
        self,
        gdf: gpd.GeoDataFrame,
        query: GeoQuery,
        url: str
    ) -> gpd.GeoDataFrame:
        """Map a raw boundary table onto the GEOID/NAME/geometry layout."""
        geoids, split_parts = self._geoids(gdf, query, url)
        name_col = next((c for c in self.NAME_CANDIDATES if c in gdf.columns), None)
        names = gdf[name_col].astype(str) if name_col else geoids

        # Boundary files are NAD83; tag untagged payloads, reproject others
        if gdf.crs is None:
            gdf = gdf.set_crs(BOUNDARY_CRS)
        elif gdf.crs != BOUNDARY_CRS:
            gdf = gdf.to_crs(BOUNDARY_CRS)

        features = gpd.GeoDataFrame(
            {GEOID: geoids.values, NAME: names.values},
            geometry=gdf.geometry.values,
            crs=gdf.crs,
        )
        if features.geometry.name != GEOMETRY:
            features = features.rename_geometry(GEOMETRY)

        prefix = query.geoid_prefix
        if prefix and query.geography not in ("zcta",):
            features = features[features[GEOID].str.startswith(prefix)]

        # 2000 cartographic files store each part of a multipart unit as its own record
        if split_parts and features[GEOID].duplicated().any():
            features = features.dissolve(by=GEOID, as_index=False, aggfunc="first")
            features = features[[GEOID, NAME, GEOMETRY]]

        duplicated = features[GEOID].duplicated()
        if duplicated.any():
            logger.warning(
                f"Dropping {int(duplicated.sum())} duplicate boundary feature(s) for {query.describe()}"
            )
            features = features[~duplicated]

        return features.sort_values(GEOID, kind="mergesort").reset_index(drop=True)

    def _geoids(
        self,
        gdf: gpd.GeoDataFrame,
        query: GeoQuery,
        url: str
    ) -> Tuple[pd.Series, bool]:
        """
        Find or rebuild the GEOID of every record.

        Returns:
            (GEOID series, whether the file splits units into one record per part)
        """
        candidates = self.GEOID_CANDIDATES + (self.GEOID00_COLUMNS.get(query.geography),)
        geoid_col = next((c for c in candidates if c and c in gdf.columns), None)
        if geoid_col is not None:
            return gdf[geoid_col].astype(str).str.strip(), False

        # 2010 cartographic files: GEO_ID = "1400000US06059001101"
        if "GEO_ID" in gdf.columns:
            return gdf["GEO_ID"].astype(str).str.split("US").str[-1].str.strip(), False

        # 2000 cartographic files: zero-padded identifier components
        components = self.COMPONENT_COLUMNS.get(query.geography, ())
        if components and all(c in gdf.columns for c in components):
            widths = GEOGRAPHY_LEVELS[query.geography]["widths"]
            geoids = pd.Series("", index=gdf.index)
            for column, width in zip(components, widths):
                part = gdf[column].astype(str).str.strip().str.replace(".", "", regex=False)
                geoids = geoids + part.str.zfill(width)
            return geoids, True

        raise RemoteServiceError(
            "geometry",
            f"Unrecognized boundary file, no GEOID column in {list(gdf.columns)}",
            url=url
        )
