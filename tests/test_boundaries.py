from __future__ import annotations

import io
import json
import threading
import time
import zipfile

import geopandas as gpd
import pytest
from geopandas.testing import assert_geodataframe_equal
from shapely.geometry import shape

from census_geojoin.boundaries import BoundaryFetcher, GeometryCache
from census_geojoin.exceptions import RemoteServiceError, UnsupportedGeographyError
from census_geojoin.geography import GeoQuery

from conftest import (
    FakeResponse,
    FakeSession,
    LA_TRACTS,
    ORANGE_TRACTS,
    feature_collection,
    geojson_handler,
    square,
)

ORANGE = GeoQuery(geography="tract", state="06", county="059", year=2019)


def _fetcher(handler, cache=None, **kwargs):
    session = FakeSession(handler)
    return BoundaryFetcher(cache=cache, session=session, **kwargs), session


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "query, url",
    [
        (
            ORANGE,
            "https://www2.census.gov/geo/tiger/GENZ2019/shp/cb_2019_06_tract_500k.zip",
        ),
        (
            GeoQuery("tract", state="06", year=2019, boundary_detail="full_detail"),
            "https://www2.census.gov/geo/tiger/TIGER2019/TRACT/tl_2019_06_tract.zip",
        ),
        (
            GeoQuery("county", state="06", year=2021),
            "https://www2.census.gov/geo/tiger/GENZ2021/shp/cb_2021_us_county_500k.zip",
        ),
        (
            GeoQuery("block group", state="36", year=2022, boundary_detail="full_detail"),
            "https://www2.census.gov/geo/tiger/TIGER2022/BG/tl_2022_36_bg.zip",
        ),
        (
            GeoQuery("zcta", year=2020),
            "https://www2.census.gov/geo/tiger/GENZ2020/shp/cb_2020_us_zcta520_500k.zip",
        ),
        (
            GeoQuery("zcta", year=2018, boundary_detail="full_detail"),
            "https://www2.census.gov/geo/tiger/TIGER2018/ZCTA5/tl_2018_us_zcta510.zip",
        ),
    ],
)
def test_build_url(query, url):
    fetcher, _ = _fetcher(None)
    assert fetcher.build_url(query) == url


def test_resolution_applies_to_national_files_only():
    fetcher, _ = _fetcher(None, resolution="20m")
    assert fetcher.build_url(GeoQuery("state", year=2020)).endswith("cb_2020_us_state_20m.zip")
    assert fetcher.build_url(ORANGE).endswith("cb_2019_06_tract_500k.zip")


@pytest.mark.parametrize(
    "query, url",
    [
        (
            GeoQuery("tract", state="06", county="059", year=2010, dataset="dec"),
            "https://www2.census.gov/geo/tiger/GENZ2010/gz_2010_06_140_00_500k.zip",
        ),
        (
            GeoQuery("tract", state="06", county="059", year=2010, dataset="dec",
                     boundary_detail="full_detail"),
            "https://www2.census.gov/geo/tiger/TIGER2010/TRACT/2010/tl_2010_06_tract10.zip",
        ),
        (
            GeoQuery("county", year=2012),
            "https://www2.census.gov/geo/tiger/GENZ2010/gz_2010_us_050_00_500k.zip",
        ),
        (
            GeoQuery("block group", state="06", year=2011),
            "https://www2.census.gov/geo/tiger/GENZ2010/gz_2010_06_150_00_500k.zip",
        ),
        (
            GeoQuery("zcta", year=2010, dataset="dec", boundary_detail="full_detail"),
            "https://www2.census.gov/geo/tiger/TIGER2010/ZCTA5/2010/tl_2010_us_zcta510.zip",
        ),
        (
            GeoQuery("tract", state="06", year=2000, dataset="dec", boundary_detail="full_detail"),
            "https://www2.census.gov/geo/tiger/TIGER2010/TRACT/2000/tl_2010_06_tract00.zip",
        ),
        (
            GeoQuery("tract", state="06", year=2009),
            "https://www2.census.gov/geo/tiger/PREVGENZ/tr/tr00shp/tr06_d00_shp.zip",
        ),
        (
            GeoQuery("county", year=2000, dataset="dec"),
            "https://www2.census.gov/geo/tiger/PREVGENZ/co/co00shp/co99_d00_shp.zip",
        ),
    ],
)
def test_build_url_decennial_vintages(query, url):
    fetcher, _ = _fetcher(None)
    assert fetcher.build_url(query) == url


def test_years_sharing_a_vintage_share_a_cache_key():
    fetcher, _ = _fetcher(None)
    keys = {fetcher.cache_key(GeoQuery("county", year=y)) for y in (2010, 2011, 2012)}
    assert keys == {("county", None, None, 2010, "cartographic-500k")}


@pytest.mark.parametrize(
    "query",
    [
        GeoQuery("tract", state="06", year=1990),
        GeoQuery("zcta", year=2000, dataset="dec"),
    ],
)
def test_unpublished_boundaries_are_unsupported(query):
    fetcher, session = _fetcher(None)
    with pytest.raises(UnsupportedGeographyError):
        fetcher.fetch_geometry(query)
    assert session.calls == []


def test_cache_key_ignores_county_and_national_state():
    fetcher, _ = _fetcher(None)
    assert fetcher.cache_key(ORANGE) == ("tract", "06", None, 2019, "cartographic-500k")
    assert fetcher.cache_key(GeoQuery("county", state="06", year=2019)) == (
        "county", None, None, 2019, "cartographic-500k"
    )


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------

def test_fetch_geometry_filters_to_county_and_sorts():
    geoids = list(reversed(ORANGE_TRACTS)) + LA_TRACTS
    fetcher, _ = _fetcher(geojson_handler(geoids))

    features = fetcher.fetch_geometry(ORANGE)

    assert isinstance(features, gpd.GeoDataFrame)
    assert list(features.columns) == ["GEOID", "NAME", "geometry"]
    assert list(features["GEOID"]) == sorted(ORANGE_TRACTS)
    assert features.crs.to_epsg() == 4269
    assert features["NAME"].str.startswith("Census Tract").all()


def test_duplicate_features_are_dropped():
    geoids = ORANGE_TRACTS + [ORANGE_TRACTS[0]]
    fetcher, _ = _fetcher(geojson_handler(geoids))

    features = fetcher.fetch_geometry(ORANGE)
    assert len(features) == len(ORANGE_TRACTS)
    assert features["GEOID"].is_unique


def test_other_crs_is_reprojected_to_nad83():
    fetcher, _ = _fetcher(geojson_handler(ORANGE_TRACTS, crs="EPSG:4326"))
    features = fetcher.fetch_geometry(ORANGE)
    assert features.crs.to_epsg() == 4269


def test_missing_file_is_unsupported():
    fetcher, _ = _fetcher(geojson_handler([], status=404))
    with pytest.raises(UnsupportedGeographyError, match="2019"):
        fetcher.fetch_geometry(ORANGE)


def test_server_error_is_remote_service_error():
    fetcher, _ = _fetcher(geojson_handler([], status=500))
    with pytest.raises(RemoteServiceError) as excinfo:
        fetcher.fetch_geometry(ORANGE)
    assert excinfo.value.status == 500


def test_payload_without_geoid_is_rejected():
    document = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": square(0, 0), "properties": {"ID": "1"}}],
    }
    payload = json.dumps(document).encode()
    fetcher, _ = _fetcher(lambda url, params: FakeResponse(200, content=payload))

    with pytest.raises(RemoteServiceError, match="GEOID"):
        fetcher.fetch_geometry(ORANGE)


def test_garbage_payload_is_rejected():
    fetcher, _ = _fetcher(lambda url, params: FakeResponse(200, content=b"\x00\x01binary"))
    with pytest.raises(RemoteServiceError, match="neither"):
        fetcher.fetch_geometry(ORANGE)


def test_zipped_shapefile_payload(tmp_path):
    document = feature_collection(ORANGE_TRACTS + LA_TRACTS)
    gdf = gpd.GeoDataFrame(
        {
            "GEOID": [f["properties"]["GEOID"] for f in document["features"]],
            "NAME": [f["properties"]["GEOID"][-6:] for f in document["features"]],
        },
        geometry=[shape(f["geometry"]) for f in document["features"]],
        crs="EPSG:4269",
    )
    shp_dir = tmp_path / "shp"
    shp_dir.mkdir()
    gdf.to_file(shp_dir / "cb_2019_06_tract_500k.shp")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for path in shp_dir.iterdir():
            zf.write(path, path.name)
    payload = buffer.getvalue()

    fetcher, _ = _fetcher(lambda url, params: FakeResponse(200, content=payload))
    features = fetcher.fetch_geometry(ORANGE)

    assert list(features["GEOID"]) == sorted(ORANGE_TRACTS)
    assert features.crs.to_epsg() == 4269


def _serve(features):
    payload = json.dumps({"type": "FeatureCollection", "features": features}).encode()
    return lambda url, params: FakeResponse(200, content=payload)


def _feature(properties, x=-118.0):
    return {"type": "Feature", "geometry": square(x, 33.6), "properties": properties}


DEC_2010 = GeoQuery("tract", state="06", county="059", year=2010, dataset="dec")


def test_2010_cartographic_geo_id_is_parsed():
    features = [
        _feature({"GEO_ID": f"1400000US{geoid}", "NAME": geoid[-6:], "LSAD": "Tract"}, x=-118 + i)
        for i, geoid in enumerate(ORANGE_TRACTS + LA_TRACTS)
    ]
    fetcher, session = _fetcher(_serve(features))

    result = fetcher.fetch_geometry(DEC_2010)

    assert list(result["GEOID"]) == ORANGE_TRACTS
    assert session.calls[0][0].endswith("gz_2010_06_140_00_500k.zip")


def test_2010_tiger_geoid10_is_used():
    features = [
        _feature({"GEOID10": geoid, "NAMELSAD10": f"Census Tract {geoid[-6:]}"}, x=-118 + i)
        for i, geoid in enumerate(ORANGE_TRACTS)
    ]
    fetcher, _ = _fetcher(_serve(features))
    query = GeoQuery("tract", state="06", county="059", year=2010, dataset="dec",
                     boundary_detail="full_detail")

    result = fetcher.fetch_geometry(query)

    assert list(result["GEOID"]) == ORANGE_TRACTS
    assert result["NAME"].str.startswith("Census Tract").all()


def test_2000_cartographic_components_are_padded_and_parts_merged():
    features = [
        _feature({"STATE": "06", "COUNTY": "059", "TRACT": "1101", "NAME": "11.01"}, x=-118.0),
        _feature({"STATE": "06", "COUNTY": "059", "TRACT": "1101", "NAME": "11.01"}, x=-117.0),
        _feature({"STATE": "06", "COUNTY": "059", "TRACT": "1102", "NAME": "11.02"}, x=-116.0),
        _feature({"STATE": "06", "COUNTY": "037", "TRACT": "101110", "NAME": "1011.10"}, x=-115.0),
    ]
    fetcher, _ = _fetcher(_serve(features))

    result = fetcher.fetch_geometry(GeoQuery("tract", state="06", county="059", year=2000, dataset="dec"))

    assert list(result.columns) == ["GEOID", "NAME", "geometry"]
    assert list(result["GEOID"]) == ["06059001101", "06059001102"]
    assert result.geometry.iloc[0].geom_type == "MultiPolygon"
    assert result.geometry.iloc[0].area == pytest.approx(2 * 0.01 ** 2)
    assert result.crs.to_epsg() == 4269


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

def test_cached_payload_is_downloaded_once():
    cache = GeometryCache()
    fetcher, session = _fetcher(geojson_handler(ORANGE_TRACTS + LA_TRACTS), cache=cache)

    first = fetcher.fetch_geometry(ORANGE)
    la = fetcher.fetch_geometry(GeoQuery("tract", state="06", county="037", year=2019))
    second = fetcher.fetch_geometry(ORANGE)

    assert len(session.calls) == 1
    assert list(la["GEOID"]) == sorted(LA_TRACTS)
    assert_geodataframe_equal(first, second)
    assert cache.stats() == {"hits": 2, "misses": 1, "entries": 1}


def test_concurrent_callers_share_one_download():
    cache = GeometryCache()
    loads = []

    def loader():
        loads.append(1)
        time.sleep(0.05)
        return b"payload"

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get_or_fetch(("k",), loader)))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(loads) == 1
    assert results == [b"payload"] * 8
    assert cache._key_locks == {}


def test_key_locks_are_released_after_each_load():
    cache = GeometryCache()
    for i in range(5):
        cache.get_or_fetch(("k", i), lambda: b"x")
    assert cache._key_locks == {}


def test_failed_load_releases_key_lock():
    cache = GeometryCache()

    def fail():
        raise RemoteServiceError("geometry", "boom")

    with pytest.raises(RemoteServiceError):
        cache.get_or_fetch(("k",), fail)
    assert cache._key_locks == {}
    assert cache.get_or_fetch(("k",), lambda: b"ok") == b"ok"


def test_entries_expire_after_ttl():
    now = [1000.0]
    cache = GeometryCache(ttl=60, clock=lambda: now[0])
    cache.put(("k",), b"old")

    now[0] += 30
    assert cache.get(("k",)) == b"old"

    now[0] += 31
    assert cache.get(("k",)) is None
    assert cache.get_or_fetch(("k",), lambda: b"new") == b"new"


def test_evict_expired():
    now = [0.0]
    cache = GeometryCache(ttl=10, clock=lambda: now[0])
    cache.put(("a",), b"a")
    now[0] = 5.0
    cache.put(("b",), b"b")

    now[0] = 12.0
    assert cache.evict_expired() == 1
    assert cache.stats()["entries"] == 1


def test_disk_cache_survives_new_instance(tmp_path):
    GeometryCache(cache_dir=tmp_path).put(("tract", "06", None, 2019, "cartographic-500k"), b"zip")

    fresh = GeometryCache(cache_dir=tmp_path)

    def fail():
        raise AssertionError("should not download")

    assert fresh.get_or_fetch(("tract", "06", None, 2019, "cartographic-500k"), fail) == b"zip"
    assert (tmp_path / "tract_06_us_2019_cartographic-500k.zip").exists()


def test_disk_entries_expire_on_the_cache_clock(tmp_path):
    now = [1000.0]
    key = ("tract", "06", None, 2019, "cartographic-500k")
    GeometryCache(cache_dir=tmp_path, ttl=60, clock=lambda: now[0]).put(key, b"zip")

    now[0] += 30
    assert GeometryCache(cache_dir=tmp_path, ttl=60, clock=lambda: now[0]).get(key) == b"zip"

    now[0] += 31
    fresh = GeometryCache(cache_dir=tmp_path, ttl=60, clock=lambda: now[0])
    assert fresh.get(key) is None
    assert list(tmp_path.glob("*.zip")) == []


def test_disabled_cache_always_loads(tmp_path):
    cache = GeometryCache(cache_dir=tmp_path, enabled=False)
    loads = []

    for _ in range(3):
        cache.get_or_fetch(("k",), lambda: loads.append(1) or b"x")

    assert len(loads) == 3
    assert list(tmp_path.iterdir()) == []


def test_clear(tmp_path):
    cache = GeometryCache(cache_dir=tmp_path)
    cache.put(("k",), b"x")
    cache.clear()
    assert cache.get(("k",)) is None
