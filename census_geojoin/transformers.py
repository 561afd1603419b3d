"""
Data Transformers - Joining statistics to boundaries and derived columns.

Author: Mir Md Tasnim Alam
"""

import logging
from dataclasses import dataclass, fields
from typing import Callable, Optional, Tuple, Union

import numpy as np
import pandas as pd
import geopandas as gpd

from .exceptions import MissingSummaryError, RemoteServiceError
from .schemas import (
    ESTIMATE,
    GEOID,
    GEOMETRY,
    MOE,
    NAME,
    SORT_KEYS,
    STAT_COLUMNS,
    SUMMARY_EST,
    SUMMARY_MOE,
    require_columns,
)

logger = logging.getLogger(__name__)

# (polygon, polygon) -> polygon
PolygonDifference = Callable[[object, object], object]


@dataclass(frozen=True)
class JoinReport:
    """
    Coverage gaps found while joining.

    Attributes:
        statistics_dropped: Units with statistics but no boundary.
        geometry_dropped: Units with a boundary but no statistics.
        statistics_rows_dropped: StatRows removed with those units.
        summary_dropped: Units removed for lacking a summary row.
        geometry_skipped: Boundaries were unavailable and not attached.
    """

    statistics_dropped: int = 0
    geometry_dropped: int = 0
    statistics_rows_dropped: int = 0
    summary_dropped: int = 0
    geometry_skipped: bool = False

    @property
    def has_drops(self) -> bool:
        return bool(self.statistics_dropped or self.geometry_dropped or self.summary_dropped)

    def combine(self, other: "JoinReport") -> "JoinReport":
        values = {}
        for f in fields(self):
            a, b = getattr(self, f.name), getattr(other, f.name)
            values[f.name] = (a or b) if isinstance(a, bool) else a + b
        return JoinReport(**values)

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class DataTransformer:
    """
    Transformer class for Census data.

    Provides methods for:
    - Joining statistics to boundaries
    - Broadcasting summary (denominator) variables
    - Missing value handling
    - Rate and percentage computation
    - Erasing water area from boundaries
    """

    # Census Bureau codes for missing/suppressed data
    MISSING_CODES = {
        -666666666: "too few sample observations",
        -999999999: "no sample observations",
        -888888888: "not applicable",
        -555555555: "estimate is controlled",
        -222222222: "too many sample cases",
        -333333333: "median in top/bottom interval"
    }

    def join(
        self,
        statistics: pd.DataFrame,
        geometry: gpd.GeoDataFrame
    ) -> Tuple[gpd.GeoDataFrame, JoinReport]:
        """
        Attach boundaries to statistic rows by GEOID.

        Inner join: units missing from either side are dropped and counted in
        the returned report instead of raising.

        Args:
            statistics: StatRow table.
            geometry: Boundary table with GEOID, NAME and geometry.

        Returns:
            (GeoDataFrame sorted by GEOID and variable code, JoinReport)
        """
        require_columns(statistics, STAT_COLUMNS, "join")
        require_columns(geometry, [GEOID, NAME, GEOMETRY], "join")

        stat_ids = set(statistics[GEOID])
        geo_ids = set(geometry[GEOID])
        only_statistics = stat_ids - geo_ids
        only_geometry = geo_ids - stat_ids

        report = JoinReport(
            statistics_dropped=len(only_statistics),
            geometry_dropped=len(only_geometry),
            statistics_rows_dropped=int(statistics[GEOID].isin(only_statistics).sum()),
        )

        boundaries = pd.DataFrame({
            GEOID: geometry[GEOID].values,
            "_boundary_name": geometry[NAME].values,
            GEOMETRY: geometry.geometry.values,
        })
        merged = pd.DataFrame(statistics).merge(boundaries, on=GEOID, how="inner")

        # Prefer the statistics NAME; fall back to the boundary file's
        has_name = merged[NAME].notna() & (merged[NAME].astype(str) != "")
        merged[NAME] = merged[NAME].where(has_name, merged["_boundary_name"])
        merged = merged.drop(columns="_boundary_name")

        merged = merged.sort_values(SORT_KEYS, kind="mergesort").reset_index(drop=True)
        joined = gpd.GeoDataFrame(merged, geometry=GEOMETRY, crs=geometry.crs)

        if report.has_drops:
            logger.warning(
                f"Join dropped {report.statistics_dropped} unit(s) without boundaries "
                f"({report.statistics_rows_dropped} rows) and "
                f"{report.geometry_dropped} boundary unit(s) without statistics"
            )
        logger.info(f"Joined geometries for {len(joined)} rows")
        return joined, report

    def enrich_summary(
        self,
        rows: pd.DataFrame,
        summary: pd.DataFrame,
        strict: bool = False
    ) -> Tuple[pd.DataFrame, JoinReport]:
        """
        Copy the summary variable onto every row of the same unit.

        Rows whose unit has no summary row are dropped and counted in
        `summary_dropped`; with strict=True a MissingSummaryError is raised.

        Args:
            rows: StatRow or joined table.
            summary: StatRow table for the summary variable.
            strict: Raise instead of dropping uncovered units.

        Returns:
            (Table with summary_est and summary_moe columns, JoinReport)
        """
        require_columns(summary, [GEOID, ESTIMATE, MOE], "summary")
        if summary[GEOID].duplicated().any():
            raise RemoteServiceError("summary", "Summary variable has multiple rows per unit")

        lookup = summary.set_index(GEOID)[[ESTIMATE, MOE]].rename(
            columns={ESTIMATE: SUMMARY_EST, MOE: SUMMARY_MOE}
        )

        missing = set(rows[GEOID]) - set(lookup.index)
        if missing and strict:
            raise MissingSummaryError(missing)

        enriched = rows.merge(lookup, left_on=GEOID, right_index=True, how="inner")

        # Keep geometry last
        columns = [c for c in rows.columns if c != GEOMETRY] + [SUMMARY_EST, SUMMARY_MOE]
        if GEOMETRY in rows.columns:
            columns.append(GEOMETRY)
        enriched = enriched[columns]

        sort_keys = [k for k in SORT_KEYS if k in enriched.columns]
        enriched = enriched.sort_values(sort_keys, kind="mergesort").reset_index(drop=True)

        report = JoinReport(summary_dropped=len(missing))
        if missing:
            logger.warning(f"Dropped {len(missing)} unit(s) without a summary row")
        return enriched, report

    def clean_missing_values(
        self,
        df: pd.DataFrame,
        strategy: str = "nan",
        fill_value: Optional[float] = None
    ) -> pd.DataFrame:
        """
        Handle Census missing value codes.

        Args:
            df: Input DataFrame
            strategy: 'nan' (convert to NaN), 'fill' (fill with value), 'drop' (drop rows)
            fill_value: Value to use when strategy='fill'

        Returns:
            Cleaned DataFrame
        """
        df = df.copy()

        codes = list(self.MISSING_CODES)
        for col in df.select_dtypes(include="number").columns:
            df[col] = df[col].where(~df[col].isin(codes), np.nan)

        if strategy == "nan":
            pass  # Already converted
        elif strategy == "fill":
            numeric = df.select_dtypes(include="number").columns
            df[numeric] = df[numeric].fillna(fill_value)
        elif strategy == "drop":
            df = df.dropna(subset=list(df.select_dtypes(include="number").columns))
        else:
            raise ValueError(f"Unknown strategy: {strategy}")

        return df

    def calculate_rates(
        self,
        df: pd.DataFrame,
        numerator: str,
        denominator: str,
        rate_name: str,
        per: int = 100,
        handle_zero: str = "nan"
    ) -> pd.DataFrame:
        """
        Calculate rates (e.g., percentage, per 1000, etc.)

        Args:
            df: Input DataFrame
            numerator: Column name for numerator
            denominator: Column name for denominator
            rate_name: Name for new rate column
            per: Rate multiplier (100 for percent, 1000 for per-1000, etc.)
            handle_zero: How to handle zero denominators ('nan', 'zero', 'inf')

        Returns:
            DataFrame with rate column added
        """
        df = df.copy()

        # Calculate rate
        with np.errstate(divide='ignore', invalid='ignore'):
            rate = (df[numerator] / df[denominator]) * per

        # Handle zeros/infinites
        if handle_zero == "nan":
            rate = rate.replace([np.inf, -np.inf], np.nan)
        elif handle_zero == "zero":
            rate = rate.replace([np.inf, -np.inf], 0)

        df[rate_name] = rate

        return df

    def erase_water(
        self,
        table: gpd.GeoDataFrame,
        water: Union[gpd.GeoDataFrame, gpd.GeoSeries],
        difference: Optional[PolygonDifference] = None
    ) -> gpd.GeoDataFrame:
        """
        Subtract water area from every boundary in `table`.

        Args:
            table: Joined GeoDataFrame.
            water: Water polygons (reprojected to the table's CRS if needed).
            difference: Polygon difference primitive; defaults to shapely's.

        Returns:
            Copy of `table` with the water removed from each geometry.
        """
        if table.crs is not None and water.crs is not None and water.crs != table.crs:
            water = water.to_crs(table.crs)

        water_shape = water.geometry.union_all()
        difference = difference or (lambda a, b: a.difference(b))

        erased = [
            None if geom is None else difference(geom, water_shape)
            for geom in table.geometry
        ]

        result = table.copy()
        result[result.geometry.name] = gpd.GeoSeries(erased, index=table.index, crs=table.crs)
        return result
