"""
Census Data Pipeline - Main Pipeline Class

Fetches Census statistics and the matching boundaries, joins them by GEOID
and returns one table ready for mapping.

Author: Mir Md Tasnim Alam
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Union

import pandas as pd
import geopandas as gpd

from .api_client import CensusAPIClient
from .boundaries import BoundaryFetcher, GeometryCache
from .config import PipelineConfig
from .exceptions import UnsupportedGeographyError
from .geography import GeographyNormalizer, GeoQuery
from .tabular import StatisticsFetcher, StatisticsResult, VariableInput
from .transformers import DataTransformer, JoinReport

logger = logging.getLogger(__name__)


class CensusPipeline:
    """
    Main pipeline class for fetching and joining Census data.

    Supports:
    - American Community Survey (ACS) 1-year and 5-year estimates
    - Decennial Census (2000, 2010, 2020)
    - Cartographic and TIGER/Line boundaries

    Example:
        >>> pipeline = CensusPipeline()
        >>> tracts = pipeline.get_acs(
        ...     geography="tract",
        ...     variables={"income": "B19013_001"},
        ...     state="CA",
        ...     county="Orange",
        ...     year=2019,
        ...     geometry=True
        ... )
        >>> tracts.attrs["join_report"]
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        client: Optional[CensusAPIClient] = None,
        boundaries: Optional[BoundaryFetcher] = None
    ):
        """
        Initialize the Census Pipeline.

        Args:
            config: Settings; defaults to PipelineConfig.from_env().
            client: Census API client (built from config if omitted).
            boundaries: Boundary fetcher (built from config if omitted).
        """
        self.config = config or PipelineConfig.from_env()

        self.client = client or CensusAPIClient(
            api_key=self.config.api_key,
            retries=self.config.retries,
            backoff_factor=self.config.backoff_factor,
            timeout=self.config.timeout,
        )

        if boundaries is None:
            cache = GeometryCache(
                cache_dir=self.config.cache_dir / "tiger",
                ttl=self.config.cache_ttl,
                enabled=self.config.use_cache,
            )
            boundaries = BoundaryFetcher(
                cache=cache,
                resolution=self.config.resolution,
                retries=self.config.retries,
                backoff_factor=self.config.backoff_factor,
            )
        self.boundaries = boundaries

        self.statistics = StatisticsFetcher(
            self.client,
            max_variables_per_request=self.config.max_variables_per_request,
            parallel_workers=self.config.parallel_workers,
        )
        self.transformer = DataTransformer()
        self.last_report: Optional[JoinReport] = None

    def normalize(
        self,
        geography: str,
        state=None,
        county=None,
        year: int = 2022,
        dataset: str = "acs5",
        boundary_detail: str = "cartographic"
    ) -> GeoQuery:
        """Validate geography arguments, resolving county names through the API."""
        normalizer = GeographyNormalizer(
            county_lookup=lambda st, yr: self.client.list_counties(st, yr, dataset)
        )
        return normalizer.normalize(
            geography,
            state=state,
            county=county,
            year=year,
            dataset=dataset,
            boundary_detail=boundary_detail,
        )

    def get_census(
        self,
        geography: str,
        variables: VariableInput,
        state=None,
        county=None,
        year: int = 2022,
        dataset: str = "acs5",
        geometry: bool = False,
        boundary_detail: str = "cartographic",
        summary_var: Optional[str] = None,
        require_geometry: bool = True,
        strict_summary: bool = False
    ) -> Union[pd.DataFrame, gpd.GeoDataFrame]:
        """
        Fetch statistics, optionally attach boundaries and a summary variable.

        Args:
            geography: Geographic level (state, county, tract, block group, place, zcta).
            variables: Variable code(s), or dict of {label: code}.
            state: State name, abbreviation or FIPS code.
            county: County name or FIPS code (requires state).
            year: Data year.
            dataset: acs5, acs1 or dec.
            geometry: Attach boundaries and return a GeoDataFrame.
            boundary_detail: 'cartographic' or 'full_detail'.
            summary_var: Variable code broadcast as summary_est/summary_moe.
            require_geometry: When False, missing boundary files degrade to a
                statistics-only table instead of raising.
            strict_summary: Raise MissingSummaryError instead of dropping
                units without a summary row.

        Returns:
            One row per (unit, variable) sorted by GEOID and variable code.
            The JoinReport is stored in `attrs["join_report"]`.
        """
        query = self.normalize(
            geography, state=state, county=county, year=year,
            dataset=dataset, boundary_detail=boundary_detail,
        )
        logger.info(f"Running pipeline for {query.describe()} (geometry={geometry})")

        report = JoinReport()
        boundaries = None

        if geometry:
            result, boundaries, skipped = self._fetch_concurrently(
                query, variables, summary_var, require_geometry
            )
            report = report.combine(JoinReport(geometry_skipped=skipped))
        else:
            result = self.statistics.fetch_statistics(query, variables, summary_var)

        table = result.rows
        if boundaries is not None:
            table, join_report = self.transformer.join(table, boundaries)
            report = report.combine(join_report)

        if result.summary is not None:
            table, summary_report = self.transformer.enrich_summary(
                table, result.summary, strict=strict_summary
            )
            report = report.combine(summary_report)

        table.attrs["join_report"] = report
        self.last_report = report

        logger.info(f"Pipeline complete: {len(table)} rows")
        return table

    def get_acs(
        self,
        geography: str,
        variables: VariableInput,
        state=None,
        county=None,
        year: int = 2022,
        survey: str = "acs5",
        **kwargs
    ) -> Union[pd.DataFrame, gpd.GeoDataFrame]:
        """
        Fetch American Community Survey estimates.

        Note: ACS 1-Year only available for areas with 65,000+ population.
        """
        if survey not in ("acs5", "acs1"):
            raise ValueError(f"Unknown ACS survey: {survey}")
        return self.get_census(
            geography, variables, state=state, county=county,
            year=year, dataset=survey, **kwargs
        )

    def get_decennial(
        self,
        geography: str,
        variables: VariableInput,
        state=None,
        county=None,
        year: int = 2020,
        **kwargs
    ) -> Union[pd.DataFrame, gpd.GeoDataFrame]:
        """
        Fetch Decennial Census counts (no margins of error).

        Args:
            year: Census year (2000, 2010, 2020)
        """
        return self.get_census(
            geography, variables, state=state, county=county,
            year=year, dataset="dec", **kwargs
        )

    def _fetch_concurrently(
        self,
        query: GeoQuery,
        variables: VariableInput,
        summary_var: Optional[str],
        require_geometry: bool
    ):
        """Run the statistics and boundary fetches side by side."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            stats_future = executor.submit(
                self.statistics.fetch_statistics, query, variables, summary_var
            )
            geo_future = executor.submit(self.boundaries.fetch_geometry, query)

            result: StatisticsResult = stats_future.result()
            try:
                boundaries = geo_future.result()
            except UnsupportedGeographyError as e:
                if require_geometry:
                    raise
                logger.warning(f"Boundaries unavailable, returning statistics only: {e}")
                return result, None, True

        return result, boundaries, False


def get_variable_metadata(
    variable_code: str,
    year: int = 2022,
    dataset: str = "acs5",
    client: Optional[CensusAPIClient] = None
) -> Dict:
    """
    Fetch metadata for a Census variable.

    Args:
        variable_code: Census variable code (e.g., "B01003_001E")
        year: Data year
        dataset: acs5, acs1 or dec

    Returns:
        Dict with variable label, concept, and predicateType
    """
    client = client or CensusAPIClient()
    return client.get_variable(variable_code, dataset, year)


def search_variables(
    keyword: str,
    year: int = 2022,
    dataset: str = "acs5",
    client: Optional[CensusAPIClient] = None
) -> pd.DataFrame:
    """
    Search for Census variables by keyword.

    Args:
        keyword: Search term
        year: Data year
        dataset: acs5, acs1 or dec

    Returns:
        DataFrame with matching variables
    """
    client = client or CensusAPIClient()
    variables = client.get_variables(dataset, year)

    results = []
    keyword_lower = keyword.lower()

    for var_id, var_info in variables.items():
        label = var_info.get("label", "")
        concept = var_info.get("concept", "")

        if keyword_lower in label.lower() or keyword_lower in concept.lower():
            results.append({
                "variable": var_id,
                "label": label,
                "concept": concept
            })

    return pd.DataFrame(results, columns=["variable", "label", "concept"]).sort_values(
        "variable"
    ).reset_index(drop=True)
