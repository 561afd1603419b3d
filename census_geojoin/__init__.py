"""
Census Geo-Join Pipeline

Fetches U.S. Census Bureau statistics and boundaries and joins them into
one table ready for mapping.

Author: Mir Md Tasnim Alam
https://github.com/tasnim966937
"""

from .census_pipeline import (
    CensusPipeline,
    get_variable_metadata,
    search_variables
)
from .api_client import CensusAPIClient
from .boundaries import BoundaryFetcher, GeometryCache
from .config import PipelineConfig
from .exceptions import (
    CensusGeoJoinError,
    InvalidGeographyError,
    InvalidVariableError,
    MissingSummaryError,
    RemoteServiceError,
    UnsupportedGeographyError
)
from .geography import (
    GeographyNormalizer,
    GeoQuery,
    FIPS_CODES,
    STATE_NAME_TO_FIPS,
    parse_geoid,
    build_geoid
)
from .tabular import StatisticsFetcher, StatisticsResult, VariableSpec
from .transformers import DataTransformer, JoinReport

__version__ = "1.1.0"
__author__ = "Mir Md Tasnim Alam"

__all__ = [
    "CensusPipeline",
    "CensusAPIClient",
    "BoundaryFetcher",
    "GeometryCache",
    "PipelineConfig",
    "GeographyNormalizer",
    "GeoQuery",
    "StatisticsFetcher",
    "StatisticsResult",
    "VariableSpec",
    "DataTransformer",
    "JoinReport",
    "CensusGeoJoinError",
    "InvalidGeographyError",
    "InvalidVariableError",
    "MissingSummaryError",
    "RemoteServiceError",
    "UnsupportedGeographyError",
    "FIPS_CODES",
    "STATE_NAME_TO_FIPS",
    "get_variable_metadata",
    "search_variables",
    "parse_geoid",
    "build_geoid"
]
