"""
Column layouts of the tables passed between pipeline stages.

Author: Mir Md Tasnim Alam
"""

from typing import Iterable

import pandas as pd

from .exceptions import RemoteServiceError

GEOID = "GEOID"
NAME = "NAME"
VARIABLE = "variable"
VARIABLE_CODE = "variable_code"
ESTIMATE = "estimate"
MOE = "moe"
SUMMARY_EST = "summary_est"
SUMMARY_MOE = "summary_moe"
GEOMETRY = "geometry"

# One row per (unit, variable) from the statistics source
STAT_COLUMNS = [GEOID, NAME, VARIABLE, VARIABLE_CODE, ESTIMATE, MOE]

# One row per unit from the boundary source
GEOMETRY_COLUMNS = [GEOID, NAME, GEOMETRY]

# Output of the join, before summary enrichment
JOINED_COLUMNS = STAT_COLUMNS + [GEOMETRY]

SORT_KEYS = [GEOID, VARIABLE_CODE]

# Boundary files are tagged NAD83 on ingestion
BOUNDARY_CRS = "EPSG:4269"


def empty_stat_table() -> pd.DataFrame:
    """StatRow table with no rows and the right dtypes."""
    return pd.DataFrame({
        GEOID: pd.Series(dtype="object"),
        NAME: pd.Series(dtype="object"),
        VARIABLE: pd.Series(dtype="object"),
        VARIABLE_CODE: pd.Series(dtype="object"),
        ESTIMATE: pd.Series(dtype="float64"),
        MOE: pd.Series(dtype="float64"),
    })


def require_columns(df: pd.DataFrame, columns: Iterable[str], stage: str) -> None:
    """Reject a table that is missing any of the expected columns."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise RemoteServiceError(
            stage, f"Unrecognized response shape, missing columns: {', '.join(missing)}"
        )
