"""
Statistics fetcher - retrieves Census tables as long-format StatRow tables.

Author: Mir Md Tasnim Alam
"""

import re
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .api_client import CensusAPIClient
from .config import MAX_VARIABLES_PER_REQUEST
from .exceptions import InvalidVariableError, RemoteServiceError
from .geography import GeoQuery, geoid_series
from .schemas import (
    ESTIMATE,
    GEOID,
    MOE,
    NAME,
    SORT_KEYS,
    STAT_COLUMNS,
    VARIABLE,
    VARIABLE_CODE,
    empty_stat_table,
    require_columns,
)
from .transformers import DataTransformer

logger = logging.getLogger(__name__)

ACS_DATASETS = ("acs5", "acs1")

# B19013_001E / B19013_001M -> B19013_001
_ACS_SUFFIX_RE = re.compile(r"^([A-Z0-9]+_\d{3})[EM]$", re.IGNORECASE)

VariableInput = Union[str, Sequence[str], Mapping[str, str], "VariableSpec"]


def acs_base_code(code: str) -> str:
    """Strip the estimate/MOE suffix from an ACS variable code."""
    match = _ACS_SUFFIX_RE.match(code)
    return match.group(1) if match else code


@dataclass(frozen=True)
class VariableSpec:
    """
    Ordered (label, code) pairs to request.

    Build with VariableSpec.from_input(), which accepts a single code, a list
    of codes (labels default to the code), or a dict of {label: code}.
    """

    items: Tuple[Tuple[str, str], ...]

    @classmethod
    def from_input(cls, variables: VariableInput) -> "VariableSpec":
        if isinstance(variables, VariableSpec):
            return variables
        if isinstance(variables, str):
            pairs = [(variables, variables)]
        elif isinstance(variables, Mapping):
            pairs = [(str(label), str(code)) for label, code in variables.items()]
        else:
            pairs = [(str(code), str(code)) for code in variables]

        if not pairs:
            raise InvalidVariableError("No variables requested")

        seen = set()
        for _, code in pairs:
            if not code.strip():
                raise InvalidVariableError("Empty variable code")
            if code in seen:
                raise InvalidVariableError(f"Duplicate variable code '{code}'", code=code)
            seen.add(code)

        return cls(items=tuple(pairs))

    @property
    def codes(self) -> List[str]:
        return [code for _, code in self.items]

    @property
    def labels(self) -> List[str]:
        return [label for label, _ in self.items]

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.items)


@dataclass
class StatisticsResult:
    """Rows for the requested variables, plus the summary variable rows if asked."""

    rows: pd.DataFrame
    summary: Optional[pd.DataFrame] = None


class StatisticsFetcher:
    """
    Fetches variables from the Census data API.

    Requests are split into batches that respect the API's variable limit
    and issued on a thread pool; callers receive one combined table sorted
    by GEOID and variable code.
    """

    def __init__(
        self,
        client: CensusAPIClient,
        max_variables_per_request: int = MAX_VARIABLES_PER_REQUEST,
        parallel_workers: int = 4
    ):
        self.client = client
        self.max_variables_per_request = max_variables_per_request
        self.parallel_workers = parallel_workers
        self.transformer = DataTransformer()

    def fetch_statistics(
        self,
        query: GeoQuery,
        variables: VariableInput,
        summary_variable: Optional[str] = None
    ) -> StatisticsResult:
        """
        Fetch every requested variable for the query's geography.

        Args:
            query: Normalized geography query.
            variables: Codes, {label: code} dict, or VariableSpec.
            summary_variable: Optional denominator variable code.

        Returns:
            StatisticsResult with StatRow tables.
        """
        spec = VariableSpec.from_input(variables)
        logger.info(
            f"Fetching {len(spec)} variable(s) for {query.describe()}"
        )

        rows = self._fetch_rows(query, spec)

        summary = None
        if summary_variable:
            summary = self.fetch_summary(query, summary_variable)

        logger.info(f"Fetched {len(rows)} statistic rows")
        return StatisticsResult(rows=rows, summary=summary)

    def fetch_summary(self, query: GeoQuery, code: str) -> pd.DataFrame:
        """Fetch a single summary variable; one row per GEOID."""
        summary = self._fetch_rows(query, VariableSpec.from_input([code]))
        if summary[GEOID].duplicated().any():
            raise RemoteServiceError(
                "statistics", f"Summary variable {code} returned duplicate units"
            )
        return summary

    def plan_batches(self, codes: Sequence[str], dataset: str) -> List[List[str]]:
        """
        Split variable codes into request-sized batches.

        NAME takes one slot in every request; ACS codes take two (estimate
        and margin of error).
        """
        slots = 2 if dataset in ACS_DATASETS else 1
        per_batch = (self.max_variables_per_request - 1) // slots
        if per_batch < 1:
            raise ValueError(
                f"max_variables_per_request={self.max_variables_per_request} "
                f"is too small for {dataset}"
            )
        return [list(codes[i:i + per_batch]) for i in range(0, len(codes), per_batch)]

    def _fetch_rows(self, query: GeoQuery, spec: VariableSpec) -> pd.DataFrame:
        is_acs = query.dataset in ACS_DATASETS

        # Canonical code -> label
        labels: Dict[str, str] = {}
        for label, code in spec:
            code = acs_base_code(code) if is_acs else code
            if code in labels:
                raise InvalidVariableError(f"Duplicate variable code '{code}'", code=code)
            labels[code] = label

        batches = self.plan_batches(list(labels), query.dataset)
        if len(batches) > 1:
            logger.info(f"Splitting {len(labels)} variables into {len(batches)} requests")

        if len(batches) == 1 or self.parallel_workers == 1:
            frames = [self._fetch_batch(query, batch, labels) for batch in batches]
        else:
            workers = min(self.parallel_workers, len(batches))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [
                    executor.submit(self._fetch_batch, query, batch, labels)
                    for batch in batches
                ]
                # result() re-raises the first failure
                frames = [future.result() for future in futures]

        frames = [f for f in frames if not f.empty]
        if not frames:
            return empty_stat_table()

        rows = pd.concat(frames, ignore_index=True)
        if rows.duplicated(SORT_KEYS).any():
            raise RemoteServiceError(
                "statistics", f"Duplicate rows across batches for {query.describe()}"
            )

        return rows.sort_values(SORT_KEYS, kind="mergesort").reset_index(drop=True)

    def _fetch_batch(
        self,
        query: GeoQuery,
        codes: List[str],
        labels: Dict[str, str]
    ) -> pd.DataFrame:
        is_acs = query.dataset in ACS_DATASETS
        if is_acs:
            api_vars = [v for c in codes for v in (f"{c}E", f"{c}M")]
        else:
            api_vars = list(codes)

        try:
            raw = self.client.get_table(query, api_vars)
        except InvalidVariableError as e:
            code = acs_base_code(e.code) if (is_acs and e.code) else e.code
            raise InvalidVariableError(
                f"Unknown variable code '{code}' in {query.dataset} {query.year} "
                f"({query.describe()})",
                code=code
            ) from e

        frame = self._parse_api_response(raw, query, api_vars)
        if frame.empty:
            return empty_stat_table()

        long_frames = []
        for code in codes:
            estimate_col = f"{code}E" if is_acs else code
            part = pd.DataFrame({
                GEOID: frame[GEOID],
                NAME: frame[NAME],
                VARIABLE: labels[code],
                VARIABLE_CODE: code,
                ESTIMATE: frame[estimate_col],
                MOE: frame[f"{code}M"] if is_acs else np.nan,
            })
            long_frames.append(part)

        return pd.concat(long_frames, ignore_index=True)[STAT_COLUMNS]

    def _parse_api_response(
        self,
        response: List[List],
        query: GeoQuery,
        api_vars: List[str]
    ) -> pd.DataFrame:
        """Parse Census API JSON response into a validated DataFrame."""
        if not response:
            return pd.DataFrame()

        if not isinstance(response, list) or not all(isinstance(r, list) for r in response):
            raise RemoteServiceError(
                "statistics", "Unrecognized response shape, expected a list of rows"
            )

        headers = response[0]
        data = response[1:]
        if any(len(row) != len(headers) for row in data):
            raise RemoteServiceError(
                "statistics", "Unrecognized response shape, ragged rows"
            )

        df = pd.DataFrame(data, columns=headers)
        geo_columns = query.level["geo_columns"]
        require_columns(df, [NAME] + api_vars + geo_columns, "statistics")

        df[GEOID] = geoid_series(df, query.geography)

        # Convert numeric columns and blank out Census sentinel codes
        for col in api_vars:
            df[col] = pd.to_numeric(df[col], errors="coerce").astype("float64")
        df[api_vars] = self.transformer.clean_missing_values(df[api_vars])

        return df
