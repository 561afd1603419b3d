"""
Census API Client - Low-level API wrapper for Census Bureau endpoints.

Author: Mir Md Tasnim Alam
"""

import re
import time
import logging
import threading
from typing import Dict, List, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exceptions import (
    InvalidGeographyError,
    InvalidVariableError,
    RemoteServiceError,
)
from .geography import GeoQuery

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

_UNKNOWN_VARIABLE_RE = re.compile(r"unknown variable '([^']+)'", re.IGNORECASE)


def build_session(retries: int = 3, backoff_factor: float = 1.0) -> requests.Session:
    """
    Create a requests session that retries transient failures.

    Connection errors and 429/5xx responses are retried with exponential
    backoff; other 4xx responses are returned immediately.
    """
    session = requests.Session()
    policy = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=backoff_factor,
        status_forcelist=list(RETRYABLE_STATUS_CODES),
        allowed_methods=frozenset(["GET"]),
    )
    adapter = HTTPAdapter(max_retries=policy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join((text or "").split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


def send_get(
    session: requests.Session,
    url: str,
    stage: str,
    params: Optional[Dict] = None,
    timeout: float = 30.0
) -> requests.Response:
    """
    Issue a GET and convert transport failures into RemoteServiceError.

    Retries happen inside the session adapter; anything that escapes it has
    already exhausted its attempts.
    """
    try:
        return session.get(url, params=params, timeout=timeout)
    except requests.exceptions.RetryError as e:
        raise RemoteServiceError(stage, f"Retries exhausted: {e}", url=url) from e
    except requests.exceptions.Timeout as e:
        raise RemoteServiceError(stage, f"Request timed out: {e}", url=url) from e
    except requests.exceptions.ConnectionError as e:
        raise RemoteServiceError(stage, f"Connection failed: {e}", url=url) from e
    except requests.exceptions.RequestException as e:
        raise RemoteServiceError(stage, f"Request failed: {e}", url=url) from e


class CensusAPIClient:
    """
    Low-level client for Census Bureau APIs.

    Handles:
    - Request construction and parameter encoding
    - Rate limiting and retry logic
    - Error handling and response validation
    """

    BASE_URL = "https://api.census.gov/data"

    # Rate limiting: Census API has 500 requests/day without key
    RATE_LIMIT_DELAY = 0.5  # seconds between requests

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        retries: int = 3,
        backoff_factor: float = 1.0,
        timeout: float = 30.0,
        rate_limit_delay: Optional[float] = None
    ):
        """
        Initialize the API client.

        Args:
            api_key: Census API key for higher rate limits.
            session: Preconfigured session (defaults to build_session()).
            retries: Retry attempts for transient failures.
            backoff_factor: Exponential backoff factor between retries.
            timeout: Per-request timeout in seconds.
            rate_limit_delay: Minimum seconds between requests.
        """
        self.api_key = api_key
        self.timeout = timeout
        self.rate_limit_delay = (
            self.RATE_LIMIT_DELAY if rate_limit_delay is None else rate_limit_delay
        )
        self.session = session or build_session(retries, backoff_factor)

        self._last_request_time = 0.0
        self._rate_lock = threading.Lock()

    def dataset_endpoint(self, dataset: str, year: int) -> str:
        """
        Endpoint path for a dataset and year.

        Note: Decennial tables differ between census years.
        - 2020: DHC (demographic and housing characteristics)
        - 2010 and 2000: SF1
        """
        if dataset == "acs5":
            return f"{year}/acs/acs5"
        if dataset == "acs1":
            return f"{year}/acs/acs1"
        if dataset == "dec":
            if year == 2020:
                return f"{year}/dec/dhc"
            return f"{year}/dec/sf1"
        raise ValueError(f"Unknown dataset: {dataset}")

    def get_table(self, query: GeoQuery, variables: List[str]) -> List[List[str]]:
        """
        Fetch one table of variables for the query's geography.

        Args:
            query: Normalized geography query.
            variables: API variable codes (NAME is added automatically).

        Returns:
            Raw API response as list of lists (first row is headers).
        """
        endpoint = self.dataset_endpoint(query.dataset, query.year)
        params = self._build_params(variables, query)
        stage = f"statistics {query.describe()}"
        return self._make_request(endpoint, params, stage)

    def list_counties(self, state: str, year: int, dataset: str = "acs5") -> Dict[str, str]:
        """
        List the counties of a state.

        Returns:
            Dict mapping 3-digit county FIPS to the county's NAME.
        """
        endpoint = self.dataset_endpoint(dataset, year)
        params = {"get": "NAME", "for": "county:*", "in": f"state:{state}"}
        if self.api_key:
            params["key"] = self.api_key

        rows = self._make_request(endpoint, params, f"county lookup state={state}")
        if not rows:
            return {}

        header = rows[0]
        if "NAME" not in header or "county" not in header:
            raise RemoteServiceError(
                "county lookup", f"Unrecognized response header: {header}"
            )
        name_idx = header.index("NAME")
        county_idx = header.index("county")
        return {row[county_idx].zfill(3): row[name_idx] for row in rows[1:]}

    def get_variables(self, dataset: str = "acs5", year: int = 2022) -> Dict[str, Dict]:
        """Fetch the variable dictionary published for a dataset."""
        endpoint = f"{self.dataset_endpoint(dataset, year)}/variables.json"
        payload = self._make_request(endpoint, {}, f"variables {dataset} {year}")
        if not isinstance(payload, dict) or "variables" not in payload:
            raise RemoteServiceError(
                "variables", "Response has no 'variables' section"
            )
        return payload["variables"]

    def get_variable(self, code: str, dataset: str = "acs5", year: int = 2022) -> Dict:
        """Fetch the label, concept and type of one variable."""
        endpoint = f"{self.dataset_endpoint(dataset, year)}/variables/{code}.json"
        return self._make_request(endpoint, {}, f"variable {code}")

    def _make_request(self, endpoint: str, params: Dict, stage: str):
        """
        Make API request with rate limiting.

        Args:
            endpoint: API endpoint path.
            params: Query parameters.
            stage: Label used in error messages.

        Returns:
            Parsed JSON response.
        """
        # Rate limiting
        self._apply_rate_limit()

        # Build URL
        url = f"{self.BASE_URL}/{endpoint}"

        logger.debug(f"Requesting: {url}?{urlencode(params)}")

        response = send_get(self.session, url, stage, params=params, timeout=self.timeout)
        status = response.status_code

        # Census returns 204 when the geography has no rows
        if status == 204:
            return []
        if status == 400:
            self._raise_bad_request(response.text, stage, url)
        if status == 404:
            raise RemoteServiceError(
                stage, f"Endpoint not found - check year/product: {endpoint}",
                url=url, status=status
            )
        if status >= 400:
            raise RemoteServiceError(
                stage, f"HTTP {status}: {short_error_text(response.text)}",
                url=url, status=status
            )

        try:
            return response.json()
        except ValueError as e:
            raise RemoteServiceError(
                stage, f"Invalid JSON in response (HTTP {status})", url=url, status=status
            ) from e

    def _raise_bad_request(self, text: str, stage: str, url: str) -> None:
        """Translate a 400 response into the matching caller error."""
        match = _UNKNOWN_VARIABLE_RE.search(text or "")
        if match:
            code = match.group(1)
            raise InvalidVariableError(f"Unknown variable code '{code}'", code=code)

        lowered = (text or "").lower()
        if "geography" in lowered or "'for'" in lowered or "'in'" in lowered:
            raise InvalidGeographyError(
                f"[{stage}] Bad geography: {short_error_text(text)}"
            )

        raise RemoteServiceError(
            stage, f"Bad request: {short_error_text(text)}", url=url, status=400
        )

    def _build_params(self, variables: List[str], query: GeoQuery) -> Dict:
        """Build API request parameters."""
        params = {
            "get": ",".join(["NAME"] + list(variables)),
        }

        # Add API key if available
        if self.api_key:
            params["key"] = self.api_key

        params["for"] = self._build_for_clause(query)

        in_clause = self._build_in_clause(query)
        if in_clause:
            params["in"] = in_clause

        return params

    def _build_for_clause(self, query: GeoQuery) -> str:
        """Build the 'for' clause for geographic filtering."""
        api_name = query.level["api_name"]

        if query.geography == "state" and query.state:
            return f"state:{query.state}"
        if query.geography == "county" and query.county:
            return f"county:{query.county}"
        return f"{api_name}:*"

    def _build_in_clause(self, query: GeoQuery) -> Optional[str]:
        """Build the 'in' clause naming parent geographies."""
        if query.geography in ("state", "zcta") or not query.state:
            return None

        clause = f"state:{query.state}"
        if query.geography in ("tract", "block group"):
            if query.county:
                clause += f" county:{query.county}"
            elif query.geography == "block group":
                clause += " county:*"
        return clause

    def _apply_rate_limit(self) -> None:
        """Apply rate limiting between requests."""
        if self.rate_limit_delay <= 0:
            return
        with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.rate_limit_delay:
                time.sleep(self.rate_limit_delay - elapsed)
            self._last_request_time = time.time()
