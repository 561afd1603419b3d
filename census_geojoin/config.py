"""
Pipeline configuration.

Settings can be passed directly or read from environment variables with
PipelineConfig.from_env().

Author: Mir Md Tasnim Alam
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path.home() / ".census_cache"

# Census API documents a 50 variable limit per call, NAME included
MAX_VARIABLES_PER_REQUEST = 50


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast=int):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise ValueError(
            f"Environment variable {name} must be numeric, got {value!r}"
        ) from None


@dataclass(frozen=True)
class PipelineConfig:
    """
    Settings shared by the API client, boundary fetcher and pipeline.

    Attributes:
        api_key: Census API key (optional, raises rate limits).
        cache_dir: Directory for cached boundary downloads.
        use_cache: Enable boundary caching.
        cache_ttl: Seconds before a cached payload expires (None = never).
        max_variables_per_request: Census API variable limit per call.
        retries: Retry attempts for transient HTTP failures.
        backoff_factor: Exponential backoff factor between retries.
        timeout: Per-request timeout in seconds.
        parallel_workers: Worker threads for concurrent fetches.
        resolution: Cartographic boundary resolution (500k, 5m, 20m).
    """

    api_key: Optional[str] = None
    cache_dir: Path = DEFAULT_CACHE_DIR
    use_cache: bool = True
    cache_ttl: Optional[float] = None
    max_variables_per_request: int = MAX_VARIABLES_PER_REQUEST
    retries: int = 3
    backoff_factor: float = 1.0
    timeout: float = 30.0
    parallel_workers: int = 4
    resolution: str = "500k"

    def __post_init__(self):
        if self.max_variables_per_request < 2:
            raise ValueError("max_variables_per_request must leave room for NAME")
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.parallel_workers < 1:
            raise ValueError("parallel_workers must be >= 1")

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Build a config from CENSUS_* environment variables."""
        cache_dir = os.environ.get("CENSUS_CACHE_DIR")
        ttl = _env_number("CENSUS_CACHE_TTL", None, float)

        settings = dict(
            api_key=os.environ.get("CENSUS_API_KEY") or None,
            cache_dir=Path(cache_dir).expanduser() if cache_dir else DEFAULT_CACHE_DIR,
            use_cache=_env_bool("CENSUS_USE_CACHE", True),
            cache_ttl=ttl,
            max_variables_per_request=_env_number(
                "CENSUS_MAX_VARIABLES", MAX_VARIABLES_PER_REQUEST
            ),
            retries=_env_number("CENSUS_RETRIES", 3),
            timeout=_env_number("CENSUS_TIMEOUT", 30.0, float),
            parallel_workers=_env_number("CENSUS_WORKERS", 4),
        )
        settings.update(overrides)

        config = cls(**settings)
        if not config.api_key:
            logger.warning("No API key provided. Some endpoints may be rate-limited.")
        return config
