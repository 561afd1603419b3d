"""
Exceptions raised by the Census geo-join pipeline.

Author: Mir Md Tasnim Alam
"""

from typing import Iterable, Optional


class CensusGeoJoinError(Exception):
    """Base class for all pipeline errors."""
    pass


class InvalidGeographyError(CensusGeoJoinError):
    """The geography arguments do not describe a valid query."""
    pass


class InvalidVariableError(CensusGeoJoinError):
    """A variable code is unknown to the statistics source."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RemoteServiceError(CensusGeoJoinError):
    """A remote request failed after retries, or returned something unusable."""

    def __init__(
        self,
        stage: str,
        message: str,
        url: Optional[str] = None,
        status: Optional[int] = None
    ):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message
        self.url = url
        self.status = status


class UnsupportedGeographyError(CensusGeoJoinError):
    """No boundary file is published for the requested level and year."""
    pass


class MissingSummaryError(CensusGeoJoinError):
    """Some geographic units have no summary variable row."""

    def __init__(self, geoids: Iterable[str]):
        self.geoids = sorted(geoids)
        preview = ", ".join(self.geoids[:5])
        if len(self.geoids) > 5:
            preview += ", ..."
        super().__init__(
            f"No summary row for {len(self.geoids)} unit(s): {preview}"
        )
