"""
Error taxonomy for the heatmap scoring core.

FetchError is the only error that reaches callers of the fetch layer.
CacheError never leaves the cache boundary. ValidationError marks
malformed input rows (filtered) or unusable requests (raised).
CancellationSignal is raised when a request is superseded and is
swallowed by whoever started it.
"""

from typing import Optional


class HeatmapError(Exception):
    """Base class for all errors raised by this package."""

    pass


class FetchError(HeatmapError):
    """A POI data source failed.

    ``source`` names the source(s) that were attempted, e.g. "primary",
    "secondary" or "primary+secondary".
    """

    def __init__(
        self,
        message: str,
        source: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message} [source={self.source}]: {self.cause}"
        return f"{self.message} [source={self.source}]"


class CacheError(HeatmapError):
    """Persistent cache tier failure. Always caught and logged."""

    pass


class ValidationError(HeatmapError):
    """Input failed validation (bad row, bad bounds, oversized viewport)."""

    pass


class CancellationSignal(HeatmapError):
    """The request was cancelled or superseded. Not a failure."""

    pass
