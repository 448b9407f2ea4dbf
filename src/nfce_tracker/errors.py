from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base class for failures raised inside the tracker."""


class ConfigurationError(TrackerError):
    """Remote endpoint (or another required setting) is not configured."""


class NetworkError(TrackerError):
    """A bridge call could not complete."""


class ExtractionError(TrackerError):
    """Turning a URL or photo into receipt data failed."""


class DuplicateError(TrackerError):
    """The resolved receipt URL is already tracked."""

    def __init__(self, url: str, message: str = "This receipt has already been scanned.") -> None:
        super().__init__(message)
        self.url = url


class ValidationError(TrackerError):
    """A payload is missing required fields or has the wrong shape."""

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.details = details
