"""Exception hierarchy for upstream fetching and the fallback cascade.

Lower layers (circuit breaker, pager, store) report expected conditions with
booleans and empty lists; these exceptions cross the ExternalApiClient and
FallbackCascade boundaries only.
"""

from __future__ import annotations

from typing import Optional


class RackMonitorError(Exception):
    """Base class for service errors surfaced to routers."""


class UpstreamError(RackMonitorError):
    """A single upstream attempt failed."""

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class UpstreamFormatError(UpstreamError):
    """The upstream answered with a JSON shape we do not understand."""


class UpstreamAuthError(UpstreamError):
    """HTTP 530 from the upstream (FTP-style auth failure at the proxy)."""


class CircuitOpenError(RackMonitorError):
    """The circuit for an endpoint is open and the call was skipped."""

    def __init__(self, source: str, url: str):
        super().__init__(f"Service unavailable: {source} API is currently unavailable (circuit open)")
        self.source = source
        self.url = url


class UpstreamUnavailableError(RackMonitorError):
    """All attempts against an upstream were exhausted."""

    def __init__(self, source: str, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Failed to retrieve data from {source} API after {attempts} attempts{detail}")
        self.source = source
        self.attempts = attempts
        self.last_error = last_error


class CascadeExhaustedError(RackMonitorError):
    """Database and API tiers both failed and synthetic data was not allowed."""

    def __init__(self, source: str, db_error: str, api_error: str):
        super().__init__(f"All data sources failed for {source} (database: {db_error}; api: {api_error})")
        self.source = source
        self.db_error = db_error
        self.api_error = api_error
