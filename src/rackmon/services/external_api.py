from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from src.rackmon.config import BackendConfig
from src.rackmon.errors import (
    CircuitOpenError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamFormatError,
    UpstreamUnavailableError,
)
from src.rackmon.schemas.common import utc_now
from src.rackmon.schemas.monitoring import EndpointDiagnosis
from src.rackmon.services.circuit_breaker import CircuitBreaker
from src.rackmon.services.pagination import PaginatedFetcher
from src.rackmon.services.retry import RetryPolicy, run_with_retry
from src.rackmon.services.synthetic import synthetic_records
from src.rackmon.services.upstream import (
    BareList,
    StatusEnvelope,
    Unrecognized,
    classify_response,
    describe_shape,
    is_paged_url,
    normalized_records,
)

logger = logging.getLogger(__name__)

FTP_AUTH_STATUS = 530


@dataclass(frozen=True)
class FetchOptions:
    """Per-call policy for ExternalApiClient.fetch."""

    retries: int = 3
    retry_delay_ms: int = 1000
    use_mock_on_fail: bool = False
    use_circuit_breaker: bool = True
    use_pagination: bool = True
    page_size: int = 50
    timeout_sec: float = 10.0
    debug: bool = False
    request_id: Optional[str] = None

    @classmethod
    def from_config(cls, config: BackendConfig, **overrides: Any) -> "FetchOptions":
        base = cls(
            retries=config.upstream_retries,
            retry_delay_ms=config.upstream_retry_delay_ms,
            page_size=config.upstream_page_size,
            timeout_sec=config.upstream_timeout_sec,
        )
        return replace(base, **overrides) if overrides else base


def _new_request_id(prefix: str = "api_req") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:5]}"


def _describe_exception(exc: BaseException) -> str:
    """One-line operator hint for a failed attempt."""
    if isinstance(exc, UpstreamAuthError):
        return "FTP-style authentication failure (HTTP 530) at upstream proxy"
    if isinstance(exc, UpstreamFormatError):
        return "unexpected response format"
    if isinstance(exc, httpx.TimeoutException):
        return "timeout exceeded"
    if isinstance(exc, httpx.ConnectError):
        return "connection refused or DNS failure; server might be down or unreachable"
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code == 401:
            return "authentication failed; check API key"
        if code == 403:
            return "access forbidden; check permissions"
        return f"HTTP {code}"
    return type(exc).__name__


class ExternalApiClient:
    """
    Resilient GET against the telemetry upstreams.

    Consults the circuit breaker, retries with exponential backoff and jitter, pages
    query-style URLs, and normalizes the two accepted response formats to a record list.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        breaker: CircuitBreaker,
        *,
        api_key: Optional[str] = None,
        max_pages: int = 20,
        page_delay_sec: float = 0.3,
        reachability_timeout_sec: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self._client = client
        self.breaker = breaker
        self._api_key = api_key
        self._max_pages = max_pages
        self._page_delay_sec = page_delay_sec
        self._reachability_timeout_sec = reachability_timeout_sec
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_config(cls, config: BackendConfig, client: httpx.AsyncClient, breaker: CircuitBreaker) -> "ExternalApiClient":
        return cls(
            client,
            breaker,
            api_key=config.api_key,
            max_pages=config.upstream_max_pages,
            page_delay_sec=config.upstream_page_delay_ms / 1000.0,
            reachability_timeout_sec=config.reachability_timeout_sec,
        )

    def _headers(self, request_id: str, json_body: bool = True) -> Dict[str, str]:
        headers = {"Accept": "application/json", "X-Request-ID": request_id}
        if json_body:
            headers["Content-Type"] = "application/json"
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _attempt(self, url: str, source: str, options: FetchOptions, request_id: str) -> List[dict]:
        headers = self._headers(request_id)
        paged = options.use_pagination and is_paged_url(url)
        started = time.monotonic()

        if options.debug:
            logger.debug(
                "API request configuration for %s: url=%s timeout=%ss auth=%s paged=%s [%s]",
                source,
                url,
                options.timeout_sec,
                "[REDACTED]" if "Authorization" in headers else None,
                paged,
                request_id,
            )

        try:
            if paged:
                pager = PaginatedFetcher(
                    self._client,
                    page_size=options.page_size,
                    max_pages=self._max_pages,
                    page_delay_sec=self._page_delay_sec,
                    sleep=self._sleep,
                )
                shape = BareList(records=await pager.fetch_all(url, headers, options.timeout_sec, request_id))
            else:
                response = await self._client.get(url, headers=headers, timeout=options.timeout_sec)
                if response.status_code == FTP_AUTH_STATUS:
                    raise UpstreamAuthError(
                        f"{source} API answered HTTP 530 (FTP-style auth failure)", url=url, status_code=FTP_AUTH_STATUS
                    )
                response.raise_for_status()
                shape = classify_response(response.json())
        except httpx.HTTPStatusError as e:
            if e.response.status_code == FTP_AUTH_STATUS:
                raise UpstreamAuthError(
                    f"{source} API answered HTTP 530 (FTP-style auth failure)", url=url, status_code=FTP_AUTH_STATUS
                ) from e
            raise
        except ValueError as e:
            # Body was not JSON.
            raise UpstreamFormatError(f"Invalid JSON from {source} API: {e}", url=url) from e

        records = normalized_records(shape)
        if records is None:
            raise UpstreamFormatError(f"Invalid response from {source} API: {describe_shape(shape)}", url=url)

        logger.info(
            "Data retrieved from %s API in %.0fms: %s records (%s) [%s]",
            source,
            (time.monotonic() - started) * 1000,
            len(records),
            "array" if isinstance(shape, BareList) else "status-wrapper",
            request_id,
        )
        return records

    # PUBLIC_INTERFACE
    async def fetch(self, url: Optional[str], source: str, options: Optional[FetchOptions] = None) -> List[dict]:
        """
        Fetch records from an upstream.

        Raises CircuitOpenError when the circuit is open and UpstreamUnavailableError once all
        attempts are exhausted, unless options.use_mock_on_fail is set, in which case synthetic
        records are returned instead.
        """
        opts = options or FetchOptions()
        request_id = opts.request_id or _new_request_id()

        if not url:
            logger.error("No URL provided for %s API [%s]", source, request_id)
            raise UpstreamError(f"No URL provided for {source} API")

        logger.info(
            "Starting external API request: %s %s (retries=%s, mockOnFail=%s, breaker=%s) [%s]",
            source,
            url,
            opts.retries,
            opts.use_mock_on_fail,
            opts.use_circuit_breaker,
            request_id,
            extra={"requestId": request_id, "source": source, "url": url},
        )

        if opts.use_circuit_breaker and self.breaker.is_open(url):
            logger.warning("Circuit breaker open for %s. Skipping API call. [%s]", url, request_id)
            if opts.use_mock_on_fail:
                logger.info("Using synthetic data for %s due to open circuit breaker [%s]", source, request_id)
                return synthetic_records(source)
            raise CircuitOpenError(source, url)

        policy = RetryPolicy.from_retries(opts.retries, opts.retry_delay_ms, rng=self._rng)

        def _on_failure(attempt: int, exc: Exception) -> None:
            logger.error(
                "Error retrieving data from %s API (attempt %s/%s): %s (%s) [%s]",
                source,
                attempt + 1,
                policy.max_attempts,
                exc,
                _describe_exception(exc),
                request_id,
                extra={"requestId": request_id, "attempt": attempt + 1, "url": url},
            )
            if opts.use_circuit_breaker:
                self.breaker.record_failure(url)

        async def _operation(attempt: int) -> List[dict]:
            logger.info(
                "Sending GET request to %s (attempt %s/%s) [%s]", url, attempt + 1, policy.max_attempts, request_id
            )
            return await self._attempt(url, source, opts, request_id)

        outcome = await run_with_retry(
            _operation,
            policy,
            sleep=self._sleep,
            on_failure=_on_failure,
            label=f"{source} API",
        )

        if outcome.ok:
            if opts.use_circuit_breaker:
                self.breaker.record_success(url)
            return outcome.value or []

        logger.error(
            "Failed to retrieve data from %s API after %s attempts: %s [%s]",
            source,
            outcome.attempts,
            outcome.error,
            request_id,
        )
        if opts.use_mock_on_fail:
            logger.warning("Falling back to synthetic data for %s [%s]", source, request_id)
            return synthetic_records(source)
        raise UpstreamUnavailableError(source, outcome.attempts, outcome.error) from outcome.error

    # PUBLIC_INTERFACE
    async def is_reachable(self, url: Optional[str]) -> bool:
        """HEAD probe with GET fallback. Any HTTP answer counts as reachable."""
        if not url:
            logger.debug("Cannot check reachability: no URL provided")
            return False

        request_id = _new_request_id("ping")
        headers = self._headers(request_id, json_body=False)
        started = time.monotonic()

        try:
            response = await self._client.head(url, headers=headers, timeout=self._reachability_timeout_sec)
            logger.info(
                "API at %s is reachable (HEAD, status %s) in %.0fms",
                url,
                response.status_code,
                (time.monotonic() - started) * 1000,
            )
            return True
        except httpx.HTTPError as head_error:
            logger.debug("HEAD request to %s failed: %s. Trying GET.", url, head_error)

        try:
            response = await self._client.get(url, headers=headers, timeout=self._reachability_timeout_sec)
            logger.info(
                "API at %s is reachable (GET, status %s) in %.0fms",
                url,
                response.status_code,
                (time.monotonic() - started) * 1000,
            )
            return True
        except httpx.HTTPError as e:
            logger.warning("API at %s is not reachable: %s (%s)", url, e, _describe_exception(e))
            return False

    # PUBLIC_INTERFACE
    async def diagnose(self, url: Optional[str], include_body: bool = False) -> EndpointDiagnosis:
        """Probe an endpoint once and report status, shape and operator recommendations."""
        diagnosis = EndpointDiagnosis(url=url or "", timestamp=utc_now())
        recs = diagnosis.recommendations

        if not url:
            diagnosis.error_details = "No URL provided"
            recs.append("Provide a valid URL for diagnosis")
            return diagnosis

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            diagnosis.error_details = "Invalid URL format"
            recs.append("Check URL format (should be like http://example.com/api/path)")
            return diagnosis

        request_id = _new_request_id("diag")
        started = time.monotonic()
        try:
            response = await self._client.get(url, headers=self._headers(request_id, json_body=False), timeout=10.0)
        except httpx.HTTPError as e:
            diagnosis.response_time_ms = int((time.monotonic() - started) * 1000)
            diagnosis.error_code = type(e).__name__
            diagnosis.error_details = str(e)
            if isinstance(e, httpx.TimeoutException):
                recs.append("Timeout - the server took too long to respond")
            elif isinstance(e, httpx.ConnectError):
                recs.append("Connection refused or DNS lookup failed - check the hostname and that the server is up")
            logger.error("Diagnosis request to %s failed: %s [%s]", url, e, request_id)
        else:
            diagnosis.response_time_ms = int((time.monotonic() - started) * 1000)
            diagnosis.is_reachable = True
            diagnosis.status_code = response.status_code
            diagnosis.content_type = response.headers.get("content-type")

            if diagnosis.content_type and "application/json" in diagnosis.content_type:
                diagnosis.response_type = "JSON"
                try:
                    body = response.json()
                except ValueError:
                    body = None
                    recs.append("The API declared JSON but the body could not be decoded")
                if body is not None:
                    shape = classify_response(body)
                    diagnosis.response_structure = describe_shape(shape)
                    if isinstance(shape, BareList) and shape.records and isinstance(shape.records[0], dict):
                        diagnosis.sample_keys = list(shape.records[0].keys())
                    if not isinstance(shape, (BareList, StatusEnvelope)):
                        recs.append("The API response structure does not match expected formats")
                    if isinstance(shape, Unrecognized):
                        diagnosis.response_structure = "Non-standard JSON structure"
                    if include_body:
                        diagnosis.response_data = body
            else:
                diagnosis.response_type = "Not JSON"
                recs.append("The API response is not in JSON format")

            code = response.status_code
            if code in (401, 403):
                recs.append("Authentication issue - check API key")
            elif code == FTP_AUTH_STATUS:
                recs.append("HTTP 530 - upstream proxy rejected the credentials")
            elif code == 404:
                recs.append("Resource not found - check URL path")
            elif code >= 500:
                recs.append("Server error - the API server might be experiencing problems")

            if diagnosis.response_time_ms > 5000:
                recs.append("Slow response time - consider increasing timeout configuration")

        if is_paged_url(url):
            diagnosis.is_paged = True
            if "$top=" not in url:
                recs.append("Paged API detected - consider using $top=50 to limit results per page")
            elif "$top=100" in url or "$top=1000" in url:
                recs.append("$top value too high - consider reducing to 50 to avoid server limit issues")
            if "$skip=" not in url:
                recs.append("Paged API detected - consider using $skip for pagination")

        if not recs:
            if not diagnosis.is_reachable:
                recs.append("API endpoint is not reachable - check network connectivity and URL")
            elif (diagnosis.status_code or 0) >= 400:
                recs.append("API returned an error status code")

        logger.info(
            "API diagnosis completed for %s: reachable=%s status=%s [%s]",
            url,
            diagnosis.is_reachable,
            diagnosis.status_code,
            request_id,
        )
        return diagnosis
