from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional

from src.rackmon.errors import CascadeExhaustedError, RackMonitorError
from src.rackmon.services.external_api import ExternalApiClient, FetchOptions
from src.rackmon.services.synthetic import synthetic_records
from src.rackmon.services.upstream import is_paged_url

logger = logging.getLogger(__name__)

PrimaryFn = Callable[[], Awaitable[List[dict]]]


@dataclass(frozen=True)
class CascadeResult:
    records: List[dict]
    tier: str  # "database" | "api" | "synthetic"


class FallbackCascade:
    """
    Ordered data retrieval: database, then upstream API, then synthetic records.

    Each tier is tried at most once per call. Synthetic records are only returned when the
    caller opted in with FetchOptions.use_mock_on_fail.
    """

    def __init__(self, api: ExternalApiClient):
        self._api = api

    # PUBLIC_INTERFACE
    async def get_data(
        self,
        primary_fn: Optional[PrimaryFn],
        api_url: Optional[str],
        source: str,
        options: Optional[FetchOptions] = None,
    ) -> List[dict]:
        """Records for `source`; raises CascadeExhaustedError when every allowed tier failed."""
        return (await self.get_data_with_source(primary_fn, api_url, source, options)).records

    async def get_data_with_source(
        self,
        primary_fn: Optional[PrimaryFn],
        api_url: Optional[str],
        source: str,
        options: Optional[FetchOptions] = None,
    ) -> CascadeResult:
        opts = options or FetchOptions()

        # ---- Database tier ----
        if primary_fn is None:
            db_error = "persistence layer disabled"
            logger.info("Database disabled for %s, trying API", source)
        else:
            try:
                records = await primary_fn()
            except Exception as e:
                db_error = f"{type(e).__name__}: {e}"
                logger.warning("Database query failed for %s: %s. Trying API.", source, db_error)
            else:
                if records:
                    logger.info("Retrieved %s records from database for %s", len(records), source)
                    return CascadeResult(records=list(records), tier="database")
                db_error = "no records in database"
                logger.info("No data in database for %s, trying API", source)

        # ---- API tier ----
        api_error: str
        if not api_url:
            api_error = "no API URL configured"
            logger.warning("No API URL configured for %s", source)
        else:
            api_opts = replace(opts, use_mock_on_fail=False, use_pagination=is_paged_url(api_url))
            try:
                records = await self._api.fetch(api_url, source, api_opts)
            except RackMonitorError as e:
                api_error = str(e)
                logger.error("API fallback failed for %s: %s", source, api_error)
            else:
                if records:
                    logger.info("Retrieved %s records from API for %s", len(records), source)
                    return CascadeResult(records=records, tier="api")
                api_error = "API returned no records"
                logger.warning("API returned no records for %s", source)

        # ---- Synthetic tier ----
        if opts.use_mock_on_fail:
            logger.warning(
                "All data sources failed for %s (database: %s; api: %s). Using synthetic data.",
                source,
                db_error,
                api_error,
            )
            return CascadeResult(records=synthetic_records(source), tier="synthetic")

        logger.error("All data sources failed for %s (database: %s; api: %s)", source, db_error, api_error)
        raise CascadeExhaustedError(source, db_error=db_error, api_error=api_error)
