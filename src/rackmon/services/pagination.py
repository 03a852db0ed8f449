from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from src.rackmon.services.upstream import Unrecognized, ValueEnvelope, classify_response, page_records, with_page_params

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGES = 20
MAX_RECORDS = MAX_PAGES * DEFAULT_PAGE_SIZE
PAGE_DELAY_SEC = 0.3


class PaginatedFetcher:
    """
    skip/top pager for query-style upstreams.

    Stops on a short page, on reaching a declared total count, or at `max_pages`. MAX_PAGES page
    requests and MAX_RECORDS records are hard ceilings whatever the caller asks for.
    A failing page after some records were collected ends the walk with what we have;
    a failing first page propagates.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = MAX_PAGES,
        page_delay_sec: float = PAGE_DELAY_SEC,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self.page_size = max(1, int(page_size))
        self.max_pages = max(1, min(MAX_PAGES, int(max_pages)))
        self.page_delay_sec = max(0.0, float(page_delay_sec))
        self._sleep = sleep

    # PUBLIC_INTERFACE
    async def fetch_all(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        request_id: str = "",
    ) -> List[dict]:
        """Walk pages of `base_url` and return the concatenated records."""
        results: List[dict] = []
        total_records: Optional[int] = None
        page = 0

        logger.info(
            "Starting paginated retrieval from %s (pageSize=%s) [%s]",
            base_url,
            self.page_size,
            request_id,
            extra={"requestId": request_id},
        )

        while page < self.max_pages:
            skip = page * self.page_size
            page_url = with_page_params(base_url, skip=skip, top=self.page_size)
            logger.info("Getting page %s (skip=%s, top=%s) [%s]", page + 1, skip, self.page_size, request_id)

            try:
                started = time.monotonic()
                response = await self._client.get(page_url, headers=headers, timeout=timeout)
                response.raise_for_status()
                body = response.json()
            except Exception as e:
                logger.error("Error getting page %s: %s [%s]", page + 1, e, request_id)
                if results:
                    logger.warning("Returning %s records obtained before the error [%s]", len(results), request_id)
                    break
                raise

            shape = classify_response(body)
            if isinstance(shape, Unrecognized):
                logger.warning("Unknown response format on page %s keys=%s [%s]", page + 1, shape.keys, request_id)
            if isinstance(shape, ValueEnvelope) and shape.total_count:
                total_records = shape.total_count

            # Upstreams that ignore $top must not push us past page_size * max_pages.
            records = page_records(shape)[: self.page_size]
            results.extend(records)
            page += 1
            logger.info(
                "Page %s retrieved in %.0fms: %s records, %s so far [%s]",
                page,
                (time.monotonic() - started) * 1000,
                len(records),
                len(results),
                request_id,
            )

            if len(records) < self.page_size:
                logger.info("End of pagination: last page contains fewer than %s records [%s]", self.page_size, request_id)
                break
            if total_records is not None and len(results) >= total_records:
                logger.info("End of pagination: retrieved all %s records [%s]", total_records, request_id)
                break
            if len(results) >= MAX_RECORDS:
                del results[MAX_RECORDS:]
                logger.warning("Safety limit reached: %s records [%s]", MAX_RECORDS, request_id)
                break
            if page >= self.max_pages:
                logger.warning(
                    "Safety limit reached: %s pages (%s records) [%s]",
                    self.max_pages,
                    self.max_pages * self.page_size,
                    request_id,
                )
                break

            await self._sleep(self.page_delay_sec)

        logger.info("Completed paginated retrieval: %s records in %s pages [%s]", len(results), page, request_id)
        return results
