from __future__ import annotations

import httpx
import pytest
from conftest import FakeUpstream, no_sleep

from src.rackmon.config import load_config
from src.rackmon.services.circuit_breaker import CircuitBreaker
from src.rackmon.services.external_api import ExternalApiClient, FetchOptions
from src.rackmon.services.pagination import MAX_PAGES, MAX_RECORDS, PaginatedFetcher
from src.rackmon.services.upstream import (
    BareList,
    DataEnvelope,
    FirstArrayField,
    StatusEnvelope,
    Unrecognized,
    ValueEnvelope,
    classify_response,
    is_paged_url,
    normalized_records,
    with_page_params,
)

PAGED_URL = "http://odata.test/odata/Racks?$select=NAME"


def test_classify_response_covers_known_shapes():
    assert isinstance(classify_response([{"a": 1}]), BareList)
    assert isinstance(classify_response({"status": "Success", "data": [{"a": 1}]}), StatusEnvelope)
    value = classify_response({"value": [{"a": 1}], "@odata.count": "7"})
    assert isinstance(value, ValueEnvelope) and value.total_count == 7
    assert isinstance(classify_response({"data": []}), DataEnvelope)
    first = classify_response({"meta": {}, "items": [{"a": 1}]})
    assert isinstance(first, FirstArrayField) and first.key == "items"
    assert isinstance(classify_response({"status": "Error", "message": "x"}), Unrecognized)
    assert isinstance(classify_response("text"), Unrecognized)


def test_only_bare_list_and_status_envelope_are_accepted_whole():
    assert normalized_records(classify_response([{"a": 1}])) == [{"a": 1}]
    assert normalized_records(classify_response({"status": "Success", "data": [{"a": 2}]})) == [{"a": 2}]
    assert normalized_records(classify_response({"value": [{"a": 3}]})) is None
    assert normalized_records(classify_response({"data": [{"a": 4}]})) is None


@pytest.mark.parametrize(
    "url,expected",
    [
        ("http://x/odata/Racks", True),
        ("http://x/api?$FILTER=a", True),
        ("http://x/api?$top=10", True),
        ("http://x/api/racks", False),
        (None, False),
    ],
)
def test_is_paged_url(url, expected):
    assert is_paged_url(url) is expected


def test_with_page_params_appends_or_replaces():
    assert with_page_params("http://x/odata/R", skip=0, top=50) == "http://x/odata/R?$top=50&$skip=0"
    assert with_page_params("http://x/odata/R?$filter=a", skip=50, top=50) == "http://x/odata/R?$filter=a&$top=50&$skip=50"
    assert with_page_params("http://x/odata/R?$top=1000&$skip=5", skip=100, top=50) == (
        "http://x/odata/R?$top=50&$skip=100"
    )


def _pager(handler, sleeps=None, page_size: int = 50) -> PaginatedFetcher:
    async def _sleep(d: float) -> None:
        if sleeps is not None:
            sleeps.append(d)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PaginatedFetcher(client, page_size=page_size, page_delay_sec=0.3, sleep=_sleep)


@pytest.mark.anyio
async def test_pager_never_exceeds_twenty_pages_or_cap():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        # Upstream ignores $top and always returns more than a page.
        return httpx.Response(200, json=[{"n": i} for i in range(60)])

    sleeps = []
    records = await _pager(handler, sleeps).fetch_all(PAGED_URL)

    assert len(requests) == 20
    assert len(records) == 20 * 50
    assert sleeps == [0.3] * 19


@pytest.mark.anyio
async def test_pager_stops_on_short_page_and_sends_skip_top():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        skip = int(request.url.params["$skip"])
        count = 50 if skip < 100 else 10
        return httpx.Response(200, json={"value": [{"n": skip + i} for i in range(count)]})

    records = await _pager(handler).fetch_all(PAGED_URL)

    assert len(records) == 110
    assert [r.url.params["$skip"] for r in requests] == ["0", "50", "100"]
    assert all(r.url.params["$top"] == "50" for r in requests)


@pytest.mark.anyio
async def test_pager_stops_at_declared_total():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"value": [{"n": i} for i in range(50)], "@odata.count": 100})

    records = await _pager(handler).fetch_all(PAGED_URL)
    assert len(records) == 100


@pytest.mark.anyio
async def test_pager_returns_partial_results_when_later_page_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["$skip"] == "0":
            return httpx.Response(200, json=[{"n": i} for i in range(50)])
        return httpx.Response(500, json={"error": "boom"})

    records = await _pager(handler).fetch_all(PAGED_URL)
    assert len(records) == 50


@pytest.mark.anyio
async def test_pager_raises_when_first_page_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(httpx.HTTPStatusError):
        await _pager(handler).fetch_all(PAGED_URL)


@pytest.mark.anyio
async def test_pager_caps_cannot_be_raised_by_caller():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        top = int(request.url.params["$top"])
        return httpx.Response(200, json=[{"n": i} for i in range(top)])

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    pager = PaginatedFetcher(client, page_size=50, max_pages=50, page_delay_sec=0.0, sleep=no_sleep)
    records = await pager.fetch_all(PAGED_URL)
    assert len(requests) == MAX_PAGES
    assert len(records) == MAX_RECORDS

    requests.clear()
    wide = PaginatedFetcher(client, page_size=200, max_pages=20, page_delay_sec=0.0, sleep=no_sleep)
    records = await wide.fetch_all(PAGED_URL)
    assert len(records) == MAX_RECORDS
    assert len(requests) == MAX_RECORDS // 200


@pytest.mark.anyio
async def test_env_overrides_cannot_lift_the_page_cap(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("UPSTREAM_MAX_PAGES", "50")
    monkeypatch.setenv("UPSTREAM_PAGE_SIZE", "1000")
    monkeypatch.setenv("UPSTREAM_PAGE_DELAY_MS", "0")
    config = load_config()
    assert config.upstream_max_pages == 20
    assert config.upstream_page_size == 50

    url = "http://odata.test/odata/Racks"
    upstream = FakeUpstream()
    upstream.route(url, lambda r: httpx.Response(200, json=[{"NAME": "R"}] * 60))
    api = ExternalApiClient.from_config(config, upstream.client(), CircuitBreaker())

    records = await api.fetch(url, "racks", FetchOptions.from_config(config, retries=0))

    assert len(upstream.calls(url)) == 20
    assert len(records) == 1000
