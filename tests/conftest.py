from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

import httpx
import pytest

from src.rackmon.config import BackendConfig
from src.rackmon.schemas.common import utc_now
from src.rackmon.schemas.telemetry import (
    Problem,
    ProblemCreate,
    ProblemStatus,
    RackRecord,
    SensorRecord,
    ThresholdSet,
    ThresholdUpdate,
)
from src.rackmon.services.store import UpsertResult

API1_URL = "http://api1.test/racks"
API2_URL = "http://api2.test/sensors"


def make_config(**overrides: Any) -> BackendConfig:
    """BackendConfig with fast, deterministic settings for tests."""
    base = BackendConfig(
        mongo_uri="mongodb://localhost:27017",
        mongo_db_name="rackmon_test",
        db_enabled=True,
        api1_url=API1_URL,
        api2_url=API2_URL,
        api_key=None,
        monitoring_interval_sec=60,
        monitoring_autostart=False,
        monitoring_start_delay_sec=0,
        circuit_failure_threshold=3,
        circuit_reset_timeout_sec=30.0,
        upstream_timeout_sec=2.0,
        upstream_retries=0,
        upstream_retry_delay_ms=0,
        upstream_page_size=50,
        upstream_max_pages=20,
        upstream_page_delay_ms=0,
        reachability_timeout_sec=1.0,
    )
    return replace(base, **overrides) if overrides else base


class FakeStore:
    """In-memory TelemetryStore used by service and API tests."""

    def __init__(self) -> None:
        self.racks: Dict[str, dict] = {}
        self.readings: List[dict] = []
        self.problems: List[dict] = []
        self.thresholds: List[ThresholdSet] = []
        self.fail_upserts_for: Set[str] = set()

    async def ping(self) -> bool:
        return True

    async def get_racks(self) -> List[dict]:
        return [dict(r) for r in self.racks.values()]

    async def get_rack(self, rack_id: str) -> Optional[dict]:
        return next((dict(r) for r in self.racks.values() if r["id"] == rack_id), None)

    async def get_sensor_readings(self, limit: int = 500) -> List[dict]:
        return [dict(r) for r in self.readings[-limit:]]

    async def get_rack_readings(self, rack_id: str, limit: int = 100) -> List[dict]:
        mine = [dict(r) for r in reversed(self.readings) if r["rackId"] == rack_id]
        return mine[:limit]

    async def get_thresholds(self) -> Optional[ThresholdSet]:
        return self.thresholds[-1] if self.thresholds else None

    async def insert_thresholds(self, payload: ThresholdUpdate) -> Optional[ThresholdSet]:
        saved = ThresholdSet(**payload.model_dump(), created_at=utc_now())
        self.thresholds.append(saved)
        return saved

    async def upsert_rack(self, rack: RackRecord) -> Optional[UpsertResult]:
        if rack.name in self.fail_upserts_for:
            return None
        now = utc_now()
        existing = self.racks.get(rack.name)
        fields = rack.model_dump(mode="json", by_alias=True)
        if existing:
            existing.update(fields, updatedAt=now)
            return UpsertResult(rack_id=existing["id"], inserted=False)
        rack_id = str(uuid4())
        self.racks[rack.name] = {"id": rack_id, **fields, "createdAt": now, "updatedAt": now}
        return UpsertResult(rack_id=rack_id, inserted=True)

    async def find_rack_id(self, name: str) -> Optional[str]:
        doc = self.racks.get(name)
        return doc["id"] if doc else None

    async def insert_sensor_reading(self, rack_id: str, reading: SensorRecord) -> bool:
        self.readings.append(
            {"id": str(uuid4()), "rackId": rack_id, **reading.model_dump(by_alias=True), "createdAt": utc_now()}
        )
        return True

    async def find_active_problems(self) -> List[Problem]:
        return [Problem.model_validate(p) for p in self.problems if p["status"] == ProblemStatus.active.value]

    async def insert_problem(self, problem: ProblemCreate) -> Optional[str]:
        now = utc_now()
        problem_id = str(uuid4())
        self.problems.append(
            {
                "id": problem_id,
                **problem.model_dump(mode="json", by_alias=True),
                "status": ProblemStatus.active.value,
                "createdAt": now,
                "updatedAt": now,
            }
        )
        return problem_id

    async def list_problems(self, status: Optional[ProblemStatus] = None, limit: int = 500) -> List[dict]:
        items = [p for p in self.problems if status is None or p["status"] == status.value]
        return items[:limit]

    async def get_problem(self, problem_id: str) -> Optional[dict]:
        return next((dict(p) for p in self.problems if p["id"] == problem_id), None)


Handler = Union[Callable[[httpx.Request], httpx.Response], Any]


class FakeUpstream:
    """
    Routes requests by scheme://host/path to canned handlers.

    A route value may be a callable taking the request or a JSON-able body. Unrouted URLs fail
    with httpx.ConnectError, like an unreachable host.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Handler] = {}
        self.requests: List[httpx.Request] = []

    def route(self, url: str, handler: Handler) -> None:
        self.routes[url.split("?", 1)[0]] = handler

    def calls(self, url: str, method: Optional[str] = "GET") -> List[httpx.Request]:
        base = url.split("?", 1)[0]
        return [
            r
            for r in self.requests
            if f"{r.url.scheme}://{r.url.host}{r.url.path}" == base and (method is None or r.method == method)
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        handler = self.routes.get(key)
        if handler is None:
            raise httpx.ConnectError("connection refused", request=request)
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def app(store: FakeStore, upstream: FakeUpstream):
    """FastAPI app wired to the in-memory store and the fake upstreams."""
    from src.rackmon.main import create_app

    return create_app(make_config(), store=store, http_client=upstream.client())


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """
    Async HTTP client bound to the FastAPI ASGI app.

    httpx ASGITransport does not run lifespan events, so the monitoring loop is never autostarted.
    """
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
