from __future__ import annotations

import asyncio
import time
from typing import Dict

from fastapi import APIRouter, Query, Request

from src.rackmon.config import sanitize_mongo_uri
from src.rackmon.schemas.common import utc_now
from src.rackmon.schemas.monitoring import CircuitStateOut, EndpointDiagnosis, SystemStatus, UpstreamStatus
from src.rackmon.state import AppState, get_state

router = APIRouter(prefix="/api/system", tags=["System"])


def _breaker_snapshot(state: AppState) -> Dict[str, CircuitStateOut]:
    return {
        endpoint: CircuitStateOut.model_validate(st.as_dict()) for endpoint, st in state.breaker.snapshot().items()
    }


@router.get(
    "/status",
    response_model=SystemStatus,
    response_model_by_alias=True,
    summary="System status",
    description="Database ping, upstream reachability, circuit breaker states and monitoring counters.",
    operation_id="system_status",
)
async def system_status(request: Request) -> SystemStatus:
    """Aggregate status for the dashboard's system page."""
    state = get_state(request.app)
    cfg = state.config
    started = time.monotonic()

    db_ok = await state.store.ping() if state.store is not None else False
    api1_ok, api2_ok = await asyncio.gather(state.api.is_reachable(cfg.api1_url), state.api.is_reachable(cfg.api2_url))

    return SystemStatus(
        timestamp=utc_now(),
        duration_ms=int((time.monotonic() - started) * 1000),
        database={
            "enabled": cfg.db_enabled,
            "connected": db_ok,
            "name": cfg.mongo_db_name,
            "uri": sanitize_mongo_uri(cfg.mongo_uri) if cfg.mongo_uri else None,
        },
        apis={
            "api1": UpstreamStatus(url=cfg.api1_url, reachable=api1_ok),
            "api2": UpstreamStatus(url=cfg.api2_url, reachable=api2_ok),
        },
        monitoring=state.monitor.status(),
        circuit_breakers=_breaker_snapshot(state),
    )


@router.get(
    "/circuit-breakers",
    response_model=Dict[str, CircuitStateOut],
    response_model_by_alias=True,
    summary="Circuit breaker states",
    description="Per-endpoint breaker state (closed, open, half_open).",
    operation_id="circuit_breakers",
)
def circuit_breakers(request: Request) -> Dict[str, CircuitStateOut]:
    """Return the current breaker snapshot."""
    return _breaker_snapshot(get_state(request.app))


@router.get(
    "/diagnose",
    response_model=EndpointDiagnosis,
    summary="Diagnose an endpoint",
    description="Probe a URL once and report reachability, response shape and recommendations.",
    operation_id="diagnose_endpoint",
)
async def diagnose_endpoint(
    request: Request,
    url: str = Query(..., description="Endpoint to probe."),
    include_body: bool = Query(False, description="Include the decoded JSON body in the result."),
) -> EndpointDiagnosis:
    """Run a one-shot endpoint diagnosis."""
    return await get_state(request.app).api.diagnose(url, include_body=include_body)
