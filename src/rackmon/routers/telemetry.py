from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from src.rackmon.schemas.common import ApiEnvelope, ErrorResponse
from src.rackmon.services.external_api import FetchOptions
from src.rackmon.state import get_state

router = APIRouter(prefix="/api", tags=["Telemetry"])


@router.get(
    "/racks",
    response_model=ApiEnvelope,
    responses={500: {"model": ErrorResponse}},
    summary="List racks",
    description="Racks from the database, falling back to the rack inventory API and, with mock=true, synthetic data.",
    operation_id="list_racks",
)
async def list_racks(
    request: Request,
    mock: bool = Query(False, description="Allow synthetic records when every source fails."),
) -> ApiEnvelope:
    """Serve racks through the fallback cascade."""
    state = get_state(request.app)
    result = await state.cascade.get_data_with_source(
        state.store.get_racks if state.store is not None else None,
        state.config.api1_url,
        "racks",
        FetchOptions.from_config(state.config, use_mock_on_fail=mock),
    )
    return ApiEnvelope(data=result.records, source=result.tier, count=len(result.records))


@router.get(
    "/sensors",
    response_model=ApiEnvelope,
    responses={500: {"model": ErrorResponse}},
    summary="List sensor readings",
    description="Latest sensor readings from the database, falling back to the sensor API and, with mock=true, synthetic data.",
    operation_id="list_sensors",
)
async def list_sensors(
    request: Request,
    mock: bool = Query(False, description="Allow synthetic records when every source fails."),
    limit: int = Query(500, ge=1, le=5000, description="Max stored readings to return."),
) -> ApiEnvelope:
    """Serve sensor readings through the fallback cascade."""
    state = get_state(request.app)
    store = state.store

    async def _from_db():
        return await store.get_sensor_readings(limit=limit)

    result = await state.cascade.get_data_with_source(
        _from_db if store is not None else None,
        state.config.api2_url,
        "sensors",
        FetchOptions.from_config(state.config, use_mock_on_fail=mock),
    )
    return ApiEnvelope(data=result.records, source=result.tier, count=len(result.records))


@router.get(
    "/racks/{rack_id}",
    response_model=ApiEnvelope,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Get one rack",
    description="A stored rack by its id.",
    operation_id="get_rack",
)
async def get_rack(request: Request, rack_id: str) -> ApiEnvelope:
    """Return one stored rack."""
    state = get_state(request.app)
    if state.store is None:
        raise HTTPException(status_code=503, detail="database is disabled")
    doc = await state.store.get_rack(rack_id)
    if doc is None:
        raise HTTPException(status_code=404, detail=f"rack {rack_id} not found")
    return ApiEnvelope(data=[doc], source="database", count=1)


@router.get(
    "/sensors/rack/{rack_id}",
    response_model=ApiEnvelope,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Reading history for one rack",
    description="Stored sensor readings of one rack, newest first.",
    operation_id="list_rack_sensors",
)
async def list_rack_sensors(
    request: Request,
    rack_id: str,
    limit: int = Query(100, ge=1, le=5000, description="Max readings to return."),
) -> ApiEnvelope:
    """Return the stored readings of one rack."""
    state = get_state(request.app)
    if state.store is None:
        raise HTTPException(status_code=503, detail="database is disabled")
    if await state.store.get_rack(rack_id) is None:
        raise HTTPException(status_code=404, detail=f"rack {rack_id} not found")
    items = await state.store.get_rack_readings(rack_id, limit=limit)
    return ApiEnvelope(data=items, source="database", count=len(items))
