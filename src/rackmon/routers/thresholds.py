from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from src.rackmon.schemas.common import ApiEnvelope, ErrorResponse
from src.rackmon.schemas.telemetry import DEFAULT_THRESHOLDS, ThresholdUpdate
from src.rackmon.state import get_state

router = APIRouter(prefix="/api/thresholds", tags=["Thresholds"])


@router.get(
    "",
    response_model=ApiEnvelope,
    summary="Current thresholds",
    description="Latest stored global thresholds, or the built-in defaults when none are stored.",
    operation_id="get_thresholds",
)
async def get_thresholds(request: Request) -> ApiEnvelope:
    """Return the thresholds the next monitoring cycle will apply."""
    state = get_state(request.app)
    found = await state.store.get_thresholds() if state.store is not None else None
    current = found or DEFAULT_THRESHOLDS
    return ApiEnvelope(
        data=[current.model_dump(mode="json", by_alias=True)],
        source="database" if found else "defaults",
        count=1,
    )


@router.put(
    "",
    response_model=ApiEnvelope,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Publish thresholds",
    description="Store a new global threshold version; the latest version wins.",
    operation_id="put_thresholds",
)
async def put_thresholds(request: Request, payload: ThresholdUpdate) -> ApiEnvelope:
    """Insert a new threshold version."""
    if payload.min_temp >= payload.max_temp:
        raise HTTPException(status_code=400, detail="minTemp must be lower than maxTemp")
    if payload.min_humidity >= payload.max_humidity:
        raise HTTPException(status_code=400, detail="minHumidity must be lower than maxHumidity")

    state = get_state(request.app)
    if state.store is None:
        raise HTTPException(status_code=503, detail="database is disabled")

    saved = await state.store.insert_thresholds(payload)
    if saved is None:
        raise HTTPException(status_code=500, detail="failed to store thresholds")
    return ApiEnvelope(data=[saved.model_dump(mode="json", by_alias=True)], source="database", count=1)
