from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from src.rackmon.schemas.common import ApiEnvelope, ErrorResponse
from src.rackmon.schemas.telemetry import ProblemStatus
from src.rackmon.state import get_state

router = APIRouter(prefix="/api/problems", tags=["Problems"])


@router.get(
    "",
    response_model=ApiEnvelope,
    summary="List problems",
    description="Recorded threshold violations, newest first. Empty when the database is disabled.",
    operation_id="list_problems",
)
async def list_problems(
    request: Request,
    status: Optional[ProblemStatus] = Query(default=None, description="Filter by status."),
    limit: int = Query(500, ge=1, le=5000),
) -> ApiEnvelope:
    """List problems from the store."""
    state = get_state(request.app)
    items = await state.store.list_problems(status=status, limit=limit) if state.store is not None else []
    return ApiEnvelope(data=items, source="database", count=len(items))


@router.get(
    "/{problem_id}",
    response_model=ApiEnvelope,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Get one problem",
    operation_id="get_problem",
)
async def get_problem(request: Request, problem_id: str) -> ApiEnvelope:
    """Return one recorded problem."""
    state = get_state(request.app)
    if state.store is None:
        raise HTTPException(status_code=503, detail="database is disabled")
    doc = await state.store.get_problem(problem_id)
    if doc is None:
        raise HTTPException(status_code=404, detail=f"problem {problem_id} not found")
    return ApiEnvelope(data=[doc], source="database", count=1)
