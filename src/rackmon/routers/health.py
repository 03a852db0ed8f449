from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.rackmon.config import sanitize_mongo_uri
from src.rackmon.schemas.common import HealthResponse, utc_now
from src.rackmon.state import get_state

router = APIRouter(tags=["Health"])


class MongoConnectivityResponse(BaseModel):
    """Response model for backend↔Mongo connectivity diagnostics."""

    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB.")
    db_enabled: bool = Field(..., description="False when no BACKEND_MONGO_URI is configured.")
    mongo_db_name: str = Field(..., description="Database the service stores its collections in.")
    mongo_uri_sanitized: str | None = Field(default=None, description="MongoDB URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional debug metadata.")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment and the frontend.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the backend's configured MongoDB. Credentials are masked; reports disabled storage explicitly.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Connectivity check endpoint to validate backend↔Mongo."""
    state = get_state(request.app)
    cfg = state.config
    ok = state.mongo.ping() if state.mongo is not None else False

    return MongoConnectivityResponse(
        ok=ok,
        db_enabled=cfg.db_enabled,
        mongo_db_name=cfg.mongo_db_name,
        mongo_uri_sanitized=sanitize_mongo_uri(cfg.mongo_uri) if cfg.mongo_uri else None,
        timestamp=utc_now().isoformat(),
        meta={} if cfg.db_enabled else {"reason": "BACKEND_MONGO_URI not set"},
    )
