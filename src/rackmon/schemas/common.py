from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response model for health endpoints."""

    status: str = Field(..., description="High-level health status string (e.g., 'ok').")
    message: str = Field(..., description="Human-readable status message.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class ErrorResponse(BaseModel):
    """Standard error envelope returned by dashboard endpoints."""

    status: Literal["Error"] = Field("Error", description="Always 'Error'.")
    message: str = Field(..., description="Human-readable error details.")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata for debugging.")


class ApiEnvelope(BaseModel):
    """Success envelope the dashboard expects: {status: 'Success', data: [...]}."""

    status: Literal["Success"] = Field("Success", description="Always 'Success'.")
    data: List[Dict[str, Any]] = Field(default_factory=list, description="Records returned.")
    source: Optional[str] = Field(default=None, description="Tier that served the data (database|api|synthetic).")
    count: int = Field(0, ge=0, description="Number of records in data.")


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)
