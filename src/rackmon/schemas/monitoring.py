from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MonitoringStatus(BaseModel):
    """Snapshot of the monitoring loop for status endpoints."""

    active: bool = Field(..., description="Whether the periodic loop is scheduled.")
    running: bool = Field(False, description="Whether a cycle is executing right now.")
    interval_sec: Optional[int] = Field(default=None, description="Loop interval when active.")
    last_run: Optional[datetime] = Field(default=None, description="UTC start time of the last cycle.")
    last_run_duration_ms: Optional[int] = Field(default=None, description="Duration of the last cycle.")
    api1_reachable: bool = Field(False, description="Rack inventory upstream reachable at last probe.")
    api2_reachable: bool = Field(False, description="Sensor upstream reachable at last probe.")
    cycles_completed: int = Field(0, ge=0)
    cycles_skipped: int = Field(0, ge=0, description="Cycles skipped because one was already running.")
    problems_detected: int = Field(0, ge=0)
    racks_stored: int = Field(0, ge=0)
    sensor_readings_stored: int = Field(0, ge=0)


class CycleSummary(BaseModel):
    """Counters for one monitoring cycle."""

    cycle_id: str
    started_at: datetime
    duration_ms: int = 0
    skipped_reason: Optional[str] = Field(default=None, description="Why the cycle ended early, if it did.")
    racks_fetched: int = 0
    sensors_fetched: int = 0
    racks_inserted: int = 0
    racks_updated: int = 0
    rack_errors: int = 0
    readings_stored: int = 0
    readings_unresolved: int = 0
    reading_errors: int = 0
    problems_created: int = 0
    problems_skipped_duplicate: int = 0
    thresholds_source: str = "defaults"


class StartMonitoringRequest(BaseModel):
    """Request body for starting the loop."""

    interval_sec: Optional[int] = Field(default=None, ge=5, le=24 * 3600, description="Override loop interval.")


class CommandResponse(BaseModel):
    status: str = Field("Success")
    message: str
    monitoring: Optional[MonitoringStatus] = None
    cycle: Optional[CycleSummary] = None


class CircuitStateOut(BaseModel):
    endpoint: str
    status: str
    consecutive_failures: int = Field(..., alias="consecutiveFailures")
    last_failure_at: Optional[str] = Field(default=None, alias="lastFailureAt")
    next_retry_at: Optional[str] = Field(default=None, alias="nextRetryAt")

    model_config = ConfigDict(populate_by_name=True)


class EndpointDiagnosis(BaseModel):
    """Result of a one-shot endpoint diagnosis."""

    url: str
    timestamp: datetime
    is_reachable: bool = False
    response_time_ms: Optional[int] = None
    status_code: Optional[int] = None
    error_code: Optional[str] = None
    error_details: Optional[str] = None
    content_type: Optional[str] = None
    response_type: Optional[str] = None
    response_structure: Optional[str] = None
    sample_keys: List[str] = Field(default_factory=list)
    is_paged: bool = False
    response_data: Any = None
    recommendations: List[str] = Field(default_factory=list)


class UpstreamStatus(BaseModel):
    url: Optional[str] = None
    reachable: bool = False


class SystemStatus(BaseModel):
    status: str = "Success"
    timestamp: datetime
    duration_ms: int
    database: Dict[str, Any]
    apis: Dict[str, UpstreamStatus]
    monitoring: MonitoringStatus
    circuit_breakers: Dict[str, CircuitStateOut] = Field(default_factory=dict, alias="circuitBreakers")

    model_config = ConfigDict(populate_by_name=True)
