from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request

from src.rackmon.schemas.monitoring import CommandResponse, MonitoringStatus, StartMonitoringRequest
from src.rackmon.state import get_state

router = APIRouter(prefix="/api/monitoring", tags=["Monitoring"])


@router.get(
    "/status",
    response_model=MonitoringStatus,
    summary="Monitoring status",
    description="Loop state, last run, upstream reachability and cumulative counters.",
    operation_id="monitoring_status",
)
def monitoring_status(request: Request) -> MonitoringStatus:
    """Return the monitoring loop status."""
    return get_state(request.app).monitor.status()


@router.post(
    "/start",
    response_model=CommandResponse,
    summary="Start monitoring",
    description="Schedule the monitoring loop. The first cycle runs immediately.",
    operation_id="monitoring_start",
)
async def monitoring_start(request: Request, payload: Optional[StartMonitoringRequest] = None) -> CommandResponse:
    """Start the periodic loop (no-op when already running)."""
    monitor = get_state(request.app).monitor
    started = monitor.start(payload.interval_sec if payload else None)
    message = "Monitoring started" if started else "Monitoring already running"
    return CommandResponse(message=message, monitoring=monitor.status())


@router.post(
    "/stop",
    response_model=CommandResponse,
    summary="Stop monitoring",
    description="Stop scheduling cycles. A cycle already in progress runs to completion.",
    operation_id="monitoring_stop",
)
async def monitoring_stop(request: Request) -> CommandResponse:
    """Stop the periodic loop."""
    monitor = get_state(request.app).monitor
    stopped = await monitor.stop()
    message = "Monitoring stopped" if stopped else "Monitoring was not running"
    return CommandResponse(message=message, monitoring=monitor.status())


@router.post(
    "/run-now",
    response_model=CommandResponse,
    summary="Run one cycle now",
    description="Run a monitoring cycle out of band and return its summary. Skipped when a cycle is in progress.",
    operation_id="monitoring_run_now",
)
async def monitoring_run_now(request: Request) -> CommandResponse:
    """Run one cycle and return its counters."""
    monitor = get_state(request.app).monitor
    summary = await monitor.run_cycle()
    if summary is None:
        return CommandResponse(message="Cycle already in progress; skipped", monitoring=monitor.status())
    return CommandResponse(message="Monitoring cycle completed", monitoring=monitor.status(), cycle=summary)
