from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.rackmon.config import BackendConfig, configure_logging, load_config
from src.rackmon.errors import RackMonitorError
from src.rackmon.routers import health, monitoring, problems, system, telemetry, thresholds
from src.rackmon.schemas.common import ErrorResponse
from src.rackmon.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and liveness."},
    {"name": "Monitoring", "description": "Control and status of the periodic monitoring cycle."},
    {"name": "System", "description": "Upstream reachability, circuit breakers and endpoint diagnosis."},
    {"name": "Telemetry", "description": "Racks and sensor readings served through the fallback cascade."},
    {"name": "Thresholds", "description": "Versioned min/max limits used for problem detection."},
    {"name": "Problems", "description": "Threshold violations recorded by the monitoring cycle."},
]

logger = logging.getLogger(__name__)


def _env_frontend_url() -> str | None:
    # Support both:
    # - standardized: FRONTEND_URL
    # - legacy: REACT_APP_FRONTEND_URL
    return os.getenv("FRONTEND_URL") or os.getenv("REACT_APP_FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


def _allowed_origins() -> List[str]:
    origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    frontend_url = _env_frontend_url()
    if frontend_url:
        origins.append(frontend_url)
    origins.extend(_env_cors_extra_origins())

    # De-dupe while preserving order
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


async def _rack_monitor_error_handler(request: Request, exc: RackMonitorError) -> JSONResponse:
    logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
    body = ErrorResponse(message=str(exc), meta={"error": type(exc).__name__})
    return JSONResponse(status_code=500, content=body.model_dump())


# PUBLIC_INTERFACE
def create_app(config: Optional[BackendConfig] = None, **state_overrides) -> FastAPI:
    """
    Build the FastAPI app.

    `state_overrides` are passed to init_state (e.g. an in-memory store or an httpx client with a
    mock transport).
    """
    cfg = config or load_config()
    configure_logging(cfg.log_level)

    app = FastAPI(
        title="Rack Telemetry Monitor API",
        description=(
            "Backend API for the datacenter rack telemetry dashboard. Polls the rack inventory and sensor "
            "upstreams on a schedule, stores racks and readings in MongoDB and records threshold violations. "
            "Upstream calls are protected by retries and per-endpoint circuit breakers, and dashboard reads "
            "fall back from the database to the upstream API."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )

    init_state(app, cfg, **state_overrides)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: connect to Mongo when configured, ensure indexes, and start the monitoring loop."""
        state = get_state(app)

        if state.mongo is not None:
            state.mongo.connect_app()
            if await asyncio.to_thread(state.mongo.ping):
                try:
                    await asyncio.to_thread(state.mongo.init_indexes)
                except Exception:
                    logger.exception("Index initialization failed")
            else:
                logger.error("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")

        if state.config.monitoring_autostart:
            state.monitor.start(
                state.config.monitoring_interval_sec,
                initial_delay_sec=state.config.monitoring_start_delay_sec,
            )

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop the monitoring loop and close upstream and Mongo connections."""
        state = get_state(app)

        await state.monitor.stop(wait_timeout_sec=5.0)

        try:
            await state.http_client.aclose()
        except Exception:
            logger.exception("Error closing upstream HTTP client")

        if state.mongo is not None:
            state.mongo.close()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RackMonitorError, _rack_monitor_error_handler)

    app.include_router(health.router)
    app.include_router(monitoring.router)
    app.include_router(system.router)
    app.include_router(telemetry.router)
    app.include_router(thresholds.router)
    app.include_router(problems.router)
    return app


app = create_app()
