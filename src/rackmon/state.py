from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import FastAPI

from src.rackmon.config import BackendConfig
from src.rackmon.db.mongo import MongoManager
from src.rackmon.services.circuit_breaker import CircuitBreaker
from src.rackmon.services.external_api import ExternalApiClient
from src.rackmon.services.fallback import FallbackCascade
from src.rackmon.services.monitoring import MonitoringService
from src.rackmon.services.store import MongoTelemetryStore, TelemetryStore


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    mongo: Optional[MongoManager]
    store: Optional[TelemetryStore]
    breaker: CircuitBreaker
    http_client: httpx.AsyncClient
    api: ExternalApiClient
    cascade: FallbackCascade
    monitor: MonitoringService


# PUBLIC_INTERFACE
def build_state(
    config: BackendConfig,
    *,
    store: Optional[TelemetryStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AppState:
    """
    Wire config, storage, breaker, upstream client, cascade and monitor together.

    `store` and `http_client` may be injected (tests); otherwise a Mongo-backed store is built when
    a URI is configured and a plain httpx client is created.
    """
    mongo: Optional[MongoManager] = None
    if store is None and config.db_enabled and config.mongo_uri:
        mongo = MongoManager(config.mongo_uri, db_name=config.mongo_db_name)
        store = MongoTelemetryStore(mongo)

    client = http_client or httpx.AsyncClient(follow_redirects=True)
    breaker = CircuitBreaker(
        failure_threshold=config.circuit_failure_threshold,
        reset_timeout=config.circuit_reset_timeout_sec,
    )
    api = ExternalApiClient.from_config(config, client, breaker)
    return AppState(
        config=config,
        mongo=mongo,
        store=store,
        breaker=breaker,
        http_client=client,
        api=api,
        cascade=FallbackCascade(api),
        monitor=MonitoringService(config, store, api),
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig, **overrides) -> AppState:
    """Initialize app.state with the wired service objects."""
    state = build_state(config, **overrides)
    app.state.state = state
    return state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
