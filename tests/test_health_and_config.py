from __future__ import annotations

import httpx
import pytest

from src.rackmon.config import load_config, sanitize_mongo_uri


@pytest.mark.anyio
async def test_root_health_ok(async_client: httpx.AsyncClient):
    res = await async_client.get("/")
    assert res.status_code == 200
    body = res.json()
    # HealthResponse: {status, message, timestamp}
    assert body.get("status") == "ok"
    assert "timestamp" in body


@pytest.mark.anyio
async def test_mongo_connectivity_check_masks_credentials(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/health/mongo")
    assert res.status_code == 200
    body = res.json()

    # The in-memory store replaces Mongo in tests, so there is no client to ping.
    assert body["ok"] is False
    assert body["db_enabled"] is True
    assert body["mongo_db_name"] == "rackmon_test"
    assert body["mongo_uri_sanitized"].startswith("mongodb://")


def test_sanitize_mongo_uri_masks_password():
    assert sanitize_mongo_uri("mongodb://user:s3cret@db:27017/x") == "mongodb://user:***@db:27017/x"
    assert sanitize_mongo_uri("mongodb+srv://host/x") == "mongodb+srv://host/x"


def test_load_config_defaults(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "BACKEND_MONGO_URI",
        "BACKEND_MONGO_DB",
        "API1_URL",
        "API2_URL",
        "API_KEY",
        "MONITORING_INTERVAL_SEC",
        "MONITORING_AUTOSTART",
        "CIRCUIT_FAILURE_THRESHOLD",
        "CIRCUIT_RESET_TIMEOUT_SEC",
        "UPSTREAM_RETRIES",
        "UPSTREAM_PAGE_SIZE",
        "UPSTREAM_MAX_PAGES",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = load_config()

    assert cfg.db_enabled is False
    assert cfg.mongo_uri is None
    assert cfg.mongo_db_name == "rackmon"
    assert cfg.monitoring_interval_sec == 300
    assert cfg.monitoring_autostart is True
    assert cfg.circuit_failure_threshold == 3
    assert cfg.circuit_reset_timeout_sec == 30.0
    assert cfg.upstream_retries == 3
    assert cfg.upstream_page_size == 50
    assert cfg.upstream_max_pages == 20
    assert cfg.log_level == "INFO"


def test_load_config_reads_env_and_clamps(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BACKEND_MONGO_URI", "mongodb://localhost:27017")
    monkeypatch.setenv("API1_URL", "http://api1.test/racks")
    monkeypatch.setenv("MONITORING_INTERVAL_SEC", "1")
    monkeypatch.setenv("MONITORING_AUTOSTART", "off")
    monkeypatch.setenv("UPSTREAM_RETRIES", "not-a-number")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    cfg = load_config()

    assert cfg.db_enabled is True
    assert cfg.api1_url == "http://api1.test/racks"
    assert cfg.monitoring_interval_sec == 5
    assert cfg.monitoring_autostart is False
    assert cfg.upstream_retries == 3
    assert cfg.log_level == "DEBUG"


def test_load_config_rejects_non_mongo_uri(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BACKEND_MONGO_URI", "postgres://localhost/db")
    with pytest.raises(RuntimeError):
        load_config()
