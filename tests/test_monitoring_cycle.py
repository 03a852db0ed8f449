from __future__ import annotations

import asyncio

import httpx
import pytest
from conftest import API1_URL, API2_URL, FakeStore, FakeUpstream, make_config, no_sleep

from src.rackmon.schemas.telemetry import (
    DEFAULT_THRESHOLDS,
    AlertDirection,
    Phase,
    ProblemType,
    RackRecord,
    SensorRecord,
    ThresholdSet,
    normalize_rack,
)
from src.rackmon.services.circuit_breaker import CircuitBreaker
from src.rackmon.services.external_api import ExternalApiClient
from src.rackmon.services.monitoring import MonitoringService, evaluate_sensor


def _rack(name: str, **extra) -> dict:
    return {"NAME": name, "SITE": "Madrid", "DC": "DC2", "MAINTENANCE": "0", "MAXU": "42", "FREEU": "10", **extra}


def _sensor(rack_name: str, temperature="24.0", humidity="50.0", **extra) -> dict:
    return {"RACK_NAME": rack_name, "TEMPERATURE": temperature, "HUMIDITY": humidity, **extra}


def _service(store, upstream: FakeUpstream, **config) -> MonitoringService:
    api = ExternalApiClient(upstream.client(), CircuitBreaker(), sleep=no_sleep, page_delay_sec=0.0)
    return MonitoringService(make_config(**config), store, api)


@pytest.mark.anyio
async def test_reading_just_over_max_temp_creates_one_high_problem(store: FakeStore, upstream: FakeUpstream):
    upstream.route(API1_URL, [_rack("R1"), _rack("R2")])
    upstream.route(API2_URL, [_sensor("R1", temperature="32.1"), _sensor("R2", temperature="31.9")])

    summary = await _service(store, upstream).run_cycle()

    assert summary.problems_created == 1
    assert len(store.problems) == 1
    problem = store.problems[0]
    assert problem["type"] == "Temperature"
    assert problem["alertDirection"] == "high"
    assert problem["measuredValue"] == 32.1
    assert problem["thresholdValue"] == 32.0
    assert problem["rackId"] == store.racks["R1"]["id"]


@pytest.mark.anyio
async def test_duplicate_violations_in_one_cycle_create_one_problem(store: FakeStore, upstream: FakeUpstream):
    upstream.route(API1_URL, [_rack("R1")])
    upstream.route(API2_URL, [_sensor("R1", temperature="35"), _sensor("R1", temperature="36")])

    summary = await _service(store, upstream).run_cycle()

    assert summary.readings_stored == 2
    assert summary.problems_created == 1
    assert summary.problems_skipped_duplicate == 1
    assert len(store.problems) == 1


@pytest.mark.anyio
async def test_two_cycles_update_rack_and_keep_single_active_problem(store: FakeStore, upstream: FakeUpstream):
    upstream.route(API1_URL, [_rack("R1")])
    upstream.route(API2_URL, [_sensor("R1", humidity="30")])
    service = _service(store, upstream)

    first = await service.run_cycle()
    second = await service.run_cycle()

    assert first.racks_inserted == 1 and first.racks_updated == 0
    assert second.racks_inserted == 0 and second.racks_updated == 1
    assert len(store.racks) == 1
    assert len(store.readings) == 2
    assert len(store.problems) == 1
    assert store.problems[0]["alertDirection"] == "low"

    status = service.status()
    assert status.cycles_completed == 2
    assert status.racks_stored == 2
    assert status.sensor_readings_stored == 2
    assert status.problems_detected == 1
    assert status.api1_reachable is True and status.api2_reachable is True
    assert status.last_run is not None


@pytest.mark.anyio
async def test_overlapping_cycle_is_skipped(upstream: FakeUpstream):
    gate = asyncio.Event()

    class SlowStore(FakeStore):
        async def get_thresholds(self):
            await gate.wait()
            return None

    store = SlowStore()
    upstream.route(API1_URL, [_rack("R1")])
    upstream.route(API2_URL, [])
    service = _service(store, upstream)

    first = asyncio.create_task(service.run_cycle())
    for _ in range(100):
        if service.status().running:
            break
        await asyncio.sleep(0.01)

    assert await service.run_cycle() is None
    gate.set()
    summary = await first

    assert summary is not None
    status = service.status()
    assert status.cycles_skipped == 1
    assert status.cycles_completed == 1
    assert status.running is False


@pytest.mark.anyio
async def test_cycle_ends_early_when_both_apis_unreachable(store: FakeStore, upstream: FakeUpstream):
    summary = await _service(store, upstream).run_cycle()

    assert summary.skipped_reason == "both APIs unreachable"
    assert store.racks == {}
    assert summary.thresholds_source == "defaults"


@pytest.mark.anyio
async def test_cycle_ends_early_when_database_disabled(upstream: FakeUpstream):
    upstream.route(API1_URL, [_rack("R1")])
    upstream.route(API2_URL, [])
    service = _service(None, upstream, db_enabled=False, mongo_uri=None)

    summary = await service.run_cycle()

    assert summary.skipped_reason == "database disabled"
    assert upstream.calls(API1_URL, method="GET") == []
    assert service.status().cycles_completed == 0


@pytest.mark.anyio
async def test_failures_are_isolated_per_record(store: FakeStore, upstream: FakeUpstream):
    store.fail_upserts_for.add("BAD")
    upstream.route(API1_URL, [_rack("BAD"), _rack("R1"), {"SITE": "nameless"}])
    upstream.route(API2_URL, [_sensor("R1"), _sensor("GHOST"), _sensor("BAD")])

    summary = await _service(store, upstream).run_cycle()

    assert summary.racks_inserted == 1
    assert summary.rack_errors == 2
    assert summary.readings_stored == 1
    assert summary.readings_unresolved == 2


@pytest.mark.anyio
async def test_sensor_api_down_still_stores_racks(store: FakeStore, upstream: FakeUpstream):
    upstream.route(API1_URL, [_rack("R1")])
    upstream.route(API2_URL, lambda r: httpx.Response(200) if r.method == "HEAD" else httpx.Response(500))

    summary = await _service(store, upstream).run_cycle()

    assert summary.racks_inserted == 1
    assert summary.sensors_fetched == 0
    assert summary.skipped_reason is None


@pytest.mark.anyio
async def test_stored_thresholds_replace_defaults(store: FakeStore, upstream: FakeUpstream):
    store.thresholds.append(DEFAULT_THRESHOLDS.model_copy(update={"max_temp": 25.0}))
    upstream.route(API1_URL, [_rack("R1")])
    upstream.route(API2_URL, [_sensor("R1", temperature="26")])

    summary = await _service(store, upstream).run_cycle()

    assert summary.thresholds_source == "database"
    assert summary.problems_created == 1


@pytest.mark.anyio
async def test_rack_current_checked_against_phase_limit(store: FakeStore, upstream: FakeUpstream):
    upstream.route(
        API1_URL,
        [
            _rack("THREE", TOTAL_AMPS="47", L2_VOLTS="230"),
            _rack("SINGLE", TOTAL_AMPS="17"),
        ],
    )
    upstream.route(API2_URL, [_sensor("THREE"), _sensor("SINGLE")])

    await _service(store, upstream).run_cycle()

    assert len(store.problems) == 1
    problem = store.problems[0]
    assert problem["type"] == "Power"
    assert problem["rackId"] == store.racks["SINGLE"]["id"]
    assert problem["thresholdValue"] == 16.0


@pytest.mark.anyio
async def test_rack_api_outage_does_not_judge_power_against_wrong_phase(store: FakeStore, upstream: FakeUpstream):
    rack_api = {"fail": False}

    def racks(request: httpx.Request) -> httpx.Response:
        if rack_api["fail"] and request.method == "GET":
            return httpx.Response(500, json={"error": "inventory down"})
        return httpx.Response(200, json=[_rack("THREE", phase="3-Phase", TOTAL_AMPS="20")])

    upstream.route(API1_URL, racks)
    upstream.route(API2_URL, [_sensor("THREE", TOTAL_AMPS="20")])
    service = _service(store, upstream)

    first = await service.run_cycle()
    assert first.racks_inserted == 1
    assert store.problems == []

    rack_api["fail"] = True
    second = await service.run_cycle()

    assert second.racks_fetched == 0
    assert second.readings_stored == 1
    assert store.problems == []


@pytest.mark.anyio
async def test_start_runs_a_cycle_immediately_and_stop_ends_the_loop(store: FakeStore, upstream: FakeUpstream):
    upstream.route(API1_URL, [_rack("R1")])
    upstream.route(API2_URL, [])
    service = _service(store, upstream)

    assert service.start(60) is True
    assert service.start(60) is False
    for _ in range(200):
        if service.status().cycles_completed:
            break
        await asyncio.sleep(0.01)

    assert service.status().active is True
    assert service.status().interval_sec == 60
    assert service.status().cycles_completed == 1

    assert await service.stop(wait_timeout_sec=1.0) is True
    assert service.status().active is False
    assert await service.stop() is False


def test_evaluate_sensor_uses_strict_bounds_and_both_directions():
    thresholds = DEFAULT_THRESHOLDS
    at_limits = SensorRecord(rack_name="R1", temperature_c=32.0, humidity_pct=40.0)
    assert evaluate_sensor("r1", at_limits, None, thresholds) == []

    cold_humid = SensorRecord(rack_name="R1", temperature_c=17.5, humidity_pct=71.0)
    found = {(p.type, p.alert_direction) for p in evaluate_sensor("r1", cold_humid, None, thresholds)}
    assert found == {(ProblemType.temperature, AlertDirection.low), (ProblemType.humidity, AlertDirection.high)}


def test_evaluate_sensor_prefers_rack_current_and_phase():
    thresholds = ThresholdSet(
        min_temp=18,
        max_temp=32,
        min_humidity=40,
        max_humidity=70,
        max_current_single_phase_a=16,
        max_current_three_phase_a=48,
    )
    rack = RackRecord(name="R1", phase=Phase.three, total_current_a=50.0)
    sensor = SensorRecord(rack_name="R1", total_current_a=1.0)
    (problem,) = evaluate_sensor("r1", sensor, rack, thresholds)
    assert problem.type == ProblemType.power
    assert problem.threshold_value == 48
    assert problem.measured_value == 50.0

    # No current on the rack: the reading's own current is used against the rack's phase max.
    quiet_rack = RackRecord(name="R1", phase=Phase.single)
    only_sensor = SensorRecord(rack_name="R1", total_current_a=16.5)
    (problem,) = evaluate_sensor("r1", only_sensor, quiet_rack, thresholds)
    assert problem.threshold_value == 16

    # Phase is unknown without the rack record, so power is not judged.
    assert evaluate_sensor("r1", only_sensor, None, thresholds) == []


def test_normalize_rack_keeps_reported_zero_power():
    assert normalize_rack(_rack("R1", MAXPOWER="0")).max_power_kw == 0.0
    assert normalize_rack(_rack("R1", MAXPOWER="")).max_power_kw == 7.0
    assert normalize_rack(_rack("R1")).max_power_kw == 7.0
