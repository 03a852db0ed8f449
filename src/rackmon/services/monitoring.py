from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from src.rackmon.config import BackendConfig
from src.rackmon.errors import RackMonitorError
from src.rackmon.schemas.common import utc_now
from src.rackmon.schemas.monitoring import CycleSummary, MonitoringStatus
from src.rackmon.schemas.telemetry import (
    DEFAULT_THRESHOLDS,
    AlertDirection,
    ProblemCreate,
    ProblemType,
    RackRecord,
    SensorRecord,
    ThresholdSet,
    normalize_rack,
    normalize_sensor,
)
from src.rackmon.services.external_api import ExternalApiClient, FetchOptions
from src.rackmon.services.store import ProblemKey, TelemetryStore
from src.rackmon.services.upstream import is_paged_url

logger = logging.getLogger(__name__)


def _range_violation(
    rack_id: str,
    ptype: ProblemType,
    value: Optional[float],
    lo: float,
    hi: float,
) -> Optional[ProblemCreate]:
    if value is None:
        return None
    if value > hi:
        return ProblemCreate(
            rack_id=rack_id, type=ptype, measured_value=value, threshold_value=hi, alert_direction=AlertDirection.high
        )
    if value < lo:
        return ProblemCreate(
            rack_id=rack_id, type=ptype, measured_value=value, threshold_value=lo, alert_direction=AlertDirection.low
        )
    return None


# PUBLIC_INTERFACE
def evaluate_sensor(
    rack_id: str,
    sensor: SensorRecord,
    rack: Optional[RackRecord],
    thresholds: ThresholdSet,
) -> List[ProblemCreate]:
    """
    Threshold violations for one reading.

    Temperature and humidity are checked against min/max (strict comparisons). Power needs the
    rack from this cycle's inventory, since the limit depends on its phase: the rack's current,
    or the reading's current when the rack reports none, is compared against the phase-specific
    max and only alerts high. Without a rack record the power check is skipped.
    """
    found: List[ProblemCreate] = []

    temp = _range_violation(
        rack_id, ProblemType.temperature, sensor.temperature_c, thresholds.min_temp, thresholds.max_temp
    )
    if temp:
        found.append(temp)

    humidity = _range_violation(
        rack_id, ProblemType.humidity, sensor.humidity_pct, thresholds.min_humidity, thresholds.max_humidity
    )
    if humidity:
        found.append(humidity)

    if rack is None:
        return found

    current = rack.total_current_a if rack.total_current_a is not None else sensor.total_current_a
    if current is not None:
        max_current = thresholds.max_current_for(rack.phase)
        if current > max_current:
            found.append(
                ProblemCreate(
                    rack_id=rack_id,
                    type=ProblemType.power,
                    measured_value=current,
                    threshold_value=max_current,
                    alert_direction=AlertDirection.high,
                )
            )

    return found


class MonitoringService:
    """
    Periodic fetch -> store -> evaluate loop over the two telemetry upstreams.

    Owns its counters and the Idle/Running guard; a run_cycle call made while another cycle is
    running is skipped and logged. stop() ends the schedule but lets an in-flight cycle finish.
    """

    def __init__(
        self,
        config: BackendConfig,
        store: Optional[TelemetryStore],
        api: ExternalApiClient,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._store = store
        self._api = api
        self._now = now_fn

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._interval_sec: Optional[int] = None

        self._last_run: Optional[datetime] = None
        self._last_run_duration_ms: Optional[int] = None
        self._api1_reachable = False
        self._api2_reachable = False
        self._cycles_completed = 0
        self._cycles_skipped = 0
        self._problems_detected = 0
        self._racks_stored = 0
        self._sensor_readings_stored = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    # PUBLIC_INTERFACE
    def status(self) -> MonitoringStatus:
        """Counters and flags for status endpoints."""
        return MonitoringStatus(
            active=self.active,
            running=self._running,
            interval_sec=self._interval_sec if self.active else None,
            last_run=self._last_run,
            last_run_duration_ms=self._last_run_duration_ms,
            api1_reachable=self._api1_reachable,
            api2_reachable=self._api2_reachable,
            cycles_completed=self._cycles_completed,
            cycles_skipped=self._cycles_skipped,
            problems_detected=self._problems_detected,
            racks_stored=self._racks_stored,
            sensor_readings_stored=self._sensor_readings_stored,
        )

    # PUBLIC_INTERFACE
    def start(self, interval_sec: Optional[int] = None, initial_delay_sec: float = 0.0) -> bool:
        """Schedule the loop; the first cycle runs after `initial_delay_sec`. False if already active."""
        if self.active:
            logger.info("Monitoring service already running (interval=%ss)", self._interval_sec)
            return False

        interval = max(1, int(interval_sec or self._config.monitoring_interval_sec))
        self._interval_sec = interval
        self._shutdown = asyncio.Event()
        self._task = asyncio.create_task(self._loop(interval, max(0.0, float(initial_delay_sec)), self._shutdown))
        logger.info("Starting monitoring service with interval of %ss", interval)
        return True

    # PUBLIC_INTERFACE
    async def stop(self, wait_timeout_sec: Optional[float] = None) -> bool:
        """
        Stop scheduling cycles. False if the loop was not running.

        With `wait_timeout_sec`, waits for the loop (and any in-flight cycle) to finish.
        """
        if self._task is None:
            logger.info("Monitoring service is not running")
            return False

        task = self._task
        if self._shutdown is not None:
            self._shutdown.set()
        self._task = None
        self._shutdown = None
        logger.info("Monitoring service stopped")

        if wait_timeout_sec is not None:
            try:
                await asyncio.wait_for(task, timeout=wait_timeout_sec)
            except Exception:
                logger.exception("Error stopping monitoring loop")
        return True

    async def _loop(self, interval: int, initial_delay: float, shutdown_event: asyncio.Event) -> None:
        if initial_delay > 0:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=initial_delay)
            except asyncio.TimeoutError:
                pass

        while not shutdown_event.is_set():
            tick_started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Monitoring tick failed")

            elapsed = time.monotonic() - tick_started
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=max(0.1, interval - elapsed))
            except asyncio.TimeoutError:
                pass

        logger.info("Monitoring loop exited")

    # PUBLIC_INTERFACE
    async def run_cycle(self) -> Optional[CycleSummary]:
        """Run one cycle now. Returns None when a cycle is already running."""
        if self._running:
            self._cycles_skipped += 1
            logger.warning("Monitoring cycle already in progress; skipping overlapping run")
            return None

        self._running = True
        summary = CycleSummary(cycle_id=f"cycle_{uuid.uuid4().hex[:8]}", started_at=self._now())
        started = time.monotonic()
        self._last_run = summary.started_at
        logger.info("Running monitoring cycle %s", summary.cycle_id, extra={"cycleId": summary.cycle_id})

        try:
            completed = await self._cycle(summary)
            if completed:
                self._cycles_completed += 1
        except Exception:
            logger.exception("Error in monitoring cycle %s", summary.cycle_id)
        finally:
            summary.duration_ms = int((time.monotonic() - started) * 1000)
            self._last_run_duration_ms = summary.duration_ms
            self._running = False

        logger.info(
            "Monitoring cycle %s finished in %sms: racks +%s/~%s, readings %s, problems %s (dupes %s)%s",
            summary.cycle_id,
            summary.duration_ms,
            summary.racks_inserted,
            summary.racks_updated,
            summary.readings_stored,
            summary.problems_created,
            summary.problems_skipped_duplicate,
            f", ended early: {summary.skipped_reason}" if summary.skipped_reason else "",
            extra={"cycleId": summary.cycle_id},
        )
        return summary

    async def _fetch(self, url: Optional[str], source: str) -> List[dict]:
        if not url:
            return []
        options = FetchOptions.from_config(self._config, use_mock_on_fail=False, use_pagination=is_paged_url(url))
        try:
            return await self._api.fetch(url, source, options)
        except RackMonitorError as e:
            logger.error("Error fetching %s data: %s", source, e)
            return []

    async def _load_thresholds(self, summary: CycleSummary) -> ThresholdSet:
        assert self._store is not None
        try:
            found = await self._store.get_thresholds()
        except Exception:
            logger.exception("Failed to load thresholds")
            found = None
        if found is None:
            logger.warning("Using default thresholds")
            summary.thresholds_source = "defaults"
            return DEFAULT_THRESHOLDS
        summary.thresholds_source = "database"
        return found

    async def _upsert_racks(self, records: List[dict], summary: CycleSummary) -> Tuple[Dict[str, str], Dict[str, RackRecord]]:
        assert self._store is not None
        ids: Dict[str, str] = {}
        racks: Dict[str, RackRecord] = {}
        for raw in records:
            try:
                rack = normalize_rack(raw)
                if rack is None:
                    logger.warning("Skipping rack record without a name")
                    summary.rack_errors += 1
                    continue
                racks[rack.name] = rack
                result = await self._store.upsert_rack(rack)
                if result is None:
                    summary.rack_errors += 1
                    continue
                ids[rack.name] = result.rack_id
                if result.inserted:
                    summary.racks_inserted += 1
                else:
                    summary.racks_updated += 1
            except Exception:
                logger.exception("Error processing rack record")
                summary.rack_errors += 1
        return ids, racks

    async def _resolve_rack_id(self, name: str, known: Dict[str, str]) -> Optional[str]:
        assert self._store is not None
        if name in known:
            return known[name]
        rack_id = await self._store.find_rack_id(name)
        if rack_id:
            known[name] = rack_id
        return rack_id

    async def _store_readings(
        self, records: List[dict], rack_ids: Dict[str, str], summary: CycleSummary
    ) -> List[Tuple[str, SensorRecord]]:
        assert self._store is not None
        resolved: List[Tuple[str, SensorRecord]] = []
        for raw in records:
            try:
                sensor = normalize_sensor(raw)
                rack_id = await self._resolve_rack_id(sensor.rack_name, rack_ids) if sensor else None
                if sensor is None or rack_id is None:
                    summary.readings_unresolved += 1
                    logger.debug("Sensor record references unknown rack %s", sensor.rack_name if sensor else None)
                    continue
                resolved.append((rack_id, sensor))
                if await self._store.insert_sensor_reading(rack_id, sensor):
                    summary.readings_stored += 1
                else:
                    summary.reading_errors += 1
            except Exception:
                logger.exception("Error processing sensor record")
                summary.reading_errors += 1
        return resolved

    async def _record_problems(
        self,
        readings: List[Tuple[str, SensorRecord]],
        racks: Dict[str, RackRecord],
        thresholds: ThresholdSet,
        summary: CycleSummary,
    ) -> None:
        assert self._store is not None
        active: Set[ProblemKey] = {p.key() for p in await self._store.find_active_problems()}

        for rack_id, sensor in readings:
            try:
                violations = evaluate_sensor(rack_id, sensor, racks.get(sensor.rack_name), thresholds)
            except Exception:
                logger.exception("Error evaluating reading for rackId=%s", rack_id)
                continue

            for problem in violations:
                key = problem.key()
                if key in active:
                    summary.problems_skipped_duplicate += 1
                    continue
                problem_id = await self._store.insert_problem(problem)
                if problem_id is None:
                    continue
                active.add(key)
                summary.problems_created += 1
                logger.info(
                    "Created %s %s problem for rack %s: %s (threshold %s)",
                    problem.alert_direction.value,
                    problem.type.value,
                    sensor.rack_name,
                    problem.measured_value,
                    problem.threshold_value,
                    extra={"problemId": problem_id, "rackId": rack_id},
                )

    async def _cycle(self, summary: CycleSummary) -> bool:
        cfg = self._config

        # 1. Reachability
        self._api1_reachable, self._api2_reachable = await asyncio.gather(
            self._api.is_reachable(cfg.api1_url), self._api.is_reachable(cfg.api2_url)
        )
        if not self._api1_reachable and not self._api2_reachable:
            summary.skipped_reason = "both APIs unreachable"
            logger.error("Both APIs are unreachable. Skipping monitoring cycle.")
            return False

        # 2. Persistence
        if not cfg.db_enabled or self._store is None:
            summary.skipped_reason = "database disabled"
            logger.warning("Database is disabled. Skipping data storage and problem detection.")
            return False

        # 3. Fetch
        rack_records = await self._fetch(cfg.api1_url, "racks") if self._api1_reachable else []
        sensor_records = await self._fetch(cfg.api2_url, "sensors") if self._api2_reachable else []
        summary.racks_fetched = len(rack_records)
        summary.sensors_fetched = len(sensor_records)

        # 4. Thresholds
        thresholds = await self._load_thresholds(summary)

        # 5. Racks
        rack_ids, racks = await self._upsert_racks(rack_records, summary)
        self._racks_stored += summary.racks_inserted + summary.racks_updated

        # 6. Readings
        readings = await self._store_readings(sensor_records, rack_ids, summary)
        self._sensor_readings_stored += summary.readings_stored
        if summary.readings_unresolved:
            logger.warning("%s sensor records referenced unknown racks", summary.readings_unresolved)

        # 7. Problems
        try:
            await self._record_problems(readings, racks, thresholds, summary)
        except Exception:
            logger.exception("Problem detection failed")
        self._problems_detected += summary.problems_created

        return True
