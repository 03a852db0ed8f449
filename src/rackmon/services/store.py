"""Persistence for racks, sensor readings, problems and thresholds.

Every public coroutine swallows and logs database errors and returns an empty value
(empty list, None, False) instead of raising; callers treat those as "no data".
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from src.rackmon.db.mongo import THRESHOLDS_LATEST_PIPELINE, MongoManager
from src.rackmon.schemas.common import utc_now
from src.rackmon.schemas.telemetry import (
    Problem,
    ProblemCreate,
    ProblemStatus,
    RackRecord,
    SensorRecord,
    ThresholdSet,
    ThresholdUpdate,
    thresholds_from_doc,
)

logger = logging.getLogger(__name__)

ProblemKey = Tuple[str, str, str]


@dataclass(frozen=True)
class UpsertResult:
    rack_id: str
    inserted: bool


class TelemetryStore(Protocol):
    """Query contract the monitoring core relies on."""

    async def ping(self) -> bool: ...

    async def get_racks(self) -> List[dict]: ...

    async def get_rack(self, rack_id: str) -> Optional[dict]: ...

    async def get_sensor_readings(self, limit: int = 500) -> List[dict]: ...

    async def get_rack_readings(self, rack_id: str, limit: int = 100) -> List[dict]: ...

    async def get_thresholds(self) -> Optional[ThresholdSet]: ...

    async def insert_thresholds(self, payload: ThresholdUpdate) -> Optional[ThresholdSet]: ...

    async def upsert_rack(self, rack: RackRecord) -> Optional[UpsertResult]: ...

    async def find_rack_id(self, name: str) -> Optional[str]: ...

    async def insert_sensor_reading(self, rack_id: str, reading: SensorRecord) -> bool: ...

    async def find_active_problems(self) -> List[Problem]: ...

    async def insert_problem(self, problem: ProblemCreate) -> Optional[str]: ...

    async def list_problems(self, status: Optional[ProblemStatus] = None, limit: int = 500) -> List[dict]: ...

    async def get_problem(self, problem_id: str) -> Optional[dict]: ...


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _rack_fields(rack: RackRecord) -> Dict[str, Any]:
    return {
        "site": rack.site,
        "datacenter": rack.datacenter,
        "underMaintenance": rack.under_maintenance,
        "maxPowerKw": rack.max_power_kw,
        "maxUnits": rack.max_units,
        "freeUnits": rack.free_units,
        "phase": rack.phase.value,
    }


def _latest(docs: List[dict]) -> Optional[dict]:
    dated = [d for d in docs if d.get("createdAt") is not None]
    if dated:
        return max(dated, key=lambda d: d["createdAt"])
    return docs[0] if docs else None


class MongoTelemetryStore:
    """TelemetryStore over the service MongoDB."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    async def ping(self) -> bool:
        return await _run_in_thread(self._mongo.ping)

    async def get_racks(self) -> List[dict]:
        cols = self._mongo.collections()
        try:
            return await _run_in_thread(lambda: list(cols.racks.find({}, projection={"_id": 0}).sort("name", 1)))
        except PyMongoError:
            logger.exception("Failed to load racks")
            return []

    async def get_rack(self, rack_id: str) -> Optional[dict]:
        cols = self._mongo.collections()
        try:
            return await _run_in_thread(cols.racks.find_one, {"id": rack_id}, projection={"_id": 0})
        except PyMongoError:
            logger.exception("Failed to load rack %s", rack_id)
            return None

    async def get_sensor_readings(self, limit: int = 500) -> List[dict]:
        cols = self._mongo.collections()
        try:
            return await _run_in_thread(
                lambda: list(
                    cols.sensor_readings.find({}, projection={"_id": 0}).sort("createdAt", -1).limit(int(limit))
                )
            )
        except PyMongoError:
            logger.exception("Failed to load sensor readings")
            return []

    async def get_rack_readings(self, rack_id: str, limit: int = 100) -> List[dict]:
        """Readings for one rack, newest first."""
        cols = self._mongo.collections()
        try:
            return await _run_in_thread(
                lambda: list(
                    cols.sensor_readings.find({"rackId": rack_id}, projection={"_id": 0})
                    .sort("createdAt", -1)
                    .limit(int(limit))
                )
            )
        except PyMongoError:
            logger.exception("Failed to load sensor readings for rackId=%s", rack_id)
            return []

    async def get_thresholds(self) -> Optional[ThresholdSet]:
        """Latest "global" thresholds: indexed view, then aggregation, then a direct query."""
        cols = self._mongo.collections()

        try:
            doc = await _run_in_thread(cols.thresholds_latest.find_one, {}, projection={"_id": 0})
            found = thresholds_from_doc(doc) if doc else None
            if found:
                logger.info("Retrieved thresholds from view")
                return found
        except PyMongoError as e:
            logger.warning("Thresholds view lookup failed: %s. Falling back to aggregation.", e)

        try:
            docs = await _run_in_thread(lambda: list(cols.thresholds.aggregate(THRESHOLDS_LATEST_PIPELINE)))
            found = thresholds_from_doc(docs[0]) if docs else None
            if found:
                logger.info("Retrieved thresholds via aggregation")
                return found
        except PyMongoError as e:
            logger.warning("Thresholds aggregation failed: %s. Falling back to direct query.", e)

        try:
            docs = await _run_in_thread(lambda: list(cols.thresholds.find({"name": "global"}, projection={"_id": 0})))
            latest = _latest(docs)
            found = thresholds_from_doc(latest) if latest else None
            if found:
                logger.info("Retrieved thresholds via direct query")
                return found
        except PyMongoError:
            logger.exception("Direct thresholds query failed")

        logger.warning("No threshold values found in database")
        return None

    async def insert_thresholds(self, payload: ThresholdUpdate) -> Optional[ThresholdSet]:
        cols = self._mongo.collections()
        doc = {"name": "global", **payload.model_dump(by_alias=True), "createdAt": utc_now()}
        try:
            await _run_in_thread(cols.thresholds.insert_one, dict(doc))
        except PyMongoError:
            logger.exception("Failed to insert thresholds")
            return None
        return ThresholdSet.model_validate(doc)

    async def upsert_rack(self, rack: RackRecord) -> Optional[UpsertResult]:
        cols = self._mongo.collections()
        now = utc_now()
        new_id = str(uuid4())
        try:
            before = await _run_in_thread(
                cols.racks.find_one_and_update,
                {"name": rack.name},
                {
                    "$set": {**_rack_fields(rack), "updatedAt": now},
                    "$setOnInsert": {"id": new_id, "name": rack.name, "createdAt": now},
                },
                upsert=True,
                projection={"_id": 0, "id": 1},
                return_document=ReturnDocument.BEFORE,
            )
        except PyMongoError:
            logger.exception("Failed to upsert rack %s", rack.name)
            return None
        if before is None:
            return UpsertResult(rack_id=new_id, inserted=True)
        if before.get("id"):
            return UpsertResult(rack_id=str(before["id"]), inserted=False)

        # Rows written without an id get one so readings and problems can reference them.
        try:
            await _run_in_thread(cols.racks.update_one, {"name": rack.name, "id": None}, {"$set": {"id": new_id}})
            doc = await _run_in_thread(cols.racks.find_one, {"name": rack.name}, projection={"_id": 0, "id": 1})
        except PyMongoError:
            logger.exception("Failed to assign an id to rack %s", rack.name)
            return None
        if not doc or not doc.get("id"):
            logger.error("Rack %s has no id after backfill", rack.name)
            return None
        logger.warning("Rack %s had no id; assigned %s", rack.name, doc["id"])
        return UpsertResult(rack_id=str(doc["id"]), inserted=False)

    async def find_rack_id(self, name: str) -> Optional[str]:
        cols = self._mongo.collections()
        try:
            doc = await _run_in_thread(cols.racks.find_one, {"name": name}, projection={"_id": 0, "id": 1})
        except PyMongoError:
            logger.exception("Failed to look up rack %s", name)
            return None
        return str(doc["id"]) if doc and doc.get("id") else None

    async def insert_sensor_reading(self, rack_id: str, reading: SensorRecord) -> bool:
        cols = self._mongo.collections()
        doc = {
            "id": str(uuid4()),
            "rackId": rack_id,
            "temperatureC": reading.temperature_c,
            "humidityPct": reading.humidity_pct,
            "totalPowerKw": reading.total_power_kw,
            "totalCurrentA": reading.total_current_a,
            "totalVoltageV": reading.total_voltage_v,
            "createdAt": utc_now(),
        }
        try:
            await _run_in_thread(cols.sensor_readings.insert_one, doc)
            return True
        except PyMongoError:
            logger.exception("Failed to insert sensor reading for rackId=%s", rack_id)
            return False

    async def find_active_problems(self) -> List[Problem]:
        cols = self._mongo.collections()
        try:
            docs = await _run_in_thread(
                lambda: list(cols.problems.find({"status": ProblemStatus.active.value}, projection={"_id": 0}))
            )
        except PyMongoError:
            logger.exception("Error getting active problems")
            return []
        out: List[Problem] = []
        for d in docs:
            try:
                out.append(Problem.model_validate(d))
            except ValidationError:
                logger.warning("Skipping malformed problem document id=%s", d.get("id"))
        return out

    async def insert_problem(self, problem: ProblemCreate) -> Optional[str]:
        cols = self._mongo.collections()
        now = utc_now()
        problem_id = str(uuid4())
        doc = {
            "id": problem_id,
            **problem.model_dump(mode="json", by_alias=True),
            "status": ProblemStatus.active.value,
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            await _run_in_thread(cols.problems.insert_one, doc)
        except DuplicateKeyError:
            logger.info("Active problem already exists for key=%s", problem.key())
            return None
        except PyMongoError:
            logger.exception("Error creating problem for key=%s", problem.key())
            return None
        return problem_id

    async def list_problems(self, status: Optional[ProblemStatus] = None, limit: int = 500) -> List[dict]:
        cols = self._mongo.collections()
        q: Dict[str, Any] = {"status": status.value} if status else {}
        try:
            return await _run_in_thread(
                lambda: list(cols.problems.find(q, projection={"_id": 0}).sort("createdAt", -1).limit(int(limit)))
            )
        except PyMongoError:
            logger.exception("Failed to list problems")
            return []

    async def get_problem(self, problem_id: str) -> Optional[dict]:
        cols = self._mongo.collections()
        try:
            return await _run_in_thread(cols.problems.find_one, {"id": problem_id}, projection={"_id": 0})
        except PyMongoError:
            logger.exception("Failed to load problem %s", problem_id)
            return None
