from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import CollectionInvalid, OperationFailure, PyMongoError

logger = logging.getLogger(__name__)


APP_DB_NAME = "rackmon"
THRESHOLDS_VIEW = "thresholds_latest"

# Latest "global" threshold row; backs the fast path of threshold lookups.
THRESHOLDS_LATEST_PIPELINE = [
    {"$match": {"name": "global"}},
    {"$sort": {"createdAt": -1}},
    {"$limit": 1},
]


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    racks: Collection
    sensor_readings: Collection
    problems: Collection
    thresholds: Collection
    thresholds_latest: Collection


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one MongoClient for the service's own storage DB. The client is created lazily.
    """

    def __init__(self, app_mongo_uri: str, db_name: str = APP_DB_NAME, server_selection_timeout_ms: int = 5000):
        self._app_mongo_uri = app_mongo_uri
        self._db_name = db_name
        self._server_selection_timeout_ms = server_selection_timeout_ms
        self._app_client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize app Mongo client if needed."""
        with self._lock:
            if self._app_client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._app_client = MongoClient(
                self._app_mongo_uri,
                connect=True,
                serverSelectionTimeoutMS=self._server_selection_timeout_ms,
                tz_aware=True,
            )

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._app_client is None:
                self.connect_app()
            assert self._app_client is not None
            self._app_client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the app Mongo client."""
        with self._lock:
            if self._app_client is not None:
                try:
                    self._app_client.close()
                except Exception:
                    logger.exception("Error closing app MongoClient")
                self._app_client = None

    def app_db(self) -> Database:
        """Return the service database handle."""
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        return self._app_client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            racks=db["racks"],
            sensor_readings=db["sensor_readings"],
            problems=db["problems"],
            thresholds=db["thresholds"],
            thresholds_latest=db[THRESHOLDS_VIEW],
        )

    def init_indexes(self) -> None:
        """
        Create required indexes and the thresholds view (idempotent).

        The partial unique index on problems backs the one-active-problem-per-key rule; the
        monitoring cycle still checks before inserting.
        """
        cols = self.collections()

        # ---- Racks ----
        cols.racks.create_index([("name", ASCENDING)], unique=True, name="idx_racks_name")
        cols.racks.create_index([("id", ASCENDING)], unique=True, name="idx_racks_id")

        # ---- Sensor readings (append-only) ----
        cols.sensor_readings.create_index(
            [("rackId", ASCENDING), ("createdAt", DESCENDING)], name="idx_readings_rack_createdAt_desc"
        )
        cols.sensor_readings.create_index([("createdAt", DESCENDING)], name="idx_readings_createdAt_desc")

        # ---- Problems ----
        cols.problems.create_index([("status", ASCENDING)], name="idx_problems_status")
        cols.problems.create_index([("createdAt", DESCENDING)], name="idx_problems_createdAt_desc")
        cols.problems.create_index(
            [("rackId", ASCENDING), ("type", ASCENDING), ("alertDirection", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": "active"},
            name="uniq_problems_active_key",
        )

        # ---- Thresholds (insert-only versions) ----
        cols.thresholds.create_index([("name", ASCENDING), ("createdAt", DESCENDING)], name="idx_thresholds_name_createdAt")

        db = self.app_db()
        try:
            db.create_collection(THRESHOLDS_VIEW, viewOn="thresholds", pipeline=THRESHOLDS_LATEST_PIPELINE)
        except (CollectionInvalid, OperationFailure):
            # Already exists.
            logger.debug("Thresholds view %s already present", THRESHOLDS_VIEW)
