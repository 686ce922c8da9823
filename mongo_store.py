# mongo_store.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Set

from pymongo import ASCENDING, DESCENDING, ReplaceOne
from pymongo.database import Database
from pymongo.errors import PyMongoError
from werkzeug.security import check_password_hash, generate_password_hash

from errors import StorageError
from events import TransitEvent
from factors import EmissionFactor
from storage import ApiLogRecord, EventStore, Registry, require_valid

log = logging.getLogger("transitfootprint.mongo")


@contextmanager
def _mongo_errors(op: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as e:
        log.error("Mongo %s failed: %s", op, e)
        raise StorageError(f"Database error during {op}: {e}") from e


def _factor_id(mode: str, fuel_type: str, vehicle_size: str) -> str:
    return f"{mode}|{fuel_type}|{vehicle_size}"


def _factor_from_doc(d: dict) -> EmissionFactor:
    return EmissionFactor(
        mode=d["mode"],
        fuel_type=d.get("fuel_type", ""),
        vehicle_size=d.get("vehicle_size", ""),
        kg_co2_per_km=float(d["kg_co2_per_km"]),
        source=d.get("source", "UNKNOWN"),
        updated_at=int(d.get("updated_at", 0)),
    )


def _event_from_doc(d: dict) -> TransitEvent:
    return TransitEvent(
        user_id=d["user_id"],
        mode=d["mode"],
        distance_km=float(d["distance_km"]),
        ts=int(d["ts"]),
        fuel_type=d.get("fuel_type", ""),
        vehicle_size=d.get("vehicle_size", ""),
        occupancy=float(d.get("occupancy", 1.0)),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Events
# ──────────────────────────────────────────────────────────────────────────────
class MongoEventStore(EventStore):
    """`events` collection; reads come back sorted by timestamp."""

    # shared by every worker, another process may append at any time
    cacheable = False

    def __init__(self, db: Database):
        self._coll = db["events"]

    def ensure_indexes(self) -> None:
        with _mongo_errors("create_index"):
            self._coll.create_index([("user_id", ASCENDING), ("ts", ASCENDING)])

    def add_event(self, event: TransitEvent) -> None:
        require_valid(event)
        with _mongo_errors("insert event"):
            self._coll.insert_one(event.to_dict())

    def get_events(self, user_id: str) -> List[TransitEvent]:
        with _mongo_errors("find events"):
            cursor = self._coll.find({"user_id": user_id}, {"_id": 0}).sort("ts", ASCENDING)
            return [_event_from_doc(d) for d in cursor]

    def get_clients(self) -> Set[str]:
        with _mongo_errors("distinct users"):
            return set(self._coll.distinct("user_id"))

    def clear_events(self) -> None:
        with _mongo_errors("clear events"):
            self._coll.delete_many({})

    def ping(self) -> bool:
        try:
            self._coll.database.client.admin.command("ping")
            return True
        except PyMongoError:
            return False


# ──────────────────────────────────────────────────────────────────────────────
# Emission factors
# ──────────────────────────────────────────────────────────────────────────────
class MongoFactorTable:
    """
    Durable factor table keyed by "mode|fuel_type|vehicle_size".

    `version` only tracks writes made through this instance.
    """

    def __init__(self, db: Database):
        self._coll = db["emission_factors"]
        self._version = 0
        self._lock = threading.Lock()

    @property
    def version(self) -> int:
        return self._version

    def _bump(self) -> None:
        with self._lock:
            self._version += 1

    def upsert(self, factor: EmissionFactor) -> None:
        with _mongo_errors("upsert factor"):
            self._coll.replace_one(
                {"_id": _factor_id(*factor.key)},
                factor.to_dict(),
                upsert=True,
            )
        self._bump()

    def upsert_many(self, factors: Sequence[EmissionFactor]) -> int:
        ops = [ReplaceOne({"_id": _factor_id(*f.key)}, f.to_dict(), upsert=True) for f in factors]
        if ops:
            with _mongo_errors("bulk upsert factors"):
                self._coll.bulk_write(ops, ordered=True)
            self._bump()
        return len(ops)

    def lookup(self, mode: str, fuel_type: str = "", vehicle_size: str = "") -> Optional[EmissionFactor]:
        with _mongo_errors("find factor"):
            doc = self._coll.find_one({"_id": _factor_id(mode, fuel_type, vehicle_size)})
        return _factor_from_doc(doc) if doc else None

    def has_factor(self, mode: str, fuel_type: str = "", vehicle_size: str = "") -> bool:
        return self.lookup(mode, fuel_type, vehicle_size) is not None

    def list_all(self) -> List[EmissionFactor]:
        with _mongo_errors("list factors"):
            return [_factor_from_doc(d) for d in self._coll.find({})]

    def list_by_mode(self, mode: str) -> List[EmissionFactor]:
        with _mongo_errors("list factors"):
            return [_factor_from_doc(d) for d in self._coll.find({"mode": mode})]

    def clear(self) -> None:
        with _mongo_errors("clear factors"):
            self._coll.delete_many({})
        self._bump()

    def __len__(self) -> int:
        with _mongo_errors("count factors"):
            return self._coll.count_documents({})


# ──────────────────────────────────────────────────────────────────────────────
# API keys & request logs
# ──────────────────────────────────────────────────────────────────────────────
class MongoRegistry(Registry):
    def __init__(self, db: Database):
        self._keys = db["api_keys"]
        self._logs = db["api_logs"]

    def set_api_key(self, user_id: str, api_key: str, app_name: str = "") -> None:
        with _mongo_errors("set api key"):
            self._keys.update_one(
                {"_id": user_id},
                {"$set": {"api_key_hash": generate_password_hash(api_key), "app_name": app_name}},
                upsert=True,
            )

    def check_api_key(self, user_id: str, api_key: str) -> bool:
        if not api_key:
            return False
        with _mongo_errors("check api key"):
            doc = self._keys.find_one({"_id": user_id})
        if not doc or not doc.get("api_key_hash"):
            return False
        return check_password_hash(doc["api_key_hash"], api_key)

    def append_log(self, record: ApiLogRecord) -> None:
        with _mongo_errors("append log"):
            self._logs.insert_one(record.to_dict())

    def get_logs(self, limit: int = 100) -> List[ApiLogRecord]:
        if limit <= 0:
            return []
        with _mongo_errors("read logs"):
            # newest `limit` records, returned oldest first
            docs = list(self._logs.find({}, {"_id": 0}).sort("ts", DESCENDING).limit(limit))
        return [ApiLogRecord(**d) for d in reversed(docs)]

    def clear_logs(self) -> None:
        with _mongo_errors("clear logs"):
            self._logs.delete_many({})

    def clear(self) -> None:
        with _mongo_errors("clear registry"):
            self._keys.delete_many({})
            self._logs.delete_many({})
