# storage.py
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Dict, List, Set

from werkzeug.security import check_password_hash, generate_password_hash

from errors import InvalidInput
from events import TransitEvent, check_event


@dataclass(frozen=True)
class ApiLogRecord:
    ts: int
    method: str
    path: str
    status: int
    duration_ms: float = 0.0
    client_ip: str = "unknown"
    user_id: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


# ──────────────────────────────────────────────────────────────────────────────
# Event log
# ──────────────────────────────────────────────────────────────────────────────
class EventStore(ABC):
    """
    Per-user append-only transit event log.

    `cacheable` is True only when every write goes through this process, so a
    reader may keep derived totals between its own adds.
    """

    cacheable = False

    @abstractmethod
    def add_event(self, event: TransitEvent) -> None: ...

    @abstractmethod
    def get_events(self, user_id: str) -> List[TransitEvent]: ...

    @abstractmethod
    def get_clients(self) -> Set[str]: ...

    @abstractmethod
    def clear_events(self) -> None: ...

    def ping(self) -> bool:
        return True


def require_valid(event: TransitEvent) -> None:
    reason = check_event(event)
    if reason:
        raise InvalidInput(reason)


class InMemoryEventStore(EventStore):
    """Events kept in insertion order, one list per user, behind one lock."""

    cacheable = True

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, List[TransitEvent]] = {}

    def add_event(self, event: TransitEvent) -> None:
        require_valid(event)
        with self._lock:
            self._events.setdefault(event.user_id, []).append(event)

    def get_events(self, user_id: str) -> List[TransitEvent]:
        with self._lock:
            return list(self._events.get(user_id, ()))

    def get_clients(self) -> Set[str]:
        with self._lock:
            return {u for u, evs in self._events.items() if evs}

    def clear_events(self) -> None:
        with self._lock:
            self._events.clear()


# ──────────────────────────────────────────────────────────────────────────────
# API keys & request logs
# ──────────────────────────────────────────────────────────────────────────────
class Registry(ABC):
    """API-key records and the request log. Only the HTTP layer uses this."""

    @abstractmethod
    def set_api_key(self, user_id: str, api_key: str, app_name: str = "") -> None: ...

    @abstractmethod
    def check_api_key(self, user_id: str, api_key: str) -> bool: ...

    @abstractmethod
    def append_log(self, record: ApiLogRecord) -> None: ...

    @abstractmethod
    def get_logs(self, limit: int = 100) -> List[ApiLogRecord]: ...

    @abstractmethod
    def clear_logs(self) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...


class InMemoryRegistry(Registry):
    def __init__(self):
        self._lock = threading.Lock()
        self._keys: Dict[str, str] = {}
        self._app_names: Dict[str, str] = {}
        self._logs: List[ApiLogRecord] = []

    def set_api_key(self, user_id: str, api_key: str, app_name: str = "") -> None:
        hashed = generate_password_hash(api_key)
        with self._lock:
            self._keys[user_id] = hashed
            if app_name:
                self._app_names[user_id] = app_name

    def check_api_key(self, user_id: str, api_key: str) -> bool:
        with self._lock:
            hashed = self._keys.get(user_id)
        if not hashed or not api_key:
            return False
        return check_password_hash(hashed, api_key)

    def append_log(self, record: ApiLogRecord) -> None:
        with self._lock:
            self._logs.append(record)

    def get_logs(self, limit: int = 100) -> List[ApiLogRecord]:
        with self._lock:
            if limit <= 0:
                return []
            return self._logs[-limit:]

    def clear_logs(self) -> None:
        with self._lock:
            self._logs.clear()

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()
            self._app_names.clear()
            self._logs.clear()
