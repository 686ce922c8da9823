# events.py
from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Mapping, NamedTuple, Optional, Tuple, get_args

from emissions import Mode
from errors import InvalidInput

ALLOWED_MODES: Tuple[str, ...] = get_args(Mode)
PRIVATE_VEHICLE_MODES = frozenset({"car", "taxi"})
FUEL_TYPES = ("petrol", "diesel", "electric", "hybrid")
VEHICLE_SIZES = ("small", "medium", "large")


@dataclass(frozen=True)
class TransitEvent:
    user_id: str
    mode: str
    distance_km: float
    ts: int
    fuel_type: str = ""
    vehicle_size: str = ""
    occupancy: float = 1.0

    def to_dict(self) -> dict:
        return asdict(self)


class EventResult(NamedTuple):
    """Either a built event or the reason it was rejected."""

    event: Optional[TransitEvent]
    error: Optional[str]

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> TransitEvent:
        if self.error is not None:
            raise InvalidInput(self.error)
        if self.event is None:
            raise InvalidInput("no event built")
        return self.event


def _reject(reason: str) -> EventResult:
    return EventResult(None, reason)


def check_event(event: TransitEvent) -> Optional[str]:
    """Reason an already-built event breaks the stored-event invariants, else None."""
    if not event.user_id:
        return "user_id must not be empty."
    if not math.isfinite(event.distance_km):
        return "distance_km must be a finite number."
    if event.distance_km < 0:
        return "Negative value for distance_km is not allowed."
    if event.mode not in ALLOWED_MODES:
        return "invalid mode"
    if not math.isfinite(event.occupancy) or event.occupancy < 1.0:
        return "occupancy must be at least 1.0"
    return None


def validate_and_build(
    user_id: str,
    mode: str,
    distance_km: float,
    ts: Optional[int] = None,
    *,
    occupancy: float = 1.0,
    fuel_type: str = "",
    vehicle_size: str = "",
    now: Optional[int] = None,
) -> EventResult:
    """
    Build a canonical TransitEvent.

    Mode matching is exact and case-sensitive. A missing or zero `ts` becomes
    the current time; any other value (past or future) is kept as given.
    Fuel type and vehicle size only mean something for car and taxi trips and
    are blanked for every other mode.
    """
    if not ts:
        ts = int(now if now is not None else time.time())
    if mode not in PRIVATE_VEHICLE_MODES:
        fuel_type = vehicle_size = ""

    event = TransitEvent(
        user_id=user_id or "",
        mode=mode,
        distance_km=distance_km,
        ts=int(ts),
        fuel_type=fuel_type or "",
        vehicle_size=vehicle_size or "",
        occupancy=occupancy,
    )
    reason = check_event(event)
    if reason:
        return _reject(reason)
    return EventResult(event, None)


def _number(body: Mapping[str, Any], key: str, default: Any = None) -> Any:
    value = body.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(key)
    return value


def event_from_payload(user_id: str, body: Any, now: Optional[int] = None) -> EventResult:
    """Validate a decoded JSON POST body for the transit endpoint."""
    if not user_id:
        return _reject("user_id must not be empty.")
    if not isinstance(body, Mapping):
        return _reject("invalid JSON payload")
    if "mode" not in body or "distance_km" not in body:
        return _reject("missing_fields")

    mode = body["mode"]
    fuel_type = body.get("fuel_type") or ""
    vehicle_size = body.get("vehicle_size") or ""
    if not all(isinstance(v, str) for v in (mode, fuel_type, vehicle_size)):
        return _reject("invalid JSON payload")
    try:
        distance = _number(body, "distance_km")
        ts = _number(body, "ts")
        occupancy = _number(body, "occupancy", 1.0)
    except TypeError as e:
        return _reject(f"{e.args[0]} must be a number")
    if distance is None:
        return _reject("missing_fields")
    if ts is not None and ts != int(ts):
        return _reject("ts must be whole epoch seconds")

    return validate_and_build(
        user_id,
        mode,
        float(distance),
        int(ts) if ts is not None else None,
        occupancy=float(occupancy if occupancy is not None else 1.0),
        fuel_type=fuel_type,
        vehicle_size=vehicle_size,
        now=now,
    )
