# aggregation.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Set, Tuple

from emissions import FactorLookup, calculate_co2, default_table
from events import TransitEvent
from storage import EventStore

log = logging.getLogger("transitfootprint.aggregation")

DAY_SECONDS = 24 * 3600
WEEK_SECONDS = 7 * DAY_SECONDS
MONTH_SECONDS = 30 * DAY_SECONDS

# Weekly kg CO₂e above which we nudge towards lower-carbon modes
SUGGESTION_THRESHOLD_KG = 20.0


@dataclass(frozen=True)
class FootprintSummary:
    lifetime_kg_co2: float = 0.0
    week_kg_co2: float = 0.0
    month_kg_co2: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def event_kg(event: TransitEvent, factors: Optional[FactorLookup] = None) -> float:
    return calculate_co2(
        event.mode,
        event.fuel_type,
        event.vehicle_size,
        event.occupancy,
        event.distance_km,
        factors,
    )


def _now(now: Optional[int]) -> int:
    return int(time.time()) if now is None else int(now)


# (factor table version, [(ts, kg), ...]) for one user
_Contributions = Tuple[int, List[Tuple[int, float]]]


class AggregationEngine:
    """
    Footprint totals over an EventStore.

    The per-user cache holds each event's kg contribution rather than finished
    totals, so any `now` can be windowed from it. An entry is dropped on every
    add for that user and ignored once the factor table version moves. Stores
    that other processes write to (`cacheable` False) are read on every call.
    """

    def __init__(self, store: EventStore, factors: Optional[FactorLookup] = None):
        self.store = store
        self.factors = factors if factors is not None else default_table()
        self._lock = threading.RLock()
        self._cache: Dict[str, _Contributions] = {}

    def _factor_version(self) -> int:
        return getattr(self.factors, "version", 0)

    # ── writes ────────────────────────────────────────────────────────────────
    def add_event(self, event: TransitEvent) -> None:
        with self._lock:
            self.store.add_event(event)
            self._cache.pop(event.user_id, None)

    def clear_events(self) -> None:
        with self._lock:
            self.store.clear_events()
            self._cache.clear()

    def invalidate(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._cache.clear()
            else:
                self._cache.pop(user_id, None)

    # ── reads ─────────────────────────────────────────────────────────────────
    def get_events(self, user_id: str) -> List[TransitEvent]:
        with self._lock:
            return self.store.get_events(user_id)

    def get_clients(self) -> Set[str]:
        with self._lock:
            return self.store.get_clients()

    def _contributions(self, user_id: str) -> List[Tuple[int, float]]:
        cacheable = getattr(self.store, "cacheable", False)
        version = self._factor_version()
        cached = self._cache.get(user_id) if cacheable else None
        if cached is not None and cached[0] == version:
            return cached[1]

        rows = [(ev.ts, event_kg(ev, self.factors)) for ev in self.store.get_events(user_id)]
        if cacheable:
            self._cache[user_id] = (version, rows)
        return rows

    def summarize(self, user_id: str, now: Optional[int] = None) -> FootprintSummary:
        now = _now(now)
        week_start = now - WEEK_SECONDS
        month_start = now - MONTH_SECONDS

        lifetime = week = month = 0.0
        with self._lock:
            for ts, kg in self._contributions(user_id):
                lifetime += kg
                if ts >= month_start:
                    month += kg
                if ts >= week_start:
                    week += kg
        return FootprintSummary(lifetime, week, month)

    def global_average_weekly(self, now: Optional[int] = None) -> float:
        """Mean weekly kg over users with at least one event this week."""
        now = _now(now)
        week_start = now - WEEK_SECONDS

        total = 0.0
        users_with_data = 0
        with self._lock:
            for user_id in sorted(self.store.get_clients()):
                in_week = [kg for ts, kg in self._contributions(user_id) if ts >= week_start]
                if in_week:
                    total += sum(in_week)
                    users_with_data += 1

        if users_with_data == 0:
            return 0.0
        return total / users_with_data

    def analytics(self, user_id: str, now: Optional[int] = None) -> dict:
        now = _now(now)
        with self._lock:
            summary = self.summarize(user_id, now)
            peer_avg = self.global_average_weekly(now)
        return {
            "user_id": user_id,
            "this_week_kg_co2": summary.week_kg_co2,
            "peer_week_avg_kg_co2": peer_avg,
            "above_peer_avg": summary.week_kg_co2 > peer_avg,
        }

    def suggestions(self, user_id: str, now: Optional[int] = None) -> List[str]:
        summary = self.summarize(user_id, now)
        if summary.week_kg_co2 > SUGGESTION_THRESHOLD_KG:
            return [
                "Try switching short taxi rides to subway or bus.",
                "Batch trips to reduce total distance.",
            ]
        return ["Nice work! Consider biking or walking for short hops."]
