# factors.py
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Tuple, TypeAlias

FactorKey: TypeAlias = Tuple[str, str, str]

BASIC_SOURCE = "BASIC-DEFAULT"
DEFRA_SOURCE = "DEFRA-2024"


@dataclass(frozen=True)
class EmissionFactor:
    """Per-passenger, well-to-wheel kg CO₂e per km for one (mode, fuel, size)."""

    mode: str
    fuel_type: str
    vehicle_size: str
    kg_co2_per_km: float
    source: str = "UNKNOWN"
    updated_at: int = 0  # epoch seconds, 0 = unknown

    @property
    def key(self) -> FactorKey:
        return (self.mode, self.fuel_type, self.vehicle_size)

    def to_dict(self) -> dict:
        return asdict(self)


class EmissionFactorTable:
    """
    Thread-safe in-memory factor table, one active entry per key.

    `version` goes up on every mutation so derived caches can tell when the
    rates under them changed.
    """

    def __init__(self, factors: Iterable[EmissionFactor] = ()):
        self._lock = threading.Lock()
        self._rows: Dict[FactorKey, EmissionFactor] = {}
        self._version = 0
        for f in factors:
            self._rows[f.key] = f

    @property
    def version(self) -> int:
        return self._version

    def upsert(self, factor: EmissionFactor) -> None:
        with self._lock:
            self._rows[factor.key] = factor
            self._version += 1

    def upsert_many(self, factors: Iterable[EmissionFactor]) -> int:
        batch = list(factors)
        with self._lock:
            for f in batch:
                self._rows[f.key] = f
            self._version += 1
        return len(batch)

    def lookup(self, mode: str, fuel_type: str = "", vehicle_size: str = "") -> Optional[EmissionFactor]:
        with self._lock:
            return self._rows.get((mode, fuel_type, vehicle_size))

    def has_factor(self, mode: str, fuel_type: str = "", vehicle_size: str = "") -> bool:
        return self.lookup(mode, fuel_type, vehicle_size) is not None

    def list_all(self) -> List[EmissionFactor]:
        with self._lock:
            return list(self._rows.values())

    def list_by_mode(self, mode: str) -> List[EmissionFactor]:
        with self._lock:
            return [f for f in self._rows.values() if f.mode == mode]

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()
            self._version += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


# ──────────────────────────────────────────────────────────────────────────────
# Canonical datasets
# ──────────────────────────────────────────────────────────────────────────────
_BASIC_RATES: Dict[str, float] = {
    "petrol": 0.200,
    "diesel": 0.180,
    "electric": 0.100,
    "hybrid": 0.150,
}


def basic_defaults() -> List[EmissionFactor]:
    """Conservative flat rates: one tier per fuel, size-independent."""
    out: List[EmissionFactor] = []
    for fuel, rate in _BASIC_RATES.items():
        for size in ("small", "medium", "large"):
            out.append(EmissionFactor("car", fuel, size, rate, BASIC_SOURCE))
    for fuel, rate in _BASIC_RATES.items():
        out.append(EmissionFactor("taxi", fuel, "medium", rate, BASIC_SOURCE))

    out += [
        EmissionFactor("bus", "", "", 0.100, BASIC_SOURCE),
        EmissionFactor("subway", "", "", 0.050, BASIC_SOURCE),
        EmissionFactor("train", "", "", 0.070, BASIC_SOURCE),
        EmissionFactor("bike", "", "", 0.0, BASIC_SOURCE),
        EmissionFactor("walk", "", "", 0.0, BASIC_SOURCE),
    ]
    return out


# UK Government GHG conversion factors 2024, kg CO₂e per passenger·km
_DEFRA_2024: Dict[FactorKey, float] = {
    ("car", "petrol", "small"): 0.167,
    ("car", "petrol", "medium"): 0.203,
    ("car", "petrol", "large"): 0.291,
    ("car", "diesel", "small"): 0.142,
    ("car", "diesel", "medium"): 0.168,
    ("car", "diesel", "large"): 0.241,
    ("car", "electric", "small"): 0.074,
    ("car", "electric", "medium"): 0.088,
    ("car", "electric", "large"): 0.115,
    ("car", "hybrid", "small"): 0.132,
    ("car", "hybrid", "medium"): 0.155,
    ("car", "hybrid", "large"): 0.210,
    # taxis share the medium-car rates; occupancy is applied at calculation time
    ("taxi", "petrol", "medium"): 0.203,
    ("taxi", "diesel", "medium"): 0.168,
    ("taxi", "electric", "medium"): 0.088,
    ("taxi", "hybrid", "medium"): 0.155,
    # public transit, already averaged per passenger
    ("bus", "", ""): 0.073,
    ("subway", "", ""): 0.041,
    ("train", "", ""): 0.051,
    ("bike", "", ""): 0.0,
    ("walk", "", ""): 0.0,
}


def defra_2024_factors() -> List[EmissionFactor]:
    return [EmissionFactor(m, fuel, size, rate, DEFRA_SOURCE) for (m, fuel, size), rate in _DEFRA_2024.items()]


DATASETS = {
    "defra-2024": defra_2024_factors,
    "basic": basic_defaults,
}
