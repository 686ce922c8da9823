# emissions.py
from __future__ import annotations

import logging
import math
from typing import Dict, Literal, Optional, Protocol, Set, TypedDict, TypeAlias

from errors import InvalidInput
from factors import EmissionFactor, EmissionFactorTable, defra_2024_factors

log = logging.getLogger("transitfootprint.emissions")

# Allowed commute modes
Mode: TypeAlias = Literal[
    "taxi",
    "car",
    "bus",
    "subway",
    "train",
    "bike",
    "walk",
]

FALLBACK_SOURCE = "FALLBACK"


class FactorLookup(Protocol):
    def lookup(self, mode: str, fuel_type: str = "", vehicle_size: str = "") -> Optional[EmissionFactor]: ...


class EmissionEstimate(TypedDict):
    kgCO2e: float
    factor_kg_per_km: float
    mode: str
    fuel_type: str
    vehicle_size: str
    occupancy: float
    source: str


# Second tier: coarse per-mode rates, fuel type and size ignored
_FALLBACK_FACTORS: Dict[str, float] = {
    "car": 0.18,
    "taxi": 0.18,
    "bus": 0.073,
    "subway": 0.041,
    "train": 0.041,
    "underground": 0.041,
    "rail": 0.041,
    "bike": 0.0,
    "walk": 0.0,
}
_UNKNOWN_MODE_FACTOR = 0.1

# These are per-vehicle and divided by occupancy
_PER_VEHICLE: Set[str] = {"car", "taxi"}

_default_table = EmissionFactorTable(defra_2024_factors())


def default_table() -> EmissionFactorTable:
    """Detailed DEFRA 2024 table used when the caller brings none."""
    return _default_table


def fallback_factor(mode: str) -> EmissionFactor:
    rate = _FALLBACK_FACTORS.get(mode, _UNKNOWN_MODE_FACTOR)
    return EmissionFactor(mode, "", "", rate, FALLBACK_SOURCE)


def resolve_factor(
    mode: str,
    fuel_type: str = "",
    vehicle_size: str = "",
    table: Optional[FactorLookup] = None,
) -> EmissionFactor:
    """Exact-key table hit first, then the per-mode fallback."""
    precise = (table or _default_table).lookup(mode, fuel_type or "", vehicle_size or "")
    if precise is not None:
        return precise
    log.debug("No factor for (%s, %s, %s); using fallback", mode, fuel_type, vehicle_size)
    return fallback_factor(mode)


def _check_inputs(occupancy: float, distance_km: float) -> None:
    if not math.isfinite(distance_km):
        raise InvalidInput("Distance must be a finite number")
    if distance_km < 0:
        raise InvalidInput("Distance cannot be negative")
    if not math.isfinite(occupancy) or occupancy < 1.0:
        raise InvalidInput("Occupancy must be at least 1.0")


def calculate_co2(
    mode: str,
    fuel_type: str,
    vehicle_size: str,
    occupancy: float,
    distance_km: float,
    table: Optional[FactorLookup] = None,
) -> float:
    """
    kg CO₂e for one trip.

    - Private vehicles (car, taxi) split the total across occupants.
    - Transit factors are per passenger already, so occupancy is ignored.
    """
    _check_inputs(occupancy, distance_km)
    if distance_km == 0:
        return 0.0

    factor = resolve_factor(mode, fuel_type, vehicle_size, table)
    total = factor.kg_co2_per_km * distance_km
    if mode in _PER_VEHICLE:
        total = total / occupancy
    return total


def estimate_emissions(
    distance_km: float,
    mode: str,
    *,
    fuel_type: str = "",
    vehicle_size: str = "",
    occupancy: float = 1.0,
    table: Optional[FactorLookup] = None,
) -> EmissionEstimate:
    """Trip estimate with the factor and provenance that produced it."""
    _check_inputs(occupancy, distance_km)
    factor = resolve_factor(mode, fuel_type, vehicle_size, table)
    kg = calculate_co2(mode, fuel_type, vehicle_size, occupancy, distance_km, table)

    return {
        "kgCO2e": round(kg, 4),
        "factor_kg_per_km": factor.kg_co2_per_km,
        "mode": mode,
        "fuel_type": fuel_type,
        "vehicle_size": vehicle_size,
        "occupancy": occupancy if mode in _PER_VEHICLE else 1.0,
        "source": factor.source,
    }
