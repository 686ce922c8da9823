# factor_loader.py
from __future__ import annotations

import json
import logging
import math
from typing import Any, List, Optional, Protocol, Sequence

import requests

from errors import ParseError, StorageError
from factors import EmissionFactor, defra_2024_factors

log = logging.getLogger("transitfootprint.loader")

CSV_COLUMNS = ("mode", "fuel_type", "vehicle_size", "kg_co2_per_km", "source")


class FactorSink(Protocol):
    def upsert_many(self, factors: Sequence[EmissionFactor]) -> int: ...


def _rate(value: Any, where: str) -> float:
    # bool is an int subclass; "true" is not a rate
    if isinstance(value, bool):
        raise ParseError(f"kg_co2_per_km must be a number ({where})")
    try:
        rate = float(value)
    except (TypeError, ValueError):
        raise ParseError(f"Failed to parse kg_co2_per_km ({where}): {value!r}") from None
    if not math.isfinite(rate) or rate < 0:
        raise ParseError(f"kg_co2_per_km must be a finite non-negative number ({where})")
    return rate


def _text(value: Any, field: str, where: str) -> str:
    if not isinstance(value, str):
        raise ParseError(f"{field} must be a string ({where})")
    return value


def load_factors_from_json(text: str) -> List[EmissionFactor]:
    """
    Parse a JSON array of factor objects.

    Required keys: mode, kg_co2_per_km. Optional: fuel_type, vehicle_size
    (default ""), source (default "UNKNOWN"), updated_at (default 0).
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ParseError(f"JSON parsing error: {e}") from e

    if not isinstance(data, list):
        raise ParseError("Expected JSON array of factors")

    factors: List[EmissionFactor] = []
    for i, item in enumerate(data):
        where = f"item {i}"
        if not isinstance(item, dict):
            raise ParseError(f"Each factor item must be a JSON object ({where})")
        if "mode" not in item or "kg_co2_per_km" not in item:
            raise ParseError(f"mode and kg_co2_per_km are required ({where})")

        if not isinstance(item["kg_co2_per_km"], (int, float)):
            raise ParseError(f"kg_co2_per_km must be a number ({where})")
        updated_at = item.get("updated_at", 0)
        if isinstance(updated_at, bool) or not isinstance(updated_at, int):
            raise ParseError(f"updated_at must be an integer ({where})")

        factors.append(EmissionFactor(
            mode=_text(item["mode"], "mode", where),
            fuel_type=_text(item.get("fuel_type", ""), "fuel_type", where),
            vehicle_size=_text(item.get("vehicle_size", ""), "vehicle_size", where),
            kg_co2_per_km=_rate(item["kg_co2_per_km"], where),
            source=_text(item.get("source", "UNKNOWN"), "source", where),
            updated_at=updated_at,
        ))
    return factors


def load_factors_from_csv(text: str) -> List[EmissionFactor]:
    """
    Parse `mode,fuel_type,vehicle_size,kg_co2_per_km,source` rows.

    The first line is a header and is skipped. Blank lines are ignored and
    every field is whitespace-trimmed.
    """
    lines = (text or "").splitlines()
    if not lines:
        raise ParseError("CSV is empty")

    factors: List[EmissionFactor] = []
    for row_num, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        fields = [f.strip() for f in line.split(",")]
        if len(fields) != len(CSV_COLUMNS):
            raise ParseError(f"CSV format error at row {row_num}: expected {len(CSV_COLUMNS)} fields, got {len(fields)}")
        mode, fuel_type, vehicle_size, kg_str, source = fields
        if not mode:
            raise ParseError(f"mode is required at row {row_num}")
        factors.append(EmissionFactor(
            mode=mode,
            fuel_type=fuel_type,
            vehicle_size=vehicle_size,
            kg_co2_per_km=_rate(kg_str, f"row {row_num}"),
            source=source or "UNKNOWN",
        ))
    return factors


def load_defra_2024() -> List[EmissionFactor]:
    return defra_2024_factors()


def _guess_format(url: str, content_type: str) -> str:
    if "json" in content_type or url.lower().endswith(".json"):
        return "json"
    return "csv"


def load_factors_from_url(url: str, fmt: Optional[str] = None, *, timeout: float = 10) -> List[EmissionFactor]:
    """Fetch a published factor file (JSON or CSV) and parse it."""
    try:
        r = requests.get(url, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        log.warning("Factor download failed (%s): %s", url, e)
        raise StorageError(f"Failed to fetch emission factors: {e}") from e

    kind = (fmt or _guess_format(url, r.headers.get("Content-Type", ""))).lower()
    if kind == "json":
        return load_factors_from_json(r.text)
    if kind == "csv":
        return load_factors_from_csv(r.text)
    raise ParseError(f"Unsupported factor format: {fmt}")


def apply_factors(table: FactorSink, factors: Sequence[EmissionFactor]) -> int:
    """Commit an already fully parsed batch in one step."""
    count = table.upsert_many(list(factors))
    log.info("Loaded %d emission factors", count)
    return count
