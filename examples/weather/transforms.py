"""
Transforms for the weather pipeline.

Raw rows hold one weather observation as a nested JSON document under
the key "v". The first stage flattens it, the second converts Kelvin
temperatures to Celsius.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from engine.changeflow.stage import row_transform

KELVIN_OFFSET = 273.15
LOCAL_TIMEZONE = ZoneInfo("Europe/Paris")


def _float(value: Any) -> float | None:
    return None if value is None else float(value)


def _local_time(epoch_seconds: Any) -> str | None:
    if epoch_seconds is None:
        return None
    utc = datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)
    return utc.astimezone(LOCAL_TIMEZONE).replace(tzinfo=None).isoformat()


@row_transform
def extract_json(row: dict[str, Any]) -> dict[str, Any] | None:
    """Flatten a raw observation into a transformed_json_table row."""
    v = row.get("v")
    if not isinstance(v, dict):
        return None

    city = v.get("city") or {}
    main = v.get("main") or {}
    wind = v.get("wind") or {}
    weather = v.get("weather") or [{}]

    return {
        "date": _local_time(v.get("time")),
        "country": city.get("country"),
        "city": city.get("name"),
        "id": None if city.get("id") is None else str(city["id"]),
        "temp_kel": _float(main.get("temp")),
        "temp_min_kel": _float(main.get("temp_min")),
        "temp_max_kel": _float(main.get("temp_max")),
        "conditions": weather[0].get("main"),
        "wind_dir": _float(wind.get("deg")),
        "wind_speed": _float(wind.get("speed")),
    }


def _celsius(kelvin: float | None) -> float | None:
    return None if kelvin is None else kelvin - KELVIN_OFFSET


@row_transform
def to_celsius(row: dict[str, Any]) -> dict[str, Any]:
    """Convert a transformed row into a final_table row."""
    return {
        "date": row.get("date"),
        "country": row.get("country"),
        "city": row.get("city"),
        "id": row.get("id"),
        "temp_cel": _celsius(row.get("temp_kel")),
        "temp_min_cel": _celsius(row.get("temp_min_kel")),
        "temp_max_cel": _celsius(row.get("temp_max_kel")),
        "conditions": row.get("conditions"),
        "wind_dir": row.get("wind_dir"),
        "wind_speed": row.get("wind_speed"),
    }
