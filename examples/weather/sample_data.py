"""Deterministic raw observations for demos and tests."""

from __future__ import annotations

from typing import Any

CITIES = [
    (2988507, "Paris", "FR"),
    (2643743, "London", "GB"),
    (2950159, "Berlin", "DE"),
    (3117735, "Madrid", "ES"),
    (3169070, "Rome", "IT"),
]

CONDITIONS = ["Clear", "Clouds", "Rain", "Mist"]


def observation(index: int) -> dict[str, Any]:
    """Raw row for observation number index (0-based)."""
    city_id, city_name, country = CITIES[index % len(CITIES)]
    temp = 280.0 + index
    return {
        "v": {
            "time": 1_546_300_800 + index * 3600,
            "city": {"id": city_id, "name": city_name, "country": country},
            "main": {"temp": temp, "temp_min": temp - 1.5, "temp_max": temp + 2.0},
            "weather": [{"main": CONDITIONS[index % len(CONDITIONS)]}],
            "wind": {"deg": float(index * 30 % 360), "speed": 1.0 + index / 2},
        }
    }


def observations(count: int, start: int = 0) -> list[dict[str, Any]]:
    return [observation(i) for i in range(start, start + count)]
