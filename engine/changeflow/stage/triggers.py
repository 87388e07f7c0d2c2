"""
Stage triggers.

A stage is triggered either by a timer (a fixed interval or a cron
expression) or by the successful completion of a parent stage.

Schedule strings follow the task SCHEDULE clause:
    "1 minute", "30 seconds", "2 hours", "90" (seconds)
    "USING CRON */5 * * * *"
    "USING CRON 0 9 * * * Europe/Paris"
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

_UNIT_SECONDS = {
    "s": 1,
    "sec": 1,
    "second": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "h": 3600,
    "hour": 3600,
}

_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")
_CRON_PREFIX = "USING CRON"


@dataclass(frozen=True)
class Interval:
    """Fire once per elapsed interval."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError(f"Interval must be positive, got {self.seconds}")

    def first_fire(self, now: datetime) -> datetime:
        """Interval stages are due on the first tick after they are scheduled."""
        return now

    def next_fire(self, after: datetime) -> datetime:
        return after + timedelta(seconds=self.seconds)

    def __str__(self) -> str:
        return f"every {self.seconds:g}s"


@dataclass(frozen=True)
class Cron:
    """Fire at the times matched by a cron expression."""

    expression: str
    timezone: str | None = None

    def __post_init__(self) -> None:
        if not croniter.is_valid(self.expression):
            raise ValueError(f"Invalid cron expression: {self.expression}")
        if self.timezone:
            try:
                ZoneInfo(self.timezone)
            except ZoneInfoNotFoundError as e:
                raise ValueError(f"Unknown cron timezone: {self.timezone}") from e

    def first_fire(self, now: datetime) -> datetime:
        return self.next_fire(now)

    def next_fire(self, after: datetime) -> datetime:
        start = after.astimezone(ZoneInfo(self.timezone)) if self.timezone else after
        return croniter(self.expression, start).get_next(datetime)

    def __str__(self) -> str:
        suffix = f" {self.timezone}" if self.timezone else ""
        return f"cron {self.expression}{suffix}"


@dataclass(frozen=True)
class AfterStage:
    """Fire right after the parent stage finishes with success or no-op."""

    parent: str

    def __str__(self) -> str:
        return f"after {self.parent}"


Trigger = Union[Interval, Cron, AfterStage]
TimerTrigger = Union[Interval, Cron]


def parse_schedule(text: str | int | float) -> TimerTrigger:
    """Parse a schedule string into a timer trigger.

    Raises:
        ValueError: If the schedule is not understood
    """
    if isinstance(text, (int, float)):
        return Interval(float(text))

    stripped = text.strip()
    if stripped.upper().startswith(_CRON_PREFIX):
        fields = stripped[len(_CRON_PREFIX):].split()
        if len(fields) == 6:
            return Cron(" ".join(fields[:5]), timezone=fields[5])
        return Cron(" ".join(fields))

    match = _INTERVAL_RE.match(stripped)
    if not match:
        raise ValueError(f"Invalid schedule: {text!r}")

    value, unit = match.groups()
    unit = unit.lower().rstrip("s") if len(unit) > 1 else unit.lower()
    if unit == "":
        unit = "s"
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"Invalid schedule unit in {text!r}")
    return Interval(float(value) * _UNIT_SECONDS[unit])


def parse_duration(text: str | int | float) -> float:
    """Parse a duration such as "30s" or "2 minutes" into seconds."""
    trigger = parse_schedule(text)
    if not isinstance(trigger, Interval):
        raise ValueError(f"Expected a duration, got {text!r}")
    return trigger.seconds
