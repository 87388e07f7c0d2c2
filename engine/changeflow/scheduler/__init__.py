"""
Scheduler module for ChangeFlow.

Decides when each stage runs (timer or after its parent), enforces
single-flight per stage, applies deadlines and records every outcome.
"""

from .scheduler import (
    Scheduler,
    StageFailure,
    StageRunState,
    StageState,
    StageStatus,
)

__all__ = [
    "Scheduler",
    "StageFailure",
    "StageRunState",
    "StageState",
    "StageStatus",
]
