"""
Stage module for ChangeFlow - transform execution.

A stage consumes one change log, applies an injected transform and
writes to one target table, committing output and cursor together.
"""

from .stage import (
    ChangeBatch,
    OutcomeKind,
    RunOutcome,
    Stage,
    StageContext,
    Transform,
)
from .transforms import inserts_only, passthrough, resolve_transform, row_transform
from .triggers import AfterStage, Cron, Interval, Trigger, parse_duration, parse_schedule

__all__ = [
    "Stage",
    "StageContext",
    "ChangeBatch",
    "RunOutcome",
    "OutcomeKind",
    "Transform",
    # Transforms
    "inserts_only",
    "passthrough",
    "resolve_transform",
    "row_transform",
    # Triggers
    "Trigger",
    "Interval",
    "Cron",
    "AfterStage",
    "parse_schedule",
    "parse_duration",
]
