"""
Error types for ChangeFlow.

This module defines all exception types raised by the engine:
- ChangeFlowError: Base exception
- StorageError: Table, change log and cursor storage failures
- StageError: Per-stage run failures (transform, write, cursor, gate, timeout)
- PipelineError: Pipeline definition and lookup failures

Invariants:
    - All errors inherit from ChangeFlowError
    - Errors carry a stable ``code`` for programmatic handling
    - StageError always names the stage it belongs to
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ChangeFlowError(Exception):
    """Base exception for all ChangeFlow errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CHANGEFLOW_ERROR"
        self.details = details or {}


# =============================================================================
# Storage
# =============================================================================


class StorageError(ChangeFlowError):
    """Pipeline storage operation failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="STORAGE_ERROR", details=details)


class TableNotFoundError(StorageError):
    """Table does not exist in the pipeline database."""

    def __init__(self, table_name: str) -> None:
        super().__init__(f"Table not found: {table_name}", details={"table": table_name})
        self.code = "TABLE_NOT_FOUND"
        self.table_name = table_name


class ChangeLogNotFoundError(StorageError):
    """No change log with this name is attached to any table."""

    def __init__(self, changelog_name: str) -> None:
        super().__init__(
            f"Change log not found: {changelog_name}",
            details={"changelog": changelog_name},
        )
        self.code = "CHANGELOG_NOT_FOUND"
        self.changelog_name = changelog_name


class InvalidRowError(StorageError):
    """Row payload is not a JSON-serializable mapping."""

    def __init__(self, message: str, table_name: str) -> None:
        super().__init__(message, details={"table": table_name})
        self.code = "INVALID_ROW"
        self.table_name = table_name


# =============================================================================
# Stage execution
# =============================================================================


class StageError(ChangeFlowError):
    """A stage run failed.

    Per-stage errors are local: they are recorded against the stage and
    never abort the scheduler or other stages.

    Attributes:
        stage_name: Stage the error belongs to
        kind: Short error kind used in run history and status output
    """

    kind = "stage_error"

    def __init__(
        self,
        message: str,
        stage_name: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = {"stage": stage_name}
        merged.update(details or {})
        super().__init__(message, code=self.kind.upper(), details=merged)
        self.stage_name = stage_name


class TransformError(StageError):
    """The injected transform raised on a batch, or returned non-row values."""

    kind = "transform_error"


class WriteError(StageError):
    """Appending output rows to the target table failed."""

    kind = "write_error"


class CursorConflictError(StageError):
    """Cursor was advanced or reset by someone other than this run."""

    kind = "cursor_conflict"

    def __init__(
        self,
        message: str,
        stage_name: str,
        expected_position: Optional[int] = None,
        expected_epoch: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            stage_name,
            details={
                "expected_position": expected_position,
                "expected_epoch": expected_epoch,
            },
        )
        self.expected_position = expected_position
        self.expected_epoch = expected_epoch


class GateEvaluationError(StageError):
    """Checking the change log for unconsumed entries failed.

    The stage is skipped for this tick; this does not count as a failure.
    """

    kind = "gate_error"


class StageTimeoutError(StageError):
    """Run exceeded its deadline and was cancelled before commit."""

    kind = "timeout"

    def __init__(self, stage_name: str, deadline_seconds: float) -> None:
        super().__init__(
            f"Stage '{stage_name}' exceeded deadline of {deadline_seconds}s",
            stage_name,
            details={"deadline_seconds": deadline_seconds},
        )
        self.deadline_seconds = deadline_seconds


# =============================================================================
# Pipeline definition
# =============================================================================


class PipelineError(ChangeFlowError):
    """Pipeline-level error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="PIPELINE_ERROR", details=details)


class PipelineDefinitionError(PipelineError):
    """Pipeline definition violates a structural rule.

    Raised when:
    - Two stages share a name or a target table
    - An AfterStage parent does not exist
    - Stages form a cycle through their tables
    - A definition file is malformed
    """

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message, details={"errors": errors or []})
        self.code = "PIPELINE_DEFINITION_ERROR"
        self.errors = errors or []


class StageNotFoundError(PipelineError):
    """No stage with this name is registered."""

    def __init__(self, stage_name: str) -> None:
        super().__init__(f"Stage not found: {stage_name}", details={"stage": stage_name})
        self.code = "STAGE_NOT_FOUND"
        self.stage_name = stage_name
