"""
Stage execution for ChangeFlow.

A Stage reads the unconsumed entries of one change log, hands them to an
injected transform, appends the transform's output to its target table
and advances its cursor. The append and the cursor advance are one
SQLite transaction.

Invariants:
    - If the gate says nothing is unconsumed, run() touches nothing
    - The cursor moves only together with the output rows of the same run
    - Any failure before COMMIT leaves cursor and target exactly as they
      were, so a retry re-reads the same range and reproduces the result
    - There is no await between BEGIN and COMMIT; cancelling a run can
      only ever abort it before it commits

How to change safely:
    - Keep the commit synchronous
    - Test retries with failures injected between append and cursor advance
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import (
    ChangeFlowError,
    CursorConflictError,
    GateEvaluationError,
    PipelineDefinitionError,
    StorageError,
    TransformError,
    WriteError,
)
from ..storage.changelog import ChangeLog, ChangeLogEntry, ChangeOperation, ConsumptionCursor
from ..storage.table import Table
from .triggers import Trigger

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    NOOP = "noop"


@dataclass(frozen=True)
class RunOutcome:
    """Result of a stage run that did not fail.

    Attributes:
        kind: SUCCESS (entries consumed) or NOOP (nothing to do)
        rows_written: Rows appended to the target table
        entries_consumed: Change entries consumed
        cursor_from: Cursor position before the run
        cursor_to: Cursor position after the run
        reason: Why a NOOP did nothing
    """

    kind: OutcomeKind
    rows_written: int = 0
    entries_consumed: int = 0
    cursor_from: int | None = None
    cursor_to: int | None = None
    reason: str | None = None

    @classmethod
    def success(
        cls,
        rows_written: int,
        entries_consumed: int,
        cursor_from: int,
        cursor_to: int,
    ) -> RunOutcome:
        return cls(
            kind=OutcomeKind.SUCCESS,
            rows_written=rows_written,
            entries_consumed=entries_consumed,
            cursor_from=cursor_from,
            cursor_to=cursor_to,
        )

    @classmethod
    def noop(cls, reason: str = "no_unconsumed_changes") -> RunOutcome:
        return cls(kind=OutcomeKind.NOOP, reason=reason)

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "rows_written": self.rows_written,
            "entries_consumed": self.entries_consumed,
            "cursor_from": self.cursor_from,
            "cursor_to": self.cursor_to,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class StageContext:
    """Invocation context passed explicitly to every transform.

    Attributes:
        stage_name: Stage being run
        run_id: Unique id of this run
        tick_time: Scheduler tick (or manual trigger time) of this run
    """

    stage_name: str
    run_id: str
    tick_time: datetime

    @classmethod
    def new(cls, stage_name: str, tick_time: datetime | None = None) -> StageContext:
        return cls(
            stage_name=stage_name,
            run_id=str(uuid.uuid4()),
            tick_time=tick_time or datetime.now(timezone.utc),
        )


@dataclass
class ChangeBatch:
    """Entries handed to a transform in one run."""

    entries: list[ChangeLogEntry]
    context: StageContext

    def of(self, *operations: ChangeOperation) -> list[ChangeLogEntry]:
        """Entries with one of the given operations, in sequence order."""
        return [e for e in self.entries if e.operation in operations]

    def inserted_rows(self) -> list[dict[str, Any]]:
        """Snapshots of INSERT entries, the usual input of append-only stages."""
        return [dict(e.row_snapshot) for e in self.of(ChangeOperation.INSERT)]

    @property
    def max_sequence_id(self) -> int:
        return self.entries[-1].sequence_id

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ChangeLogEntry]:
        return iter(self.entries)


Transform = Callable[[ChangeBatch], Iterable[Mapping[str, Any]]]


class Stage:
    """A scheduled unit turning one table's changes into another table's rows.

    The stage consumes its source change log under a cursor named after
    the stage, so no two stages ever share a cursor.

    Example:
        >>> stage = Stage(
        ...     name="extract_json_data",
        ...     source=raw_data_stream,
        ...     target=transformed_json_table,
        ...     transform=inserts_only(extract_weather),
        ...     trigger=Interval(60),
        ... )
        >>> outcome = await stage.run()
    """

    def __init__(
        self,
        name: str,
        source: ChangeLog,
        target: Table,
        transform: Transform,
        trigger: Trigger,
        max_batch_entries: int | None = None,
        deadline_seconds: float | None = None,
        description: str = "",
    ) -> None:
        """Create a stage.

        Args:
            name: Unique stage name (also the cursor consumer name)
            source: Change log to consume
            target: Table the stage appends to
            transform: Batch-in/rows-out function
            trigger: Interval, Cron or AfterStage
            max_batch_entries: Cap on entries consumed per run
            deadline_seconds: Per-run deadline enforced by the scheduler
            description: Free-form description shown in status output

        Raises:
            PipelineDefinitionError: If source and target live in different
                databases, or the stage reads its own target
        """
        if source.database.path != target.database.path:
            raise PipelineDefinitionError(
                f"Stage '{name}': source and target must share one pipeline database"
            )
        if source.table_name == target.name:
            raise PipelineDefinitionError(
                f"Stage '{name}': cannot consume changes of its own target '{target.name}'"
            )
        if max_batch_entries is not None and max_batch_entries <= 0:
            raise PipelineDefinitionError(
                f"Stage '{name}': max_batch_entries must be positive"
            )

        self.name = name
        self.source = source
        self.target = target
        self.transform = transform
        self.trigger = trigger
        self.max_batch_entries = max_batch_entries
        self.deadline_seconds = deadline_seconds
        self.description = description

        # Claim the source entries before anything can purge them
        source.register_consumer(name)

    async def cursor(self) -> ConsumptionCursor:
        return await self.source.cursor(self.name)

    async def has_unconsumed(self, upto: int | None = None) -> bool:
        """Gate predicate: is there anything for this stage to consume?

        Raises:
            GateEvaluationError: If the change log could not be queried
        """
        _, has_data = await self._gate(upto)
        return has_data

    async def _gate(self, upto: int | None) -> tuple[ConsumptionCursor, bool]:
        try:
            cursor = await self.cursor()
            return cursor, await self.source.has_unconsumed(cursor, upto=upto)
        except (ChangeFlowError, sqlite3.Error) as e:
            raise GateEvaluationError(
                f"Gate check failed for stage '{self.name}': {e}", self.name
            ) from e

    async def run(
        self,
        upto: int | None = None,
        context: StageContext | None = None,
    ) -> RunOutcome:
        """Consume unconsumed entries, write output, advance the cursor.

        Args:
            upto: Optional inclusive bound on the sequence_ids consumed
            context: Invocation context (a fresh one is created if omitted)

        Returns:
            RunOutcome.success or RunOutcome.noop

        Raises:
            GateEvaluationError: If the change log could not be queried
            TransformError: If the transform failed on the batch
            WriteError: If appending output or committing failed
            CursorConflictError: If the cursor moved under this run, or the
                entries after it were purged
        """
        context = context or StageContext.new(self.name)

        cursor, has_data = await self._gate(upto)
        if not has_data:
            logger.debug("Stage has no unconsumed changes", extra={"stage": self.name})
            return RunOutcome.noop()

        try:
            entries = [
                entry
                async for entry in self.source.peek_unconsumed(
                    cursor, upto=upto, limit=self.max_batch_entries
                )
            ]
        except CursorConflictError:
            raise
        except (ChangeFlowError, sqlite3.Error) as e:
            raise GateEvaluationError(
                f"Reading change log failed for stage '{self.name}': {e}", self.name
            ) from e

        if not entries or entries[0].sequence_id != cursor.position + 1:
            raise CursorConflictError(
                f"Change log '{self.source.name}' no longer holds the entries after "
                f"{cursor}; they were purged before this stage consumed them",
                stage_name=self.name,
                expected_position=cursor.position,
                expected_epoch=cursor.epoch,
            )

        batch = ChangeBatch(entries=entries, context=context)
        rows = await asyncio.to_thread(self._apply_transform, batch)

        new_position = batch.max_sequence_id
        written = self._commit(cursor, rows, new_position)

        logger.info(
            "Stage run committed",
            extra={
                "stage": self.name,
                "run_id": context.run_id,
                "entries": len(entries),
                "rows": written,
                "cursor_from": cursor.position,
                "cursor_to": new_position,
            },
        )
        return RunOutcome.success(
            rows_written=written,
            entries_consumed=len(entries),
            cursor_from=cursor.position,
            cursor_to=new_position,
        )

    def _apply_transform(self, batch: ChangeBatch) -> list[Mapping[str, Any]]:
        try:
            rows = list(self.transform(batch) or [])
        except Exception as e:
            raise TransformError(
                f"Transform of stage '{self.name}' failed on entries "
                f"{batch.entries[0].sequence_id}..{batch.max_sequence_id}: {e}",
                self.name,
                details={"error_type": type(e).__name__},
            ) from e

        for row in rows:
            if not isinstance(row, Mapping):
                raise TransformError(
                    f"Transform of stage '{self.name}' returned {type(row).__name__}, "
                    "expected a mapping",
                    self.name,
                )
        return rows

    def _commit(
        self,
        cursor: ConsumptionCursor,
        rows: list[Mapping[str, Any]],
        new_position: int,
    ) -> int:
        now = int(time.time() * 1000)
        try:
            with self.target.database.transaction() as conn:
                inserted = self.target.insert_rows(conn, rows, now=now)
                self.source.advance_cursor(conn, cursor, new_position, now=now)
        except CursorConflictError:
            logger.error(
                "Cursor conflict, run rolled back",
                extra={"stage": self.name, "cursor": str(cursor)},
            )
            raise
        except (StorageError, sqlite3.Error) as e:
            raise WriteError(
                f"Writing {len(rows)} rows to '{self.target.name}' failed: {e}",
                self.name,
                details={"table": self.target.name},
            ) from e
        return len(inserted)

    def __repr__(self) -> str:
        return f"Stage({self.name!r}, {self.source.name} -> {self.target.name}, {self.trigger})"
