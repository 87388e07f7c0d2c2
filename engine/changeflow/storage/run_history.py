"""
Stage run history for ChangeFlow.

Every stage run that reaches an outcome (success, no-op, skipped or
failed) is recorded in the stage_runs table so failures can be diagnosed
after the fact: stage name, tick time, error kind and message.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from .database import PipelineDatabase

logger = logging.getLogger(__name__)


@dataclass
class StageRunRecord:
    """One recorded stage run.

    Attributes:
        run_id: Unique run identifier
        stage_name: Stage that ran
        tick_time: Scheduler tick that triggered the run (Unix ms)
        started_at: Run start (Unix ms)
        finished_at: Run end (Unix ms)
        outcome: success, noop, skipped or failed
        rows_written: Rows appended to the target table
        entries_consumed: Change entries consumed
        cursor_from: Cursor position before the run
        cursor_to: Cursor position after the run
        error_kind: Error kind for failed/skipped runs
        error_message: Error message for failed/skipped runs
    """

    run_id: str
    stage_name: str
    tick_time: int | None
    started_at: int
    finished_at: int
    outcome: str
    rows_written: int = 0
    entries_consumed: int = 0
    cursor_from: int | None = None
    cursor_to: int | None = None
    error_kind: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage_name,
            "tick_time": self.tick_time,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome,
            "rows_written": self.rows_written,
            "entries_consumed": self.entries_consumed,
            "cursor_from": self.cursor_from,
            "cursor_to": self.cursor_to,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


class RunHistory:
    """Persists stage run records in the pipeline database."""

    def __init__(self, database: PipelineDatabase) -> None:
        self.database = database

    async def record(self, record: StageRunRecord) -> None:
        """Insert a run record.

        Storage failures here are logged and swallowed: losing a history
        row must not turn a committed run into a failed one.
        """
        try:
            with self.database.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO stage_runs (run_id, stage_name, tick_time, started_at,
                                            finished_at, outcome, rows_written,
                                            entries_consumed, cursor_from, cursor_to,
                                            error_kind, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.run_id,
                        record.stage_name,
                        record.tick_time,
                        record.started_at,
                        record.finished_at,
                        record.outcome,
                        record.rows_written,
                        record.entries_consumed,
                        record.cursor_from,
                        record.cursor_to,
                        record.error_kind,
                        record.error_message,
                    ),
                )
        except sqlite3.Error as e:
            logger.error(
                f"Failed to record stage run: {e}",
                extra={"stage": record.stage_name, "run_id": record.run_id},
            )

    async def list_runs(
        self,
        stage_name: str | None = None,
        limit: int = 50,
    ) -> list[StageRunRecord]:
        """Most recent runs first."""
        with self.database.connection() as conn:
            if stage_name is None:
                rows = conn.execute(
                    "SELECT * FROM stage_runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM stage_runs WHERE stage_name = ?
                    ORDER BY started_at DESC, rowid DESC LIMIT ?
                    """,
                    (stage_name, limit),
                ).fetchall()

        return [
            StageRunRecord(
                run_id=row["run_id"],
                stage_name=row["stage_name"],
                tick_time=row["tick_time"],
                started_at=row["started_at"],
                finished_at=row["finished_at"],
                outcome=row["outcome"],
                rows_written=row["rows_written"],
                entries_consumed=row["entries_consumed"],
                cursor_from=row["cursor_from"],
                cursor_to=row["cursor_to"],
                error_kind=row["error_kind"],
                error_message=row["error_message"],
            )
            for row in rows
        ]
