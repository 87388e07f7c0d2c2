"""
Change logs for ChangeFlow.

A ChangeLog is attached to exactly one Table and exposes the table's
change entries to consumers. Consumption is tracked by cursors stored
next to the entries, never by removing entries, so reads are
non-destructive and can be repeated.

Invariants:
    - Entries are returned in ascending sequence_id order
    - A consumer sees only entries with sequence_id > its cursor position
    - A log starts at the table high-water mark at creation time; rows
      appended before the log existed are not visible through it
    - Re-creating a log bumps its epoch and resets all of its cursors
    - Cursors only move through advance_cursor(), a compare-and-set on
      (epoch, position) inside the caller's transaction
    - Purging never deletes an entry a registered cursor has not passed;
      stages register their cursor when they are constructed

How to change safely:
    - Never advance a cursor outside the transaction that applies the
      consumer's writes
    - Keep has_unconsumed() a single-row lookup; stages call it every tick
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import ChangeLogNotFoundError, CursorConflictError, TableNotFoundError
from .database import PipelineDatabase

if TYPE_CHECKING:
    from .table import Table

logger = logging.getLogger(__name__)


class ChangeOperation(str, Enum):
    """Kind of mutation recorded in a change entry."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeLogEntry:
    """One recorded mutation of a table.

    Attributes:
        table_name: Table that was mutated
        sequence_id: Per-table monotonically increasing sequence
        operation: INSERT, UPDATE or DELETE
        row_id: Affected row
        row_snapshot: Row payload after the mutation (before it, for DELETE)
        created_at: Mutation timestamp (Unix ms)
    """

    table_name: str
    sequence_id: int
    operation: ChangeOperation
    row_id: str
    row_snapshot: dict[str, Any]
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table_name,
            "sequence_id": self.sequence_id,
            "operation": self.operation.value,
            "row_id": self.row_id,
            "row_snapshot": self.row_snapshot,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ConsumptionCursor:
    """A consumer's bookmark into a change log.

    Attributes:
        changelog_name: Change log the cursor reads
        consumer: Consumer name (the stage name)
        epoch: Change log epoch the position belongs to
        position: Highest sequence_id already consumed
    """

    changelog_name: str
    consumer: str
    epoch: int
    position: int

    def __str__(self) -> str:
        return f"{self.changelog_name}:{self.consumer}@{self.position}"


class ChangeLog:
    """Ordered, replayable view of one table's mutations.

    Example:
        >>> log = await ChangeLog.create(db, "raw_data_stream", raw_table)
        >>> cursor = await log.cursor("extract_json_data")
        >>> if await log.has_unconsumed(cursor):
        ...     async for entry in log.peek_unconsumed(cursor):
        ...         print(entry.sequence_id, entry.operation)
    """

    def __init__(
        self,
        database: PipelineDatabase,
        name: str,
        table_name: str,
        page_size: int = 500,
    ) -> None:
        """Bind to an existing change log row.

        Use create() or open() rather than calling this directly.

        Args:
            database: Pipeline database
            name: Change log name
            table_name: Table the log is attached to
            page_size: Entries fetched per query while iterating
        """
        self.database = database
        self.name = name
        self.table_name = table_name
        self.page_size = page_size

    @classmethod
    async def create(
        cls,
        database: PipelineDatabase,
        name: str,
        table: Table,
        replace: bool = False,
        page_size: int = 500,
    ) -> ChangeLog:
        """Attach a change log to a table.

        With replace=False an existing log of the same name is reused
        as-is. With replace=True the log restarts at the table's current
        high-water mark under a new epoch and its cursors are dropped.

        Raises:
            TableNotFoundError: If the table does not exist
            ValueError: If another log is already attached to the table
        """
        database.initialize()
        now = _now_ms()

        with database.transaction() as conn:
            table_row = conn.execute(
                "SELECT last_sequence FROM tables WHERE table_name = ?", (table.name,)
            ).fetchone()
            if table_row is None:
                raise TableNotFoundError(table.name)
            high_water = table_row["last_sequence"]

            existing = conn.execute(
                "SELECT * FROM changelogs WHERE changelog_name = ?", (name,)
            ).fetchone()
            attached = conn.execute(
                "SELECT changelog_name FROM changelogs WHERE table_name = ?", (table.name,)
            ).fetchone()
            if attached is not None and attached["changelog_name"] != name:
                raise ValueError(
                    f"Table '{table.name}' already has change log "
                    f"'{attached['changelog_name']}' attached"
                )

            if existing is None:
                conn.execute(
                    """
                    INSERT INTO changelogs (changelog_name, table_name, epoch,
                                            start_sequence, created_at)
                    VALUES (?, ?, 1, ?, ?)
                    """,
                    (name, table.name, high_water, now),
                )
                logger.info(
                    "Created change log",
                    extra={"changelog": name, "table": table.name, "start": high_water},
                )
            elif existing["table_name"] != table.name:
                raise ValueError(
                    f"Change log '{name}' is attached to '{existing['table_name']}', "
                    f"not '{table.name}'"
                )
            elif replace:
                conn.execute(
                    """
                    UPDATE changelogs
                    SET epoch = epoch + 1, start_sequence = ?, created_at = ?
                    WHERE changelog_name = ?
                    """,
                    (high_water, now, name),
                )
                conn.execute("DELETE FROM cursors WHERE changelog_name = ?", (name,))
                logger.info(
                    "Re-created change log, cursors reset",
                    extra={"changelog": name, "table": table.name, "start": high_water},
                )

        return cls(database, name, table.name, page_size=page_size)

    @classmethod
    async def open(
        cls,
        database: PipelineDatabase,
        name: str,
        page_size: int = 500,
    ) -> ChangeLog:
        """Open an existing change log by name.

        Raises:
            ChangeLogNotFoundError: If no log has this name
        """
        database.initialize()
        with database.connection() as conn:
            row = conn.execute(
                "SELECT table_name FROM changelogs WHERE changelog_name = ?", (name,)
            ).fetchone()
        if row is None:
            raise ChangeLogNotFoundError(name)
        return cls(database, name, row["table_name"], page_size=page_size)

    async def drop(self) -> None:
        """Detach the log from its table and drop its cursors."""
        with self.database.transaction() as conn:
            conn.execute("DELETE FROM cursors WHERE changelog_name = ?", (self.name,))
            conn.execute("DELETE FROM changelogs WHERE changelog_name = ?", (self.name,))
        logger.info("Dropped change log", extra={"changelog": self.name})

    async def cursor(self, consumer: str) -> ConsumptionCursor:
        """Get a consumer's cursor, registering it at the log start if new.

        A cursor left over from an earlier epoch is re-registered at the
        current start.
        """
        return self.register_consumer(consumer)

    def register_consumer(self, consumer: str) -> ConsumptionCursor:
        """Synchronous form of cursor().

        Stages call this when they are constructed so that purge_consumed()
        holds back every entry a declared consumer has not read yet.
        """
        now = _now_ms()
        with self.database.transaction() as conn:
            epoch, start_sequence, _ = self._log_state(conn)
            row = conn.execute(
                "SELECT epoch, position FROM cursors WHERE changelog_name = ? AND consumer = ?",
                (self.name, consumer),
            ).fetchone()

            if row is not None and row["epoch"] == epoch:
                return ConsumptionCursor(self.name, consumer, epoch, row["position"])

            conn.execute(
                """
                INSERT OR REPLACE INTO cursors (changelog_name, consumer, epoch,
                                                position, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (self.name, consumer, epoch, start_sequence, now),
            )

        logger.debug(
            "Registered cursor",
            extra={"changelog": self.name, "consumer": consumer, "position": start_sequence},
        )
        return ConsumptionCursor(self.name, consumer, epoch, start_sequence)

    async def has_unconsumed(
        self,
        cursor: ConsumptionCursor,
        upto: int | None = None,
    ) -> bool:
        """Whether any entry exists after the cursor.

        A single-row lookup comparing the table high-water mark with the
        cursor position.

        Args:
            cursor: Consumer cursor
            upto: Optional inclusive upper bound on sequence_id

        Raises:
            CursorConflictError: If the log was re-created since the
                cursor was read
        """
        with self.database.connection() as conn:
            epoch, _, high_water = self._log_state(conn)
        self._check_epoch(cursor, epoch)
        if upto is not None:
            high_water = min(high_water, upto)
        return high_water > cursor.position

    async def peek_unconsumed(
        self,
        cursor: ConsumptionCursor,
        upto: int | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[ChangeLogEntry]:
        """Yield entries after the cursor in sequence order.

        The upper bound is fixed when iteration starts, so the sequence is
        finite even while the table keeps growing. Pages are fetched
        lazily with keyset pagination on sequence_id.

        Args:
            cursor: Consumer cursor
            upto: Optional inclusive upper bound on sequence_id
            limit: Optional maximum number of entries to yield

        Yields:
            ChangeLogEntry objects
        """
        with self.database.connection() as conn:
            epoch, _, high_water = self._log_state(conn)
        self._check_epoch(cursor, epoch)
        if upto is not None:
            high_water = min(high_water, upto)

        position = cursor.position
        remaining = limit
        while position < high_water and (remaining is None or remaining > 0):
            page_size = self.page_size if remaining is None else min(self.page_size, remaining)
            page = self._read_page(position, high_water, page_size)
            if not page:
                break
            for entry in page:
                yield entry
            position = page[-1].sequence_id
            if remaining is not None:
                remaining -= len(page)

    async def pending_count(self, cursor: ConsumptionCursor) -> int:
        """Number of entries after the cursor."""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM change_entries WHERE table_name = ? AND sequence_id > ?",
                (self.table_name, cursor.position),
            ).fetchone()
        return int(row[0])

    def advance_cursor(
        self,
        conn: sqlite3.Connection,
        cursor: ConsumptionCursor,
        new_position: int,
        now: int | None = None,
    ) -> ConsumptionCursor:
        """Move a cursor forward inside the caller's transaction.

        Compare-and-set: succeeds only if the stored cursor still has the
        epoch and position the caller read.

        Raises:
            CursorConflictError: If the stored cursor changed
            ValueError: If new_position is behind the cursor
        """
        if new_position < cursor.position:
            raise ValueError(
                f"Cannot move cursor {cursor} backwards to {new_position}"
            )

        result = conn.execute(
            """
            UPDATE cursors SET position = ?, updated_at = ?
            WHERE changelog_name = ? AND consumer = ? AND epoch = ? AND position = ?
            """,
            (
                new_position,
                now or _now_ms(),
                cursor.changelog_name,
                cursor.consumer,
                cursor.epoch,
                cursor.position,
            ),
        )
        if result.rowcount != 1:
            raise CursorConflictError(
                f"Cursor {cursor} was moved or reset concurrently",
                stage_name=cursor.consumer,
                expected_position=cursor.position,
                expected_epoch=cursor.epoch,
            )

        return ConsumptionCursor(
            cursor.changelog_name, cursor.consumer, cursor.epoch, new_position
        )

    async def purge_consumed(self) -> int:
        """Delete entries that every registered cursor has already passed.

        Entries before the log start are purged too; they are invisible
        through this log. The log start then moves up to the purge floor,
        so a consumer registered later starts at the oldest retained entry.

        Returns:
            Number of entries deleted
        """
        with self.database.transaction() as conn:
            epoch, start_sequence, _ = self._log_state(conn)
            row = conn.execute(
                "SELECT MIN(position) FROM cursors WHERE changelog_name = ? AND epoch = ?",
                (self.name, epoch),
            ).fetchone()
            floor = row[0] if row[0] is not None else start_sequence
            result = conn.execute(
                "DELETE FROM change_entries WHERE table_name = ? AND sequence_id <= ?",
                (self.table_name, floor),
            )
            deleted = result.rowcount
            if floor > start_sequence:
                conn.execute(
                    "UPDATE changelogs SET start_sequence = ? WHERE changelog_name = ?",
                    (floor, self.name),
                )

        logger.info(
            "Purged consumed change entries",
            extra={"changelog": self.name, "upto": floor, "deleted": deleted},
        )
        return deleted

    async def describe(self) -> dict[str, Any]:
        """Summary of the log and its cursors."""
        with self.database.connection() as conn:
            epoch, start_sequence, high_water = self._log_state(conn)
            cursors = conn.execute(
                """
                SELECT consumer, position, updated_at FROM cursors
                WHERE changelog_name = ? AND epoch = ? ORDER BY consumer
                """,
                (self.name, epoch),
            ).fetchall()

        return {
            "name": self.name,
            "table": self.table_name,
            "epoch": epoch,
            "start_sequence": start_sequence,
            "high_water": high_water,
            "cursors": [
                {
                    "consumer": c["consumer"],
                    "position": c["position"],
                    "pending": high_water - c["position"],
                    "updated_at": c["updated_at"],
                }
                for c in cursors
            ],
        }

    def _log_state(self, conn: sqlite3.Connection) -> tuple[int, int, int]:
        row = conn.execute(
            """
            SELECT c.epoch, c.start_sequence, t.last_sequence
            FROM changelogs c JOIN tables t ON t.table_name = c.table_name
            WHERE c.changelog_name = ?
            """,
            (self.name,),
        ).fetchone()
        if row is None:
            raise ChangeLogNotFoundError(self.name)
        return row["epoch"], row["start_sequence"], row["last_sequence"]

    def _check_epoch(self, cursor: ConsumptionCursor, epoch: int) -> None:
        if cursor.epoch != epoch:
            raise CursorConflictError(
                f"Change log '{self.name}' was re-created (epoch {epoch}); "
                f"cursor {cursor} is stale",
                stage_name=cursor.consumer,
                expected_position=cursor.position,
                expected_epoch=cursor.epoch,
            )

    def _read_page(self, after: int, upto: int, page_size: int) -> list[ChangeLogEntry]:
        with self.database.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM change_entries
                WHERE table_name = ? AND sequence_id > ? AND sequence_id <= ?
                ORDER BY sequence_id ASC
                LIMIT ?
                """,
                (self.table_name, after, upto, page_size),
            ).fetchall()

        return [
            ChangeLogEntry(
                table_name=row["table_name"],
                sequence_id=row["sequence_id"],
                operation=ChangeOperation(row["operation"]),
                row_id=row["row_id"],
                row_snapshot=json.loads(row["row_snapshot_json"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def __repr__(self) -> str:
        return f"ChangeLog({self.name!r}, table={self.table_name!r})"


async def list_changelogs(database: PipelineDatabase) -> list[ChangeLog]:
    """All change logs in a pipeline database, ordered by name."""
    database.initialize()
    with database.connection() as conn:
        rows = conn.execute(
            "SELECT changelog_name, table_name FROM changelogs ORDER BY changelog_name"
        ).fetchall()
    return [ChangeLog(database, row["changelog_name"], row["table_name"]) for row in rows]


def _now_ms() -> int:
    return int(time.time() * 1000)
