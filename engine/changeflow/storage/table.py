"""
Tables for ChangeFlow.

A Table is an ordered-by-insertion relation of JSON rows stored in the
pipeline database. Every mutation also writes a change entry carrying
the next per-table sequence_id, in the same transaction as the mutation,
so a change log attached to the table can replay it.

Invariants:
    - sequence_id is issued by bumping tables.last_sequence, never reused
    - A row mutation and its change entry commit together
    - Deletes still emit an entry (carrying the last row snapshot)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ..errors import InvalidRowError, TableNotFoundError
from .changelog import ChangeOperation
from .database import PipelineDatabase

logger = logging.getLogger(__name__)


@dataclass
class TableRow:
    """A materialized row.

    Attributes:
        table_name: Owning table
        row_id: Unique row identifier (UUID)
        payload: Row fields
        sequence_id: Sequence of the INSERT that created the row
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    table_name: str
    row_id: str
    payload: dict[str, Any]
    sequence_id: int
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_id": self.row_id,
            "sequence_id": self.sequence_id,
            "payload": self.payload,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Table:
    """Append/update-capable relation with automatic change capture.

    Example:
        >>> raw = await Table.create(db, "raw_json_table")
        >>> row = await raw.append({"v": {"city": {"name": "Paris"}}})
        >>> await raw.last_sequence()
        1
    """

    def __init__(self, database: PipelineDatabase, name: str) -> None:
        self.database = database
        self.name = name

    @classmethod
    async def create(cls, database: PipelineDatabase, name: str) -> Table:
        """Register a table, or return the existing one with this name."""
        database.initialize()
        with database.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO tables (table_name, last_sequence, created_at) "
                "VALUES (?, 0, ?)",
                (name, _now_ms()),
            )
        logger.debug("Registered table", extra={"table": name})
        return cls(database, name)

    @classmethod
    async def open(cls, database: PipelineDatabase, name: str) -> Table:
        """Open an existing table.

        Raises:
            TableNotFoundError: If the table was never created
        """
        database.initialize()
        with database.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM tables WHERE table_name = ?", (name,)
            ).fetchone()
        if row is None:
            raise TableNotFoundError(name)
        return cls(database, name)

    async def append(self, row: Mapping[str, Any]) -> TableRow:
        """Append one row and emit its INSERT entry."""
        rows = await self.append_many([row])
        return rows[0]

    async def append_many(self, rows: Iterable[Mapping[str, Any]]) -> list[TableRow]:
        """Append rows in one transaction, one INSERT entry each.

        Raises:
            InvalidRowError: If a row is not a JSON-serializable mapping
        """
        with self.database.transaction() as conn:
            inserted = self.insert_rows(conn, rows)

        logger.debug("Appended rows", extra={"table": self.name, "count": len(inserted)})
        return inserted

    def insert_rows(
        self,
        conn: sqlite3.Connection,
        rows: Iterable[Mapping[str, Any]],
        now: int | None = None,
    ) -> list[TableRow]:
        """Insert rows on a connection with an open transaction.

        The caller owns the transaction; nothing here commits.
        """
        now = now or _now_ms()
        inserted = []
        for row in rows:
            payload = self._validate(row)
            payload_json = self._dumps(payload)
            row_id = str(uuid.uuid4())
            sequence_id = self._record_change(
                conn, ChangeOperation.INSERT, row_id, payload_json, now
            )
            conn.execute(
                """
                INSERT INTO table_rows (table_name, row_id, sequence_id, payload_json,
                                        created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self.name, row_id, sequence_id, payload_json, now, now),
            )
            inserted.append(
                TableRow(
                    table_name=self.name,
                    row_id=row_id,
                    payload=payload,
                    sequence_id=sequence_id,
                    created_at=now,
                    updated_at=now,
                )
            )
        return inserted

    async def update(self, row_id: str, patch: Mapping[str, Any]) -> TableRow | None:
        """Merge patch into a row and emit an UPDATE entry.

        Returns:
            Updated row or None if not found
        """
        patch = self._validate(patch)
        now = _now_ms()

        with self.database.transaction() as conn:
            existing = conn.execute(
                "SELECT * FROM table_rows WHERE table_name = ? AND row_id = ?",
                (self.name, row_id),
            ).fetchone()
            if existing is None:
                return None

            payload = json.loads(existing["payload_json"])
            payload.update(patch)
            payload_json = self._dumps(payload)

            self._record_change(conn, ChangeOperation.UPDATE, row_id, payload_json, now)
            conn.execute(
                "UPDATE table_rows SET payload_json = ?, updated_at = ? "
                "WHERE table_name = ? AND row_id = ?",
                (payload_json, now, self.name, row_id),
            )

        return TableRow(
            table_name=self.name,
            row_id=row_id,
            payload=payload,
            sequence_id=existing["sequence_id"],
            created_at=existing["created_at"],
            updated_at=now,
        )

    async def delete(self, row_id: str) -> bool:
        """Delete a row and emit a DELETE entry with its last snapshot.

        Returns:
            True if deleted, False if not found
        """
        now = _now_ms()
        with self.database.transaction() as conn:
            existing = conn.execute(
                "SELECT payload_json FROM table_rows WHERE table_name = ? AND row_id = ?",
                (self.name, row_id),
            ).fetchone()
            if existing is None:
                return False

            self._record_change(
                conn, ChangeOperation.DELETE, row_id, existing["payload_json"], now
            )
            conn.execute(
                "DELETE FROM table_rows WHERE table_name = ? AND row_id = ?",
                (self.name, row_id),
            )
        return True

    async def get(self, row_id: str) -> TableRow | None:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM table_rows WHERE table_name = ? AND row_id = ?",
                (self.name, row_id),
            ).fetchone()
        return self._row_to_table_row(row) if row else None

    async def scan(self, limit: int | None = None, offset: int = 0) -> list[TableRow]:
        """Return current contents in insertion order."""
        with self.database.connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM table_rows WHERE table_name = ?
                ORDER BY sequence_id ASC
                LIMIT ? OFFSET ?
                """,
                (self.name, -1 if limit is None else limit, offset),
            )
            return [self._row_to_table_row(row) for row in cursor.fetchall()]

    async def count(self) -> int:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM table_rows WHERE table_name = ?", (self.name,)
            ).fetchone()
        return int(row[0])

    async def last_sequence(self) -> int:
        """Highest sequence_id issued for this table (0 if never mutated)."""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT last_sequence FROM tables WHERE table_name = ?", (self.name,)
            ).fetchone()
        if row is None:
            raise TableNotFoundError(self.name)
        return int(row["last_sequence"])

    def _record_change(
        self,
        conn: sqlite3.Connection,
        operation: ChangeOperation,
        row_id: str,
        snapshot_json: str,
        now: int,
    ) -> int:
        cursor = conn.execute(
            "UPDATE tables SET last_sequence = last_sequence + 1 WHERE table_name = ?",
            (self.name,),
        )
        if cursor.rowcount == 0:
            raise TableNotFoundError(self.name)
        sequence_id = conn.execute(
            "SELECT last_sequence FROM tables WHERE table_name = ?", (self.name,)
        ).fetchone()[0]

        conn.execute(
            """
            INSERT INTO change_entries (table_name, sequence_id, operation, row_id,
                                        row_snapshot_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (self.name, sequence_id, operation.value, row_id, snapshot_json, now),
        )
        return int(sequence_id)

    def _validate(self, row: Any) -> dict[str, Any]:
        if not isinstance(row, Mapping):
            raise InvalidRowError(
                f"Row for table '{self.name}' must be a mapping, got {type(row).__name__}",
                self.name,
            )
        return dict(row)

    def _dumps(self, payload: dict[str, Any]) -> str:
        try:
            return json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise InvalidRowError(
                f"Row for table '{self.name}' is not JSON-serializable: {e}", self.name
            ) from e

    def _row_to_table_row(self, row: sqlite3.Row) -> TableRow:
        return TableRow(
            table_name=row["table_name"],
            row_id=row["row_id"],
            payload=json.loads(row["payload_json"]),
            sequence_id=row["sequence_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def __repr__(self) -> str:
        return f"Table({self.name!r})"


def _now_ms() -> int:
    return int(time.time() * 1000)
