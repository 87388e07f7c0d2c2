"""
Pipeline SQLite database for ChangeFlow.

Every table, change log entry, consumption cursor and stage run of one
pipeline lives in a single SQLite file. Keeping them in one file is what
lets a stage append its output rows and advance its cursor inside one
transaction.

Invariants:
    - One SQLite file per pipeline
    - Every multi-statement write runs inside transaction()
    - tables.last_sequence is the per-table change high-water mark and
      only ever grows

How to change safely:
    - Schema migrations must be backward compatible
    - Never write to change_entries outside a table mutation
    - Use transaction() for all write operations

Table schema:
    tables:
        - table_name TEXT PRIMARY KEY
        - last_sequence INTEGER (highest sequence_id issued)
        - created_at INTEGER (Unix ms)

    table_rows:
        - table_name TEXT
        - row_id TEXT (UUID)
        - sequence_id INTEGER (sequence of the INSERT, gives insertion order)
        - payload_json TEXT
        - created_at / updated_at INTEGER
        - PRIMARY KEY (table_name, row_id)

    change_entries:
        - table_name TEXT
        - sequence_id INTEGER
        - operation TEXT (INSERT, UPDATE, DELETE)
        - row_id TEXT
        - row_snapshot_json TEXT
        - created_at INTEGER
        - PRIMARY KEY (table_name, sequence_id)

    changelogs:
        - changelog_name TEXT PRIMARY KEY
        - table_name TEXT UNIQUE
        - epoch INTEGER (bumped on re-create)
        - start_sequence INTEGER

    cursors:
        - changelog_name TEXT
        - consumer TEXT
        - epoch INTEGER
        - position INTEGER
        - PRIMARY KEY (changelog_name, consumer)

    stage_runs:
        - run_id TEXT PRIMARY KEY
        - stage_name TEXT
        - outcome TEXT, rows/entries counts, cursor range, error kind/message
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class PipelineDatabase:
    """SQLite database holding one pipeline's state.

    Thread safety:
        Each connection is created per-operation.
        SQLite serializes writers via BEGIN IMMEDIATE and busy_timeout.

    Example:
        >>> db = PipelineDatabase("/var/lib/changeflow/weather.db")
        >>> db.initialize()
        >>> with db.transaction() as conn:
        ...     conn.execute("...")
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the database handle.

        Args:
            path: SQLite database file path
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._initialized = False

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection in autocommit mode.

        Yields:
            SQLite connection
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside one write transaction.

        Everything executed on the yielded connection commits together,
        or is rolled back if the block raises.

        Yields:
            SQLite connection with an open IMMEDIATE transaction
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def initialize(self) -> None:
        """Create the schema if it doesn't exist."""
        if self._initialized:
            return
        with self.connection() as conn:
            self._create_schema(conn)
        self._initialized = True
        logger.info("Initialized pipeline database", extra={"path": str(self.path)})

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            -- Registered tables and their change high-water marks
            CREATE TABLE IF NOT EXISTS tables (
                table_name TEXT PRIMARY KEY,
                last_sequence INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL
            );

            -- Materialized rows
            CREATE TABLE IF NOT EXISTS table_rows (
                table_name TEXT NOT NULL,
                row_id TEXT NOT NULL,
                sequence_id INTEGER NOT NULL,
                payload_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (table_name, row_id)
            );

            CREATE INDEX IF NOT EXISTS idx_rows_order
                ON table_rows(table_name, sequence_id);

            -- One entry per mutation, ordered per table
            CREATE TABLE IF NOT EXISTS change_entries (
                table_name TEXT NOT NULL,
                sequence_id INTEGER NOT NULL,
                operation TEXT NOT NULL,
                row_id TEXT NOT NULL,
                row_snapshot_json TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (table_name, sequence_id)
            );

            -- Change logs attached to tables
            CREATE TABLE IF NOT EXISTS changelogs (
                changelog_name TEXT PRIMARY KEY,
                table_name TEXT NOT NULL UNIQUE,
                epoch INTEGER NOT NULL,
                start_sequence INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            );

            -- Consumption cursors, one per (change log, consumer)
            CREATE TABLE IF NOT EXISTS cursors (
                changelog_name TEXT NOT NULL,
                consumer TEXT NOT NULL,
                epoch INTEGER NOT NULL,
                position INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (changelog_name, consumer)
            );

            -- Stage run history
            CREATE TABLE IF NOT EXISTS stage_runs (
                run_id TEXT PRIMARY KEY,
                stage_name TEXT NOT NULL,
                tick_time INTEGER,
                started_at INTEGER NOT NULL,
                finished_at INTEGER NOT NULL,
                outcome TEXT NOT NULL,
                rows_written INTEGER NOT NULL DEFAULT 0,
                entries_consumed INTEGER NOT NULL DEFAULT 0,
                cursor_from INTEGER,
                cursor_to INTEGER,
                error_kind TEXT,
                error_message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_stage_runs_stage
                ON stage_runs(stage_name, started_at DESC);

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)
