"""
Storage module for ChangeFlow - tables, change logs and cursors.

All pipeline state lives in one SQLite database:
- Tables of JSON rows, each mutation emitting a sequenced change entry
- Change logs exposing a table's entries to cursor-based consumers
- Consumption cursors advanced by compare-and-set
- Stage run history

Invariants:
    - A table mutation and its change entry commit together
    - Cursor advance happens inside the consumer's write transaction
    - Reads through a change log never remove entries

How to change safely:
    - Use PipelineDatabase.transaction() for all multi-statement writes
    - Verify exactly-once consumption with crash-injection tests
"""

from .changelog import (
    ChangeLog,
    ChangeLogEntry,
    ChangeOperation,
    ConsumptionCursor,
    list_changelogs,
)
from .database import PipelineDatabase
from .run_history import RunHistory, StageRunRecord
from .table import Table, TableRow

__all__ = [
    "PipelineDatabase",
    "Table",
    "TableRow",
    "ChangeLog",
    "ChangeLogEntry",
    "ChangeOperation",
    "ConsumptionCursor",
    "list_changelogs",
    "RunHistory",
    "StageRunRecord",
]
