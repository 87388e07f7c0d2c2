"""
ChangeFlow - incremental, change-driven pipeline engine.

Tables record every mutation in a per-table change sequence. A change log
exposes that sequence to consumers, each with its own cursor. Stages read
the unconsumed entries of one change log, transform them and append the
result to a target table; the target's change log feeds the next stage.

Architecture:
    ┌──────────┐  changes  ┌───────────┐  batch  ┌─────────┐  rows  ┌──────────┐
    │  Table   │──────────▶│ ChangeLog │────────▶│  Stage  │───────▶│  Table   │
    │ (source) │           │ (cursors) │         │transform│        │ (target) │
    └──────────┘           └───────────┘         └────┬────┘        └──────────┘
                                                      ▲
                                              ┌───────┴───────┐
                                              │   Scheduler   │
                                              │ timer / after │
                                              └───────────────┘

Invariants:
    - A stage's output rows and its cursor advance commit in one transaction
    - Entries are consumed in sequence order, each at most once per consumer
    - At most one run of a stage is in flight at a time
    - A stage with nothing unconsumed does no work

How to change safely:
    - Keep every table write inside a transaction that also records its
      change entry
    - Never move a cursor outside the transaction that writes its output
"""

from ._version import __version__

__all__ = ["__version__"]
