"""
ChangeFlow Test Suite.

This package contains:
- unit/: Unit tests (one module at a time, temporary SQLite databases)
- integration/: Integration tests (scheduler, weather pipeline, engine server, CLI)
"""
