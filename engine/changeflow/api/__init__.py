"""
API module for ChangeFlow.

Exposes the scheduler's observation interface over HTTP (FastAPI).

Invariants:
    - The API never writes to tables directly; manual runs go through
      the scheduler

How to change safely:
    - Add new endpoints, don't change the shape of existing ones
"""

from .http_server import create_app, run_http_server

__all__ = [
    "create_app",
    "run_http_server",
]
