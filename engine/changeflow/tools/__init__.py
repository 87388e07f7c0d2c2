"""
CLI tools for ChangeFlow administration.

This module provides command-line tools for:
- Inspecting stages, change logs and run history
- Running a stage on demand

Invariants:
    - Tools work offline (no running engine required)
    - Manual runs obey the same single-flight and gate rules as the engine
"""

from .pipeline_cli import PipelineCLI

__all__ = ["PipelineCLI"]
