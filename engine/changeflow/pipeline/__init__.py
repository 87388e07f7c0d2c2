"""
Pipeline module for ChangeFlow - the stage DAG and its definition files.
"""

from .definition import (
    ChangeLogSpec,
    PipelineDefinition,
    StageSpec,
    build_pipeline,
    load_definition,
    parse_definition,
    parse_json,
    parse_yaml,
)
from .graph import Pipeline

__all__ = [
    "Pipeline",
    "PipelineDefinition",
    "ChangeLogSpec",
    "StageSpec",
    "build_pipeline",
    "load_definition",
    "parse_definition",
    "parse_json",
    "parse_yaml",
]
