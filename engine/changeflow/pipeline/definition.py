"""
Pipeline definition files.

Pipelines can be declared in YAML (or JSON) and built against a pipeline
database:

```yaml
version: 1
pipeline: weather
tables:
  - raw_json_table
  - transformed_json_table
  - final_table
changelogs:
  - name: raw_data_stream
    table: raw_json_table
  - name: transformed_data_stream
    table: transformed_json_table
stages:
  - name: extract_json_data
    source: raw_data_stream
    target: transformed_json_table
    schedule: 1 minute
    transform: examples.weather.transforms:extract_json
  - name: aggregate_final_data
    source: transformed_data_stream
    target: final_table
    after: extract_json_data
    transform: examples.weather.transforms:to_celsius
    deadline: 30s
```
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..errors import PipelineDefinitionError
from ..stage.stage import Stage
from ..stage.transforms import resolve_transform
from ..stage.triggers import AfterStage, Trigger, parse_duration, parse_schedule
from ..storage.changelog import ChangeLog
from ..storage.database import PipelineDatabase
from ..storage.table import Table
from .graph import Pipeline


@dataclass
class ChangeLogSpec:
    """A change log attached to a table."""

    name: str
    table: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "table": self.table}


@dataclass
class StageSpec:
    """A stage declaration."""

    name: str
    source: str
    target: str
    transform: str
    schedule: str | None = None
    after: str | None = None
    deadline: str | float | None = None
    max_batch_entries: int | None = None
    description: str = ""

    def validate(self) -> list[str]:
        errors = []
        if not self.name:
            errors.append("Stage name is required")
        if not self.source:
            errors.append(f"Stage '{self.name}': 'source' change log is required")
        if not self.target:
            errors.append(f"Stage '{self.name}': 'target' table is required")
        if not self.transform:
            errors.append(f"Stage '{self.name}': 'transform' is required")
        if bool(self.schedule) == bool(self.after):
            errors.append(f"Stage '{self.name}': exactly one of 'schedule' or 'after' is required")
        if self.schedule:
            try:
                parse_schedule(self.schedule)
            except ValueError as e:
                errors.append(f"Stage '{self.name}': {e}")
        if self.deadline is not None:
            try:
                parse_duration(self.deadline)
            except ValueError as e:
                errors.append(f"Stage '{self.name}': invalid deadline: {e}")
        if self.max_batch_entries is not None and self.max_batch_entries <= 0:
            errors.append(f"Stage '{self.name}': max_batch_entries must be positive")
        return errors

    def trigger(self) -> Trigger:
        if self.after:
            return AfterStage(self.after)
        if not self.schedule:
            raise PipelineDefinitionError(
                f"Stage '{self.name}': exactly one of 'schedule' or 'after' is required"
            )
        return parse_schedule(self.schedule)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "source": self.source,
            "target": self.target,
            "transform": self.transform,
        }
        if self.schedule:
            d["schedule"] = self.schedule
        if self.after:
            d["after"] = self.after
        if self.deadline is not None:
            d["deadline"] = self.deadline
        if self.max_batch_entries is not None:
            d["max_batch_entries"] = self.max_batch_entries
        if self.description:
            d["description"] = self.description
        return d


@dataclass
class PipelineDefinition:
    """A complete pipeline declaration."""

    name: str
    version: int = 1
    tables: list[str] = field(default_factory=list)
    changelogs: list[ChangeLogSpec] = field(default_factory=list)
    stages: list[StageSpec] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Check cross-references; stage graph rules are checked at build time."""
        errors = []
        if not self.name:
            errors.append("Pipeline name is required")

        tables = set(self.tables)
        if len(tables) != len(self.tables):
            errors.append("Duplicate table names")

        changelog_names = [c.name for c in self.changelogs]
        if len(changelog_names) != len(set(changelog_names)):
            errors.append("Duplicate change log names")
        attached = [c.table for c in self.changelogs]
        if len(attached) != len(set(attached)):
            errors.append("A table can have at most one change log")
        for changelog in self.changelogs:
            if changelog.table not in tables:
                errors.append(
                    f"Change log '{changelog.name}': unknown table '{changelog.table}'"
                )

        stage_names = [s.name for s in self.stages]
        if len(stage_names) != len(set(stage_names)):
            errors.append("Duplicate stage names")
        for stage in self.stages:
            errors.extend(stage.validate())
            if stage.source and stage.source not in changelog_names:
                errors.append(f"Stage '{stage.name}': unknown change log '{stage.source}'")
            if stage.target and stage.target not in tables:
                errors.append(f"Stage '{stage.name}': unknown table '{stage.target}'")
            if stage.after and stage.after not in stage_names:
                errors.append(f"Stage '{stage.name}': unknown parent stage '{stage.after}'")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "pipeline": self.name,
            "tables": list(self.tables),
            "changelogs": [c.to_dict() for c in self.changelogs],
            "stages": [s.to_dict() for s in self.stages],
        }

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)


def parse_definition(data: dict[str, Any]) -> PipelineDefinition:
    """Parse a pipeline definition from a dict.

    Raises:
        PipelineDefinitionError: If the definition is malformed or invalid
    """
    try:
        definition = PipelineDefinition(
            name=data.get("pipeline", ""),
            version=int(data.get("version", 1)),
            tables=[str(t) for t in data.get("tables", [])],
            changelogs=[
                ChangeLogSpec(name=c["name"], table=c["table"])
                for c in data.get("changelogs", [])
            ],
            stages=[
                StageSpec(
                    name=s["name"],
                    source=s.get("source", ""),
                    target=s.get("target", ""),
                    transform=s.get("transform", ""),
                    schedule=_optional_str(s.get("schedule")),
                    after=s.get("after"),
                    deadline=s.get("deadline"),
                    max_batch_entries=s.get("max_batch_entries"),
                    description=s.get("description", ""),
                )
                for s in data.get("stages", [])
            ],
        )
    except (KeyError, TypeError, ValueError) as e:
        raise PipelineDefinitionError(f"Malformed pipeline definition: {e}") from e

    errors = definition.validate()
    if errors:
        raise PipelineDefinitionError(
            f"Pipeline definition has {len(errors)} error(s)", errors
        )
    return definition


def parse_yaml(yaml_str: str) -> PipelineDefinition:
    """Parse a definition from a YAML string."""
    data = yaml.safe_load(yaml_str)
    return parse_definition(data or {})


def parse_json(json_str: str) -> PipelineDefinition:
    """Parse a definition from a JSON string."""
    data = json.loads(json_str)
    return parse_definition(data or {})


def load_definition(path: str | Path) -> PipelineDefinition:
    """Load a definition file (.yaml, .yml or .json)."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return parse_json(text)
    return parse_yaml(text)


async def build_pipeline(
    definition: PipelineDefinition,
    database: PipelineDatabase,
    replace_changelogs: bool = False,
    page_size: int = 500,
) -> Pipeline:
    """Create tables, change logs and stages of a definition.

    Existing tables and change logs are reused, so building the same
    definition again against the same database resumes where the cursors
    left off.

    Args:
        definition: Parsed definition
        database: Pipeline database
        replace_changelogs: Re-create change logs (resets their cursors)
        page_size: Change log read page size

    Raises:
        PipelineDefinitionError: If a transform cannot be resolved or the
            stage graph is invalid
    """
    database.initialize()

    tables = {name: await Table.create(database, name) for name in definition.tables}
    changelogs = {}
    for spec in definition.changelogs:
        try:
            changelogs[spec.name] = await ChangeLog.create(
                database,
                spec.name,
                tables[spec.table],
                replace=replace_changelogs,
                page_size=page_size,
            )
        except ValueError as e:
            raise PipelineDefinitionError(str(e)) from e

    pipeline = Pipeline(definition.name, database)
    for spec in _parents_first(definition.stages):
        try:
            transform = resolve_transform(spec.transform)
        except ValueError as e:
            raise PipelineDefinitionError(f"Stage '{spec.name}': {e}") from e

        pipeline.add_stage(
            Stage(
                name=spec.name,
                source=changelogs[spec.source],
                target=tables[spec.target],
                transform=transform,
                trigger=spec.trigger(),
                max_batch_entries=spec.max_batch_entries,
                deadline_seconds=parse_duration(spec.deadline) if spec.deadline is not None else None,
                description=spec.description,
            )
        )
    return pipeline


def _parents_first(stages: list[StageSpec]) -> list[StageSpec]:
    ordered: list[StageSpec] = []
    placed: set[str] = set()
    pending = list(stages)
    while pending:
        progressed = False
        for spec in list(pending):
            if spec.after is None or spec.after in placed:
                ordered.append(spec)
                placed.add(spec.name)
                pending.remove(spec)
                progressed = True
        if not progressed:
            raise PipelineDefinitionError(
                "Stage 'after' references form a cycle: "
                + ", ".join(s.name for s in pending)
            )
    return ordered


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
