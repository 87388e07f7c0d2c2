"""
Pipeline graph for ChangeFlow.

A Pipeline is the DAG of stages sharing one pipeline database. Stages
are linked two ways: by trigger (AfterStage parent) and by data (a stage
reads the change log of a table another stage writes). Both graphs must
be acyclic.

Invariants:
    - Stage names are unique
    - Each stage has at most one AfterStage parent, registered before it
    - Each table is written by at most one stage
    - Each cursor has exactly one consumer (the stage of the same name)
    - The table-level data flow has no cycles
"""

from __future__ import annotations

import logging
from graphlib import CycleError, TopologicalSorter

from ..errors import PipelineDefinitionError, StageNotFoundError
from ..stage.stage import Stage
from ..stage.triggers import AfterStage
from ..storage.database import PipelineDatabase

logger = logging.getLogger(__name__)


class Pipeline:
    """Directed acyclic graph of stages.

    Example:
        >>> pipeline = Pipeline("weather", db)
        >>> pipeline.add_stage(extract)
        >>> pipeline.add_stage(aggregate)   # trigger=AfterStage("extract_json_data")
        >>> [s.name for s in pipeline.children_of("extract_json_data")]
        ['aggregate_final_data']
    """

    def __init__(self, name: str, database: PipelineDatabase) -> None:
        self.name = name
        self.database = database
        self._stages: dict[str, Stage] = {}

    def add_stage(self, stage: Stage) -> Stage:
        """Register a stage after checking the graph invariants.

        Raises:
            PipelineDefinitionError: If the stage breaks an invariant
        """
        errors = self._check_stage(stage)
        if errors:
            raise PipelineDefinitionError(
                f"Invalid stage '{stage.name}': {'; '.join(errors)}", errors
            )

        self._stages[stage.name] = stage
        try:
            self._data_order()
        except CycleError as e:
            del self._stages[stage.name]
            raise PipelineDefinitionError(
                f"Stage '{stage.name}' creates a cycle through tables: {e.args[1]}"
            ) from e

        logger.debug("Registered stage", extra={"pipeline": self.name, "stage": stage.name})
        return stage

    def _check_stage(self, stage: Stage) -> list[str]:
        errors = []
        if stage.name in self._stages:
            errors.append("a stage with this name already exists")
        if stage.source.database.path != self.database.path:
            errors.append("stage uses a different pipeline database")

        if isinstance(stage.trigger, AfterStage):
            if stage.trigger.parent == stage.name:
                errors.append("stage cannot run after itself")
            elif stage.trigger.parent not in self._stages:
                errors.append(f"parent stage '{stage.trigger.parent}' is not registered")

        for other in self._stages.values():
            if other.target.name == stage.target.name:
                errors.append(
                    f"table '{stage.target.name}' is already written by stage '{other.name}'"
                )
        return errors

    def _data_order(self) -> list[str]:
        graph: dict[str, set[str]] = {}
        for stage in self._stages.values():
            graph.setdefault(stage.target.name, set()).add(stage.source.table_name)
        return list(TopologicalSorter(graph).static_order())

    def stage(self, name: str) -> Stage:
        """Look up a stage by name.

        Raises:
            StageNotFoundError: If no stage has this name
        """
        try:
            return self._stages[name]
        except KeyError:
            raise StageNotFoundError(name) from None

    @property
    def stages(self) -> list[Stage]:
        """Stages with every parent before its children."""
        sorter: TopologicalSorter[str] = TopologicalSorter()
        for stage in self._stages.values():
            if isinstance(stage.trigger, AfterStage):
                sorter.add(stage.name, stage.trigger.parent)
            else:
                sorter.add(stage.name)
        return [self._stages[name] for name in sorter.static_order()]

    def roots(self) -> list[Stage]:
        """Timer-triggered stages."""
        return [s for s in self.stages if not isinstance(s.trigger, AfterStage)]

    def children_of(self, name: str) -> list[Stage]:
        """Stages triggered after the named stage."""
        return [
            s
            for s in self.stages
            if isinstance(s.trigger, AfterStage) and s.trigger.parent == name
        ]

    def parent_of(self, name: str) -> Stage | None:
        trigger = self.stage(name).trigger
        if isinstance(trigger, AfterStage):
            return self._stages[trigger.parent]
        return None

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)
