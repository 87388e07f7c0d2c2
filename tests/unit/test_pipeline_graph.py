"""
Unit tests for the stage DAG.
"""

import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from engine.changeflow.errors import PipelineDefinitionError, StageNotFoundError
from engine.changeflow.pipeline import Pipeline
from engine.changeflow.stage import AfterStage, Interval, Stage, passthrough
from engine.changeflow.storage import ChangeLog, PipelineDatabase, Table


class TestPipeline:
    """Tests for Pipeline graph rules."""

    @pytest.fixture
    def database(self):
        """Create a pipeline database in a temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield PipelineDatabase(Path(tmpdir) / "pipeline.db", wal_mode=False)

    @pytest_asyncio.fixture
    async def tables(self, database):
        names = ["a", "b", "c", "d"]
        return {name: await Table.create(database, name) for name in names}

    @pytest_asyncio.fixture
    async def logs(self, database, tables):
        return {
            name: await ChangeLog.create(database, f"{name}_stream", table)
            for name, table in tables.items()
        }

    def stage(self, name, source, target, trigger=None):
        return Stage(name, source, target, passthrough, trigger or Interval(60))

    @pytest.mark.asyncio
    async def test_linear_chain(self, database, tables, logs):
        pipeline = Pipeline("chain", database)
        pipeline.add_stage(self.stage("ab", logs["a"], tables["b"]))
        pipeline.add_stage(self.stage("bc", logs["b"], tables["c"], AfterStage("ab")))
        pipeline.add_stage(self.stage("cd", logs["c"], tables["d"], AfterStage("bc")))

        assert [s.name for s in pipeline.stages] == ["ab", "bc", "cd"]
        assert [s.name for s in pipeline.roots()] == ["ab"]
        assert [s.name for s in pipeline.children_of("ab")] == ["bc"]
        assert pipeline.parent_of("cd").name == "bc"
        assert pipeline.parent_of("ab") is None
        assert "bc" in pipeline
        assert len(pipeline) == 3

    @pytest.mark.asyncio
    async def test_duplicate_name(self, database, tables, logs):
        pipeline = Pipeline("p", database)
        pipeline.add_stage(self.stage("s", logs["a"], tables["b"]))

        with pytest.raises(PipelineDefinitionError):
            pipeline.add_stage(self.stage("s", logs["c"], tables["d"]))

    @pytest.mark.asyncio
    async def test_parent_must_exist(self, database, tables, logs):
        pipeline = Pipeline("p", database)

        with pytest.raises(PipelineDefinitionError):
            pipeline.add_stage(self.stage("s", logs["a"], tables["b"], AfterStage("ghost")))

    @pytest.mark.asyncio
    async def test_one_writer_per_table(self, database, tables, logs):
        pipeline = Pipeline("p", database)
        pipeline.add_stage(self.stage("ab", logs["a"], tables["b"]))

        with pytest.raises(PipelineDefinitionError) as exc_info:
            pipeline.add_stage(self.stage("cb", logs["c"], tables["b"]))

        assert "already written by stage 'ab'" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_table_cycle_rejected(self, database, tables, logs):
        """A stage closing a loop through tables is rejected and not registered."""
        pipeline = Pipeline("p", database)
        pipeline.add_stage(self.stage("ab", logs["a"], tables["b"]))
        pipeline.add_stage(self.stage("bc", logs["b"], tables["c"]))

        with pytest.raises(PipelineDefinitionError):
            pipeline.add_stage(self.stage("ca", logs["c"], tables["a"]))

        assert "ca" not in pipeline

    @pytest.mark.asyncio
    async def test_fan_out(self, database, tables, logs):
        pipeline = Pipeline("p", database)
        pipeline.add_stage(self.stage("ab", logs["a"], tables["b"]))
        pipeline.add_stage(self.stage("bc", logs["b"], tables["c"], AfterStage("ab")))
        pipeline.add_stage(self.stage("bd", logs["b"], tables["d"], AfterStage("ab")))

        assert {s.name for s in pipeline.children_of("ab")} == {"bc", "bd"}

    @pytest.mark.asyncio
    async def test_unknown_stage(self, database):
        with pytest.raises(StageNotFoundError):
            Pipeline("p", database).stage("ghost")
