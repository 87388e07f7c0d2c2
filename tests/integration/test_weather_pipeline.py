"""
Integration tests for the weather example pipeline.

Tests cover:
- The YAML definition built and run through the scheduler
- Exact output of both transforms
- Restarting against the same database resumes from the cursors
- The pipeline CLI and the engine server lifecycle
"""

import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from engine.changeflow.config import ApiConfig, EngineConfig, SchedulerConfig, StorageConfig
from engine.changeflow.main import Server
from engine.changeflow.pipeline import build_pipeline, load_definition
from engine.changeflow.scheduler import Scheduler
from engine.changeflow.storage import PipelineDatabase, Table, list_changelogs
from engine.changeflow.tools import pipeline_cli
from examples.weather.sample_data import observation, observations

WEATHER_YAML = Path(__file__).parents[2] / "examples" / "weather" / "pipeline.yaml"


class TestWeatherPipeline:
    """Runs the weather example end to end."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def database(self, data_dir):
        return PipelineDatabase(Path(data_dir) / "weather.db", wal_mode=False)

    @pytest.mark.asyncio
    async def test_ten_observations(self, database):
        """10 raw rows end up as 10 Celsius rows with exact values."""
        pipeline = await build_pipeline(load_definition(WEATHER_YAML), database)
        scheduler = Scheduler(pipeline)
        raw = await Table.open(database, "raw_json_table")
        await raw.append_many(observations(10))

        await scheduler.tick()
        await scheduler.wait_idle()

        transformed = await (await Table.open(database, "transformed_json_table")).scan()
        final = await (await Table.open(database, "final_table")).scan()
        assert len(transformed) == 10
        assert len(final) == 10

        first = transformed[0].payload
        assert first == {
            "date": "2019-01-01T01:00:00",
            "country": "FR",
            "city": "Paris",
            "id": "2988507",
            "temp_kel": 280.0,
            "temp_min_kel": 278.5,
            "temp_max_kel": 282.0,
            "conditions": "Clear",
            "wind_dir": 0.0,
            "wind_speed": 1.0,
        }

        for i, row in enumerate(final):
            temp = observation(i)["v"]["main"]["temp"]
            assert row.payload["temp_cel"] == temp - 273.15
            assert row.payload["temp_min_cel"] == (temp - 1.5) - 273.15
            assert row.payload["temp_max_cel"] == (temp + 2.0) - 273.15
            assert "temp_kel" not in row.payload

        outcome = await scheduler.force_run("extract_json_data")
        assert outcome.reason == "no_unconsumed_changes"
        assert len(await (await Table.open(database, "final_table")).scan()) == 10

    @pytest.mark.asyncio
    async def test_malformed_raw_rows_are_dropped(self, database):
        pipeline = await build_pipeline(load_definition(WEATHER_YAML), database)
        scheduler = Scheduler(pipeline)
        raw = await Table.open(database, "raw_json_table")
        await raw.append_many([{"not_v": 1}, observation(0)])

        outcome = await scheduler.force_run("extract_json_data")

        assert outcome.entries_consumed == 2
        assert outcome.rows_written == 1

    @pytest.mark.asyncio
    async def test_rebuild_resumes_from_cursors(self, database):
        """A restarted engine only processes what arrived since."""
        definition = load_definition(WEATHER_YAML)
        first = Scheduler(await build_pipeline(definition, database))
        raw = await Table.open(database, "raw_json_table")
        await raw.append_many(observations(3))
        await first.force_run("extract_json_data")

        await raw.append_many(observations(2, start=3))
        second = Scheduler(await build_pipeline(definition, database))
        outcome = await second.force_run("extract_json_data")

        assert outcome.entries_consumed == 2
        assert (outcome.cursor_from, outcome.cursor_to) == (3, 5)
        assert await (await Table.open(database, "final_table")).count() == 5

    def engine_config(self, data_dir, **scheduler):
        return EngineConfig(
            pipeline_file=str(WEATHER_YAML),
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
            scheduler=SchedulerConfig(tick_interval_seconds=0.05, **scheduler),
            api=ApiConfig(enabled=False),
        )

    async def wait_for_first_tick(self, server):
        """Wait until the startup tick has run both stages (as no-ops)."""
        for _ in range(250):
            scheduler = server.scheduler
            if scheduler is not None and all(
                s.last_run_time is not None for s in scheduler.list_stages()
            ):
                await scheduler.wait_idle()
                return
            await asyncio.sleep(0.02)
        raise AssertionError("engine did not start")

    @pytest.mark.asyncio
    async def test_server_lifecycle(self, data_dir):
        """The engine builds the pipeline, runs stages and shuts down."""
        config = self.engine_config(data_dir, purge_enabled=False)
        server = Server(config)
        server_task = asyncio.create_task(server.start())
        await self.wait_for_first_tick(server)

        raw = await Table.open(server.database, "raw_json_table")
        await raw.append_many(observations(2))
        # The interval is one minute, so trigger the root by hand
        outcome = await server.scheduler.force_run("extract_json_data")

        final = await Table.open(server.database, "final_table")
        assert outcome.entries_consumed == 2
        assert await final.count() == 2

        server.request_shutdown()
        await asyncio.wait_for(server_task, timeout=5)
        await server.stop()
        assert server.scheduler.is_running is False
        assert config.storage.database_path("weather").exists()

    @pytest.mark.asyncio
    async def test_purge_loop_runs(self, data_dir):
        """Consumed change entries are purged in the background."""
        server = Server(self.engine_config(data_dir, purge_interval_seconds=0.05))
        server_task = asyncio.create_task(server.start())
        await self.wait_for_first_tick(server)

        raw = await Table.open(server.database, "raw_json_table")
        await raw.append_many(observations(3))
        await server.scheduler.force_run("extract_json_data")
        await asyncio.sleep(0.3)

        logs = {c.name: await c.describe() for c in await list_changelogs(server.database)}
        assert logs["raw_data_stream"]["cursors"][0]["position"] == 3
        with server.database.connection() as conn:
            remaining = conn.execute(
                "SELECT COUNT(*) FROM change_entries WHERE table_name = 'raw_json_table'"
            ).fetchone()[0]
        assert remaining == 0

        server.request_shutdown()
        await asyncio.wait_for(server_task, timeout=5)
        await server.stop()


class TestPipelineCli:
    """Tests for the changeflow CLI."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def cli(self, data_dir, *args):
        pipeline_cli.main(["--pipeline", str(WEATHER_YAML), "--data-dir", data_dir, *args])

    def seed(self, data_dir, count):
        async def insert():
            storage = StorageConfig(data_dir=data_dir)
            database = PipelineDatabase(storage.database_path("weather"))
            await build_pipeline(load_definition(WEATHER_YAML), database)
            raw = await Table.open(database, "raw_json_table")
            await raw.append_many(observations(count))

        asyncio.run(insert())

    def test_validate(self, data_dir, capsys):
        with pytest.raises(SystemExit) as exc_info:
            self.cli(data_dir, "validate")

        assert exc_info.value.code == 0
        assert "'weather' is valid (2 stage(s))" in capsys.readouterr().out

    def test_run_and_inspect(self, data_dir, capsys):
        self.seed(data_dir, 3)
        capsys.readouterr()

        self.cli(data_dir, "stages")
        stages = json.loads(capsys.readouterr().out)
        assert stages[0]["name"] == "extract_json_data"
        assert stages[0]["has_unconsumed"] is True

        self.cli(data_dir, "run", "extract_json_data")
        result = json.loads(capsys.readouterr().out)
        assert result["outcome"]["entries_consumed"] == 3

        self.cli(data_dir, "history", "--stage", "aggregate_final_data")
        runs = json.loads(capsys.readouterr().out)
        assert runs[0]["rows_written"] == 3

        self.cli(data_dir, "changelogs")
        logs = json.loads(capsys.readouterr().out)
        assert {c["name"] for c in logs} == {"raw_data_stream", "transformed_data_stream"}

    def test_unknown_stage(self, data_dir, capsys):
        with pytest.raises(SystemExit) as exc_info:
            self.cli(data_dir, "run", "ghost")

        assert exc_info.value.code == 1
        assert "Stage not found: ghost" in capsys.readouterr().err

    def test_invalid_definition(self, data_dir, capsys):
        bad = Path(data_dir) / "bad.yaml"
        bad.write_text("pipeline: broken\nstages:\n  - name: s\n")

        with pytest.raises(SystemExit) as exc_info:
            pipeline_cli.main(["--pipeline", str(bad), "validate"])

        assert exc_info.value.code == 1
        assert "INVALID" in capsys.readouterr().err

