"""
Unit tests for the HTTP observation API.

Uses FastAPI's TestClient against a weather pipeline in a temporary
database.
"""

import asyncio
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from engine.changeflow.api import create_app
from engine.changeflow.pipeline import build_pipeline, load_definition
from engine.changeflow.scheduler import Scheduler
from engine.changeflow.storage import PipelineDatabase, Table
from examples.weather.sample_data import observations

WEATHER_YAML = Path(__file__).parents[2] / "examples" / "weather" / "pipeline.yaml"


class TestHttpServer:
    """Tests for the REST endpoints."""

    @pytest.fixture
    def database(self):
        """Create a pipeline database in a temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield PipelineDatabase(Path(tmpdir) / "weather.db", wal_mode=False)

    @pytest.fixture
    def scheduler(self, database):
        pipeline = asyncio.run(build_pipeline(load_definition(WEATHER_YAML), database))
        return Scheduler(pipeline)

    @pytest.fixture
    def client(self, scheduler):
        return TestClient(create_app(scheduler))

    def insert_raw(self, database, count):
        async def insert():
            raw = await Table.open(database, "raw_json_table")
            await raw.append_many(observations(count))

        asyncio.run(insert())

    def test_health(self, client):
        response = client.get("/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["healthy"] is True
        assert body["pipeline"] == "weather"
        assert body["stages"] == 2

    def test_list_stages(self, client):
        response = client.get("/v1/stages")

        stages = response.json()["stages"]
        assert [s["name"] for s in stages] == ["extract_json_data", "aggregate_final_data"]
        assert stages[0]["state"] == "IDLE"
        assert stages[0]["trigger"] == "every 60s"
        assert stages[1]["trigger"] == "after extract_json_data"

    def test_unknown_stage_is_404(self, client):
        response = client.get("/v1/stages/ghost")

        assert response.status_code == 404
        assert response.json()["error_code"] == "STAGE_NOT_FOUND"

    def test_unconsumed(self, client, database):
        assert client.get("/v1/stages/extract_json_data/unconsumed").json() == {
            "stage": "extract_json_data",
            "has_unconsumed": False,
        }

        self.insert_raw(database, 3)

        body = client.get("/v1/stages/extract_json_data/unconsumed").json()
        assert body["has_unconsumed"] is True

    def test_run_cascades(self, client, database):
        """A manual run of the root also runs its AfterStage child."""
        self.insert_raw(database, 4)

        response = client.post("/v1/stages/extract_json_data/run", json={"cascade": True})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["outcome"]["entries_consumed"] == 4

        rows = client.get("/v1/tables/final_table/rows").json()
        assert rows["total"] == 4
        assert len(rows["rows"]) == 4

    def test_run_without_cascade(self, client, database):
        self.insert_raw(database, 2)

        client.post("/v1/stages/extract_json_data/run", json={"cascade": False})

        assert client.get("/v1/tables/final_table/rows").json()["total"] == 0
        assert client.get("/v1/tables/transformed_json_table/rows").json()["total"] == 2

    def test_run_noop(self, client):
        body = client.post("/v1/stages/extract_json_data/run").json()

        assert body["success"] is True
        assert body["outcome"]["kind"] == "noop"

    def test_suspend_and_resume(self, client):
        assert client.post("/v1/stages/aggregate_final_data/suspend").json()["suspended"] is True
        assert client.post("/v1/stages/aggregate_final_data/resume").json()["suspended"] is False

    def test_history(self, client, database):
        self.insert_raw(database, 1)
        client.post("/v1/stages/extract_json_data/run")

        runs = client.get("/v1/stages/extract_json_data/history").json()["runs"]

        assert len(runs) == 1
        assert runs[0]["outcome"] == "success"
        assert runs[0]["rows_written"] == 1

    def test_changelogs(self, client, database):
        self.insert_raw(database, 2)
        client.post("/v1/stages/extract_json_data/run", json={"cascade": False})

        logs = {c["name"]: c for c in client.get("/v1/changelogs").json()["changelogs"]}

        raw = logs["raw_data_stream"]
        assert raw["high_water"] == 2
        assert raw["cursors"] == [
            {
                "consumer": "extract_json_data",
                "position": 2,
                "pending": 0,
                "updated_at": raw["cursors"][0]["updated_at"],
            }
        ]

    def test_unknown_table_is_404(self, client):
        assert client.get("/v1/tables/ghost/rows").status_code == 404
