"""
Integration tests for the Scheduler running multi-stage pipelines.

Tests cover:
- End-to-end incremental processing through two stages
- Single-flight (overlapping triggers dropped)
- AfterStage ordering and success-gated cascade
- Failure recording and re-attempt on the next tick
- Idempotent retry after a failed commit
- Deadlines, suspend/resume and gate errors
"""

import asyncio
import sqlite3
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from engine.changeflow.errors import TransformError
from engine.changeflow.pipeline import Pipeline
from engine.changeflow.scheduler import Scheduler, StageState
from engine.changeflow.stage import AfterStage, Interval, OutcomeKind, Stage, inserts_only
from engine.changeflow.storage import ChangeLog, PipelineDatabase, Table

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
KELVIN = 273.15


def extract(row):
    return {"city": row["v"]["city"], "temp_kel": row["v"]["temp"]}


def to_celsius(row):
    return {"city": row["city"], "temp_cel": row["temp_kel"] - KELVIN}


class Transforms:
    """Transforms looked up per call, so tests can swap in failures and delays."""

    def __init__(self):
        self.extract = inserts_only(extract)
        self.aggregate = inserts_only(to_celsius)
        self.calls = []

    def first(self, batch):
        self.calls.append(("extract_json_data", len(batch)))
        return self.extract(batch)

    def second(self, batch):
        self.calls.append(("aggregate_final_data", len(batch)))
        return self.aggregate(batch)


async def build(database, transforms, deadline_seconds=None):
    raw = await Table.create(database, "raw_json_table")
    transformed = await Table.create(database, "transformed_json_table")
    final = await Table.create(database, "final_table")
    raw_stream = await ChangeLog.create(database, "raw_data_stream", raw)
    transformed_stream = await ChangeLog.create(database, "transformed_data_stream", transformed)

    pipeline = Pipeline("weather", database)
    pipeline.add_stage(
        Stage(
            "extract_json_data",
            raw_stream,
            transformed,
            lambda batch: transforms.first(batch),
            Interval(60),
            deadline_seconds=deadline_seconds,
        )
    )
    pipeline.add_stage(
        Stage(
            "aggregate_final_data",
            transformed_stream,
            final,
            lambda batch: transforms.second(batch),
            AfterStage("extract_json_data"),
        )
    )
    return pipeline, raw, transformed, final


def raw_rows(count, start=0):
    return [{"v": {"city": f"city-{i}", "temp": 280.0 + i}} for i in range(start, start + count)]


class TestSchedulerIntegration:
    """Integration tests for Scheduler."""

    @pytest.fixture
    def database(self):
        """Create a pipeline database in a temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield PipelineDatabase(Path(tmpdir) / "weather.db", wal_mode=False)

    @pytest.fixture
    def transforms(self):
        return Transforms()

    async def tick(self, scheduler, now):
        tasks = await scheduler.tick(now)
        await scheduler.wait_idle()
        return tasks

    @pytest.mark.asyncio
    async def test_incremental_two_stage_flow(self, database, transforms):
        """10 rows flow through both stages once; a re-run is a NoOp."""
        pipeline, raw, transformed, final = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(10))

        await self.tick(scheduler, T0)

        assert await transformed.count() == 10
        cursor = await pipeline.stage("extract_json_data").cursor()
        assert cursor.position == 10
        final_rows = await final.scan()
        assert len(final_rows) == 10
        assert [r.payload["temp_cel"] for r in final_rows] == [
            (280.0 + i) - KELVIN for i in range(10)
        ]
        assert [r.payload["city"] for r in final_rows] == [f"city-{i}" for i in range(10)]

        await self.tick(scheduler, T0 + timedelta(seconds=60))

        assert await transformed.count() == 10
        assert await final.count() == 10
        runs = await scheduler.run_history()
        assert [(r.stage_name, r.outcome) for r in runs[:2]] == [
            ("aggregate_final_data", "noop"),
            ("extract_json_data", "noop"),
        ]
        assert transforms.calls == [("extract_json_data", 10), ("aggregate_final_data", 10)]

    @pytest.mark.asyncio
    async def test_only_new_rows_processed(self, database, transforms):
        pipeline, raw, transformed, final = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(3))
        await self.tick(scheduler, T0)

        await raw.append_many(raw_rows(2, start=3))
        await self.tick(scheduler, T0 + timedelta(seconds=60))

        assert transforms.calls[-2:] == [("extract_json_data", 2), ("aggregate_final_data", 2)]
        assert await final.count() == 5

    @pytest.mark.asyncio
    async def test_interval_not_due_before_elapsed(self, database, transforms):
        pipeline, raw, _, _ = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await self.tick(scheduler, T0)
        await raw.append_many(raw_rows(1))

        started = await self.tick(scheduler, T0 + timedelta(seconds=30))

        assert started == []
        status = scheduler.stage_status("extract_json_data")
        assert status.next_run_time == T0 + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_single_flight(self, database, transforms):
        """A trigger arriving while the stage runs is dropped, not queued."""
        pipeline, raw, transformed, _ = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(2))

        entered = threading.Event()
        release = threading.Event()

        def slow_extract(batch):
            entered.set()
            release.wait(5)
            return transforms.extract(batch)

        transforms.first = slow_extract

        first = await scheduler.tick(T0)
        await asyncio.to_thread(entered.wait, 5)
        assert scheduler.stage_status("extract_json_data").state == StageState.RUNNING

        second = await scheduler.tick(T0 + timedelta(seconds=61))
        busy = await scheduler.force_run("extract_json_data")

        release.set()
        await scheduler.wait_idle()

        assert len(first) == 1
        assert second == []
        assert busy.kind == OutcomeKind.NOOP
        assert busy.reason == "busy"
        assert await transformed.count() == 2
        runs = await scheduler.run_history("extract_json_data")
        assert [r.outcome for r in runs] == ["success"]

    @pytest.mark.asyncio
    async def test_child_runs_after_parent_commit(self, database, transforms):
        """The child sees exactly what the parent committed in the same tick."""
        pipeline, raw, transformed, _ = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(4))
        seen_by_child = []

        def observing_aggregate(batch):
            seen_by_child.append(len(batch))
            return transforms.aggregate(batch)

        transforms.second = observing_aggregate

        await self.tick(scheduler, T0)

        assert seen_by_child == [4]
        assert await transformed.last_sequence() == 4

    @pytest.mark.asyncio
    async def test_child_never_mixes_parent_runs(self, database, transforms):
        """A parent commit landing while the child runs waits for the child's next run."""
        pipeline, raw, transformed, final = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        child_log = pipeline.stage("aggregate_final_data").source
        original_peek = child_log.peek_unconsumed
        reading = asyncio.Event()
        release = asyncio.Event()

        async def held_peek(cursor, upto=None, limit=None):
            if not release.is_set():
                reading.set()
                await release.wait()
            async for entry in original_peek(cursor, upto=upto, limit=limit):
                yield entry

        child_log.peek_unconsumed = held_peek
        seen_by_child = []

        def observing_aggregate(batch):
            seen_by_child.append([e.row_snapshot["city"] for e in batch.entries])
            return transforms.aggregate(batch)

        transforms.second = observing_aggregate

        await raw.append_many(raw_rows(4))
        await scheduler.tick(T0)
        await asyncio.wait_for(reading.wait(), 5)
        assert scheduler.stage_status("aggregate_final_data").state == StageState.RUNNING

        await raw.append_many(raw_rows(3, start=4))
        second = await scheduler.tick(T0 + timedelta(seconds=61))
        await asyncio.wait_for(asyncio.gather(*second), 5)
        assert await transformed.last_sequence() == 7

        release.set()
        await scheduler.wait_idle()

        assert seen_by_child == [[f"city-{i}" for i in range(4)]]
        assert await final.count() == 4

        outcome = await scheduler.force_run("aggregate_final_data")

        assert (outcome.cursor_from, outcome.cursor_to) == (4, 7)
        assert seen_by_child[-1] == [f"city-{i}" for i in range(4, 7)]
        assert await final.count() == 7

    @pytest.mark.asyncio
    async def test_failed_parent_does_not_cascade(self, database, transforms):
        """A failing parent is recorded FAILED; its child does not run."""
        pipeline, raw, transformed, final = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(3))

        def broken(batch):
            raise KeyError("temp")

        transforms.first = broken

        await self.tick(scheduler, T0)

        parent = scheduler.stage_status("extract_json_data")
        child = scheduler.stage_status("aggregate_final_data")
        assert parent.state == StageState.FAILED
        assert parent.last_error.kind == "transform_error"
        assert parent.last_outcome == "failed"
        assert child.last_run_time is None
        assert (await pipeline.stage("extract_json_data").cursor()).position == 0
        assert await transformed.count() == 0
        runs = await scheduler.run_history("extract_json_data")
        assert runs[0].outcome == "failed"
        assert runs[0].error_kind == "transform_error"

        # The next trigger re-attempts from the same cursor
        transforms.first = lambda batch: transforms.extract(batch)
        await self.tick(scheduler, T0 + timedelta(seconds=60))

        assert scheduler.stage_status("extract_json_data").state == StageState.IDLE
        assert await transformed.count() == 3
        assert await final.count() == 3

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_stages(self, database, transforms):
        """A failing child leaves the parent's committed output in place."""
        pipeline, raw, transformed, final = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(2))

        def broken(batch):
            raise ValueError("bad")

        transforms.second = broken

        await self.tick(scheduler, T0)

        assert scheduler.stage_status("extract_json_data").state == StageState.IDLE
        assert scheduler.stage_status("aggregate_final_data").state == StageState.FAILED
        assert await transformed.count() == 2
        assert await final.count() == 0

    @pytest.mark.asyncio
    async def test_idempotent_retry_after_write_failure(self, monkeypatch, database, transforms):
        """A commit failing mid-transaction is retried without duplicates."""
        pipeline, raw, transformed, final = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(5))
        source = pipeline.stage("extract_json_data").source

        def fail_advance(conn, cursor, new_position, now=None):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(source, "advance_cursor", fail_advance)
        await self.tick(scheduler, T0)

        status = scheduler.stage_status("extract_json_data")
        assert status.state == StageState.FAILED
        assert status.last_error.kind == "write_error"
        assert await transformed.count() == 0

        monkeypatch.undo()
        await self.tick(scheduler, T0 + timedelta(seconds=60))

        assert await transformed.count() == 5
        assert await final.count() == 5
        assert [r.sequence_id for r in await transformed.scan()] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, database, transforms):
        """A run over its deadline fails with a timeout and commits nothing."""
        pipeline, raw, transformed, _ = await build(database, transforms, deadline_seconds=0.2)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(2))

        def slow(batch):
            time.sleep(1.0)
            return transforms.extract(batch)

        transforms.first = slow

        await self.tick(scheduler, T0)

        status = scheduler.stage_status("extract_json_data")
        assert status.state == StageState.FAILED
        assert status.last_error.kind == "timeout"
        assert await transformed.count() == 0
        assert (await pipeline.stage("extract_json_data").cursor()).position == 0

    @pytest.mark.asyncio
    async def test_force_run_raises_stage_error(self, database, transforms):
        pipeline, raw, _, _ = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(1))

        def broken(batch):
            raise RuntimeError("boom")

        transforms.first = broken

        with pytest.raises(TransformError):
            await scheduler.force_run("extract_json_data")
        assert scheduler.stage_status("extract_json_data").state == StageState.FAILED

    @pytest.mark.asyncio
    async def test_suspend_and_resume(self, database, transforms):
        pipeline, raw, transformed, final = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await raw.append_many(raw_rows(2))

        scheduler.suspend("extract_json_data")
        assert await self.tick(scheduler, T0) == []

        scheduler.resume("extract_json_data")
        scheduler.suspend("aggregate_final_data")
        await self.tick(scheduler, T0 + timedelta(seconds=1))

        assert await transformed.count() == 2
        assert await final.count() == 0
        assert await scheduler.has_unconsumed("aggregate_final_data") is True

    @pytest.mark.asyncio
    async def test_gate_error_skips_stage(self, database, transforms):
        """A gate that cannot be evaluated skips the run and keeps the state."""
        pipeline, raw, _, _ = await build(database, transforms)
        scheduler = Scheduler(pipeline)
        await pipeline.stage("extract_json_data").source.drop()

        await self.tick(scheduler, T0)

        assert scheduler.stage_status("extract_json_data").state == StageState.IDLE
        runs = await scheduler.run_history("extract_json_data")
        assert runs[0].outcome == "skipped"
        assert runs[0].error_kind == "gate_error"
        assert transforms.calls == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, database, transforms):
        """The tick loop processes data and stops cleanly."""
        pipeline, raw, _, final = await build(database, transforms)
        scheduler = Scheduler(pipeline, tick_interval_seconds=0.05)
        await raw.append_many(raw_rows(3))

        loop_task = asyncio.create_task(scheduler.start())
        for _ in range(100):
            if await final.count() == 3:
                break
            await asyncio.sleep(0.05)

        await scheduler.stop(timeout=5)
        await asyncio.wait_for(loop_task, timeout=5)

        assert await final.count() == 3
        assert scheduler.is_running is False
