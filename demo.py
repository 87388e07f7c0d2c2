#!/usr/bin/env python3
"""
ChangeFlow Demo - Incremental weather pipeline.

Inserts raw JSON observations, lets the scheduler run the two stages and
shows that each run only processes what is new.
"""

import asyncio
import tempfile
from pathlib import Path

from engine.changeflow.pipeline import build_pipeline, load_definition
from engine.changeflow.scheduler import Scheduler
from engine.changeflow.storage import PipelineDatabase, Table
from examples.weather.sample_data import observations

PIPELINE_FILE = Path(__file__).parent / "examples" / "weather" / "pipeline.yaml"


async def show_tables(database: PipelineDatabase) -> None:
    for name in ("raw_json_table", "transformed_json_table", "final_table"):
        table = await Table.open(database, name)
        print(f"  {name:<24} {await table.count():>3} row(s)")


async def main():
    print("=" * 60)
    print("ChangeFlow Demo - Incremental Weather Pipeline")
    print("=" * 60)
    print()

    with tempfile.TemporaryDirectory() as data_dir:
        print(f"[Setup] Using data directory: {data_dir}")

        database = PipelineDatabase(Path(data_dir) / "weather.db")
        pipeline = await build_pipeline(load_definition(PIPELINE_FILE), database)
        scheduler = Scheduler(pipeline)
        raw = await Table.open(database, "raw_json_table")

        print("\n[Step 1] Stages:")
        for status in scheduler.list_stages():
            print(f"  {status.name:<24} {status.trigger}")

        print("\n[Step 2] Inserting 10 raw observations...")
        await raw.append_many(observations(10))
        print(f"  extract_json_data has work: {await scheduler.has_unconsumed('extract_json_data')}")

        print("\n[Step 3] Scheduler tick...")
        await scheduler.tick()
        await scheduler.wait_idle()
        await show_tables(database)

        final = await Table.open(database, "final_table")
        print("\n  First rows of final_table:")
        for row in await final.scan(limit=3):
            data = row.payload
            print(f"    {data['city']:<8} {data['date']}  {data['temp_cel']:6.2f} C  {data['conditions']}")

        print("\n[Step 4] Running again with no new data...")
        outcome = await scheduler.force_run("extract_json_data")
        print(f"  extract_json_data: {outcome.kind.value} ({outcome.reason})")

        print("\n[Step 5] Inserting 5 more observations...")
        await raw.append_many(observations(5, start=10))
        outcome = await scheduler.force_run("extract_json_data")
        print(f"  extract_json_data consumed {outcome.entries_consumed} entries")
        await show_tables(database)

        print("\n[Step 6] Run history:")
        for run in await scheduler.run_history(limit=10):
            print(f"  {run.stage_name:<24} {run.outcome:<8} rows={run.rows_written}")

    print()
    print("=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
