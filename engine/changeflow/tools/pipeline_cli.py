"""
Pipeline CLI tool for ChangeFlow.

This tool inspects and drives a pipeline outside the long-running engine:
- validate: Check a definition file
- stages: Show stages with their gate predicate
- changelogs: Show change logs and cursor positions
- history: Show recent stage runs
- run: Run one stage now (and its AfterStage children)

Usage:
    changeflow validate --pipeline pipeline.yaml
    changeflow stages --pipeline pipeline.yaml --data-dir ./data
    changeflow run extract_json_data --pipeline pipeline.yaml --data-dir ./data

Invariants:
    - Failed runs and invalid definitions cause non-zero exit code
    - JSON output is deterministic (sorted keys)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import StorageConfig
from ..errors import ChangeFlowError, PipelineDefinitionError, StageError
from ..pipeline import Pipeline, PipelineDefinition, build_pipeline, load_definition
from ..scheduler import Scheduler
from ..storage import PipelineDatabase, RunHistory, list_changelogs

logger = logging.getLogger(__name__)


class PipelineCLI:
    """CLI commands over one pipeline database.

    Example:
        >>> cli = PipelineCLI(load_definition("pipeline.yaml"), "./data")
        >>> await cli.stages()
    """

    def __init__(self, definition: PipelineDefinition, data_dir: str) -> None:
        self.definition = definition
        self.storage = StorageConfig(data_dir=data_dir)
        self.database = PipelineDatabase(self.storage.database_path(definition.name))

    async def _pipeline(self) -> Pipeline:
        return await build_pipeline(self.definition, self.database)

    async def stages(self) -> list[dict[str, Any]]:
        """Stages with trigger and gate predicate, parents first."""
        pipeline = await self._pipeline()
        return [
            {
                "name": stage.name,
                "trigger": str(stage.trigger),
                "source": stage.source.name,
                "target": stage.target.name,
                "has_unconsumed": await stage.has_unconsumed(),
            }
            for stage in pipeline.stages
        ]

    async def changelogs(self) -> list[dict[str, Any]]:
        """Change logs with cursor positions."""
        self.database.initialize()
        return [await c.describe() for c in await list_changelogs(self.database)]

    async def history(self, stage_name: str | None, limit: int) -> list[dict[str, Any]]:
        """Recent runs, newest first."""
        self.database.initialize()
        runs = await RunHistory(self.database).list_runs(stage_name, limit=limit)
        return [r.to_dict() for r in runs]

    async def run(self, stage_name: str, cascade: bool) -> dict[str, Any]:
        """Run a stage now.

        Raises:
            StageError: If the run failed
        """
        scheduler = Scheduler(await self._pipeline())
        outcome = await scheduler.force_run(stage_name, cascade=cascade)
        return {
            "stage": stage_name,
            "outcome": outcome.to_dict(),
            "stages": [s.to_dict() for s in scheduler.list_stages()],
        }


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the pipeline tool."""
    parser = argparse.ArgumentParser(description="ChangeFlow pipeline tool")
    parser.add_argument("--pipeline", "-p", default="pipeline.yaml", help="Pipeline definition file")
    parser.add_argument("--data-dir", "-d", default="./data", help="Directory for pipeline databases")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log engine activity")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate the definition file")
    subparsers.add_parser("stages", help="Show stages and whether they have work")
    subparsers.add_parser("changelogs", help="Show change logs and cursors")

    history_parser = subparsers.add_parser("history", help="Show recent stage runs")
    history_parser.add_argument("--stage", help="Only runs of this stage")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of runs")

    run_parser = subparsers.add_parser("run", help="Run a stage now")
    run_parser.add_argument("stage", help="Stage name")
    run_parser.add_argument(
        "--no-cascade", action="store_true", help="Don't run AfterStage children"
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        definition = load_definition(args.pipeline)
    except PipelineDefinitionError as e:
        print(f"Pipeline definition is INVALID: {e}", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Cannot read {args.pipeline}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "validate":
        print(f"Pipeline '{definition.name}' is valid ({len(definition.stages)} stage(s))")
        sys.exit(0)

    cli = PipelineCLI(definition, args.data_dir)

    try:
        if args.command == "stages":
            _print_json(asyncio.run(cli.stages()))
        elif args.command == "changelogs":
            _print_json(asyncio.run(cli.changelogs()))
        elif args.command == "history":
            _print_json(asyncio.run(cli.history(args.stage, args.limit)))
        elif args.command == "run":
            _print_json(asyncio.run(cli.run(args.stage, cascade=not args.no_cascade)))
    except StageError as e:
        print(f"Stage '{e.stage_name}' failed [{e.kind}]: {e.message}", file=sys.stderr)
        sys.exit(1)
    except ChangeFlowError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
