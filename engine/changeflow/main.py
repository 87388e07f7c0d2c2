"""
ChangeFlow engine - Main entry point.

This module starts the engine with all components:
- Pipeline (tables, change logs and stages from the definition file)
- Scheduler loop (timer and AfterStage triggers)
- Purge loop (deletes change entries every cursor has passed)
- HTTP observation API (optional)

Usage:
    python -m engine.changeflow.main --pipeline pipeline.yaml

Configuration is via environment variables; --pipeline and --data-dir
override PIPELINE_FILE and DATA_DIR. See config.py for all settings.

Invariants:
    - The pipeline is fully built before the scheduler ticks
    - Graceful shutdown waits for in-flight stage runs up to the
      shutdown timeout; runs still going are aborted before commit

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path

import json_log_formatter

from .api import run_http_server
from .config import EngineConfig
from .errors import PipelineDefinitionError
from .pipeline import Pipeline, build_pipeline, load_definition
from .scheduler import Scheduler
from .storage import PipelineDatabase, RunHistory, list_changelogs

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """ChangeFlow engine orchestrator.

    Manages the lifecycle of all engine components:
    - Pipeline database and stage DAG
    - Scheduler loop
    - Background purge loop and HTTP API

    Example:
        >>> server = Server(EngineConfig.from_env())
        >>> await server.start()
        >>> # Engine is running
        >>> await server.stop()
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional engine configuration (loaded from env if not provided)
        """
        self.config = config or EngineConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.database: PipelineDatabase | None = None
        self.pipeline: Pipeline | None = None
        self.scheduler: Scheduler | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the engine and block until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting ChangeFlow engine")
        self.config.log_config()

        try:
            definition = load_definition(self.config.pipeline_file)
            storage = self.config.storage

            Path(storage.data_dir).mkdir(parents=True, exist_ok=True)
            self.database = PipelineDatabase(
                storage.database_path(definition.name),
                wal_mode=storage.wal_mode,
                busy_timeout_ms=storage.busy_timeout_ms,
                cache_size_pages=storage.cache_size_pages,
            )

            self.pipeline = await build_pipeline(
                definition,
                self.database,
                replace_changelogs=self.config.replace_changelogs,
                page_size=storage.read_page_size,
            )
            logger.info(
                "Pipeline built",
                extra={
                    "pipeline": self.pipeline.name,
                    "stages": [s.name for s in self.pipeline.stages],
                    "database": str(self.database.path),
                },
            )

            self.scheduler = Scheduler(
                self.pipeline,
                RunHistory(self.database),
                tick_interval_seconds=self.config.scheduler.tick_interval_seconds,
                default_deadline_seconds=self.config.scheduler.default_deadline_seconds,
            )
            self._tasks.append(asyncio.create_task(self.scheduler.start()))

            if self.config.scheduler.purge_enabled:
                self._tasks.append(asyncio.create_task(self._purge_loop(self.database)))

            if self.config.api.enabled:
                self._tasks.append(
                    asyncio.create_task(run_http_server(self.scheduler, self.config.api))
                )

            self._running = True
            logger.info("ChangeFlow engine started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Engine startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the engine gracefully."""
        if not self._running:
            return

        logger.info("Stopping ChangeFlow engine")

        if self.scheduler:
            await self.scheduler.stop(timeout=self.config.scheduler.shutdown_timeout_seconds)

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        self._running = False
        logger.info("ChangeFlow engine stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def _purge_loop(self, database: PipelineDatabase) -> None:
        interval = self.config.scheduler.purge_interval_seconds

        while True:
            await asyncio.sleep(interval)
            for changelog in await list_changelogs(database):
                try:
                    await changelog.purge_consumed()
                except Exception as e:
                    logger.error(
                        f"Purge failed for change log '{changelog.name}': {e}",
                        exc_info=True,
                    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run a ChangeFlow pipeline")
    parser.add_argument("--pipeline", "-p", help="Pipeline definition file (YAML or JSON)")
    parser.add_argument("--data-dir", help="Directory for pipeline databases")
    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = EngineConfig.from_env()
        if args.pipeline:
            config.pipeline_file = args.pipeline
        if args.data_dir:
            config.storage = replace(config.storage, data_dir=args.data_dir)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except PipelineDefinitionError as e:
        print(f"Pipeline definition error: {e}", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
