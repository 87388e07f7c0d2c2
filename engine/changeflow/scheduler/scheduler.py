"""
Stage scheduler for ChangeFlow.

The Scheduler is the single scheduling authority of a pipeline. On every
tick it finds the timer stages that are due and dispatches each as an
independent asyncio task. When a stage finishes with success or no-op,
its AfterStage children are dispatched right away in the same task.

State machine per stage:
    IDLE -> RUNNING -> IDLE      (success or no-op)
    IDLE -> RUNNING -> FAILED    (error recorded)
    FAILED -> RUNNING            (next trigger re-attempts)

Invariants:
    - Entry into RUNNING is a compare-and-set; a trigger that finds the
      stage RUNNING is dropped, never queued
    - A failed parent does not trigger its children
    - A child is bounded to the parent target's high-water mark read
      before the parent left RUNNING, so it never sees output of the
      parent's next run
    - No retries within a tick
    - Stage errors are recorded and logged, never raised out of the tick
      loop

How to change safely:
    - Keep the state transitions inside StageRunState
    - Test single-flight with overlapping triggers
    - Monitor stage_runs for repeated failures in production
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import GateEvaluationError, StageError, StageTimeoutError
from ..pipeline.graph import Pipeline
from ..stage.stage import RunOutcome, Stage, StageContext
from ..stage.triggers import AfterStage
from ..storage.run_history import RunHistory, StageRunRecord

logger = logging.getLogger(__name__)


class StageState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    FAILED = "FAILED"


class StageRunState:
    """Run-state of one stage with compare-and-set transitions."""

    def __init__(self) -> None:
        self._state = StageState.IDLE
        self._lock = threading.Lock()

    @property
    def value(self) -> StageState:
        return self._state

    def compare_and_set(
        self,
        expected: StageState | Collection[StageState],
        new: StageState,
    ) -> bool:
        """Move to new only if the current state is one of expected."""
        allowed = {expected} if isinstance(expected, StageState) else set(expected)
        with self._lock:
            if self._state not in allowed:
                return False
            self._state = new
            return True

    def try_begin(self) -> StageState | None:
        """Enter RUNNING from IDLE or FAILED.

        Returns:
            The state left behind, or None if the stage is already running
        """
        with self._lock:
            if self._state == StageState.RUNNING:
                return None
            previous = self._state
            self._state = StageState.RUNNING
            return previous

    def finish(self, new: StageState) -> None:
        if not self.compare_and_set(StageState.RUNNING, new):
            raise RuntimeError(f"Stage left RUNNING unexpectedly (now {self._state.value})")


@dataclass
class StageFailure:
    """A recorded stage failure.

    Attributes:
        stage_name: Stage that failed
        tick_time: Tick (or manual trigger) the run belonged to
        kind: Error kind (transform_error, write_error, ...)
        message: Error message
    """

    stage_name: str
    tick_time: datetime
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage_name,
            "tick_time": self.tick_time.isoformat(),
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class StageStatus:
    """Observable status of one stage."""

    name: str
    state: StageState
    trigger: str
    source: str
    target: str
    suspended: bool
    last_run_time: datetime | None
    last_outcome: str | None
    last_error: StageFailure | None
    next_run_time: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "trigger": self.trigger,
            "source": self.source,
            "target": self.target,
            "suspended": self.suspended,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_outcome": self.last_outcome,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "next_run_time": self.next_run_time.isoformat() if self.next_run_time else None,
        }


@dataclass
class _RunResult:
    outcome: RunOutcome | None = None
    error: StageError | None = None
    high_water: int | None = None
    dropped: bool = False
    skipped: bool = False

    @property
    def triggers_children(self) -> bool:
        return self.outcome is not None


class _StageSlot:
    """Scheduler-side bookkeeping for one stage."""

    def __init__(self, stage: Stage) -> None:
        self.stage = stage
        self.state = StageRunState()
        self.suspended = False
        self.next_run_time: datetime | None = None
        self.last_run_time: datetime | None = None
        self.last_outcome: str | None = None
        self.last_error: StageFailure | None = None


class Scheduler:
    """Runs the stages of one pipeline.

    Thread safety:
        Designed to run in one event loop. Stage run-state transitions
        are compare-and-set under a lock, so force_run() may also be
        called from another thread via run_coroutine_threadsafe().

    Example:
        >>> scheduler = Scheduler(pipeline, RunHistory(db), tick_interval_seconds=1.0)
        >>> task = asyncio.create_task(scheduler.start())
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        pipeline: Pipeline,
        history: RunHistory | None = None,
        tick_interval_seconds: float = 1.0,
        default_deadline_seconds: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            pipeline: Stage DAG to run
            history: Run history store (defaults to the pipeline database)
            tick_interval_seconds: Sleep between ticks of the run loop
            default_deadline_seconds: Deadline for stages without their own
            clock: Source of the current time (timezone-aware UTC)
        """
        self.pipeline = pipeline
        self.history = history or RunHistory(pipeline.database)
        self.tick_interval_seconds = tick_interval_seconds
        self.default_deadline_seconds = default_deadline_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._slots = {stage.name: _StageSlot(stage) for stage in pipeline.stages}
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    # =========================================================================
    # Tick loop
    # =========================================================================

    async def start(self) -> None:
        """Run the tick loop until stop() is called."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        logger.info(
            "Starting scheduler",
            extra={
                "pipeline": self.pipeline.name,
                "stages": len(self._slots),
                "tick_interval_seconds": self.tick_interval_seconds,
            },
        )

        try:
            while self._running:
                await self.tick()
                await asyncio.sleep(self.tick_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        finally:
            self._running = False

    async def stop(self, timeout: float | None = None) -> None:
        """Stop ticking and wait for in-flight runs.

        Runs still going after timeout are cancelled; cancellation aborts
        them before commit.
        """
        self._running = False
        logger.info("Stopping scheduler", extra={"inflight": len(self._inflight)})

        if not self._inflight:
            return
        _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def is_running(self) -> bool:
        return self._running

    async def tick(self, now: datetime | None = None) -> list[asyncio.Task]:
        """Dispatch every timer stage that is due.

        Args:
            now: Tick time (defaults to the clock)

        Returns:
            Tasks started for the due stages
        """
        now = now or self._clock()
        started = []

        for stage in self.pipeline.roots():
            slot = self._slots[stage.name]
            if slot.suspended or isinstance(stage.trigger, AfterStage):
                continue

            if slot.next_run_time is None:
                slot.next_run_time = stage.trigger.first_fire(now)
            if now < slot.next_run_time:
                continue

            slot.next_run_time = stage.trigger.next_fire(now)

            if slot.state.value == StageState.RUNNING:
                logger.info(
                    "Dropped tick for running stage",
                    extra={"stage": stage.name, "tick_time": now.isoformat()},
                )
                continue

            started.append(self._spawn(self._run_chain(stage, now)))

        return started

    async def wait_idle(self) -> None:
        """Wait until no dispatched run is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    # =========================================================================
    # Execution
    # =========================================================================

    async def _run_chain(
        self,
        stage: Stage,
        tick_time: datetime,
        upto: int | None = None,
    ) -> _RunResult:
        result = await self._execute(stage, tick_time, upto=upto)
        if result.triggers_children:
            await self._run_children(stage, tick_time, result.high_water)
        return result

    async def _run_children(
        self,
        parent: Stage,
        tick_time: datetime,
        high_water: int | None,
    ) -> None:
        children = [
            child
            for child in self.pipeline.children_of(parent.name)
            if not self._slots[child.name].suspended
        ]
        if not children:
            return

        await asyncio.gather(
            *(
                self._run_chain(
                    child,
                    tick_time,
                    upto=high_water if child.source.table_name == parent.target.name else None,
                )
                for child in children
            )
        )

    async def _execute(
        self,
        stage: Stage,
        tick_time: datetime,
        upto: int | None = None,
    ) -> _RunResult:
        slot = self._slots[stage.name]

        previous = slot.state.try_begin()
        if previous is None:
            logger.info(
                "Dropped trigger for running stage",
                extra={"stage": stage.name, "tick_time": tick_time.isoformat()},
            )
            return _RunResult(dropped=True)

        context = StageContext.new(stage.name, tick_time)
        deadline = stage.deadline_seconds or self.default_deadline_seconds
        started_at = _now_ms()

        try:
            if deadline:
                outcome = await asyncio.wait_for(
                    stage.run(upto=upto, context=context), timeout=deadline
                )
            else:
                outcome = await stage.run(upto=upto, context=context)
            # Read before leaving RUNNING: nothing else writes the target
            high_water = await stage.target.last_sequence()

        except GateEvaluationError as e:
            slot.state.finish(previous)
            logger.warning(
                "Gate evaluation failed, stage skipped for this tick",
                extra={"stage": stage.name, "tick_time": tick_time.isoformat(), "error": str(e)},
            )
            await self._record(context, started_at, "skipped", error=e)
            return _RunResult(error=e, skipped=True)

        except asyncio.TimeoutError:
            error = StageTimeoutError(stage.name, deadline or 0.0)
            await self._fail(slot, context, started_at, error)
            return _RunResult(error=error)

        except StageError as e:
            await self._fail(slot, context, started_at, e)
            return _RunResult(error=e)

        except Exception as e:
            logger.error(f"Unexpected error in stage '{stage.name}': {e}", exc_info=True)
            error = StageError(f"{type(e).__name__}: {e}", stage.name)
            error.kind = "internal_error"
            await self._fail(slot, context, started_at, error)
            return _RunResult(error=error)

        except asyncio.CancelledError:
            slot.state.finish(previous)
            logger.info("Stage run cancelled before commit", extra={"stage": stage.name})
            raise

        slot.state.finish(StageState.IDLE)
        slot.last_run_time = context.tick_time
        slot.last_outcome = outcome.kind.value
        await self._record(context, started_at, outcome.kind.value, outcome=outcome)
        return _RunResult(outcome=outcome, high_water=high_water)

    async def _fail(
        self,
        slot: _StageSlot,
        context: StageContext,
        started_at: int,
        error: StageError,
    ) -> None:
        failure = StageFailure(
            stage_name=slot.stage.name,
            tick_time=context.tick_time,
            kind=error.kind,
            message=error.message,
        )
        slot.last_run_time = context.tick_time
        slot.last_outcome = "failed"
        slot.last_error = failure
        slot.state.finish(StageState.FAILED)

        logger.error(
            "Stage run failed",
            extra={
                "stage": slot.stage.name,
                "run_id": context.run_id,
                "tick_time": context.tick_time.isoformat(),
                "error_kind": error.kind,
                "error": error.message,
            },
        )
        await self._record(context, started_at, "failed", error=error)

    async def _record(
        self,
        context: StageContext,
        started_at: int,
        outcome_name: str,
        outcome: RunOutcome | None = None,
        error: StageError | None = None,
    ) -> None:
        await self.history.record(
            StageRunRecord(
                run_id=context.run_id,
                stage_name=context.stage_name,
                tick_time=int(context.tick_time.timestamp() * 1000),
                started_at=started_at,
                finished_at=_now_ms(),
                outcome=outcome_name,
                rows_written=outcome.rows_written if outcome else 0,
                entries_consumed=outcome.entries_consumed if outcome else 0,
                cursor_from=outcome.cursor_from if outcome else None,
                cursor_to=outcome.cursor_to if outcome else None,
                error_kind=error.kind if error else None,
                error_message=error.message if error else None,
            )
        )

    # =========================================================================
    # Observation and control
    # =========================================================================

    def list_stages(self) -> list[StageStatus]:
        """Status of every stage, parents before children."""
        return [self.stage_status(stage.name) for stage in self.pipeline.stages]

    def stage_status(self, name: str) -> StageStatus:
        """Status of one stage.

        Raises:
            StageNotFoundError: If no stage has this name
        """
        stage = self.pipeline.stage(name)
        slot = self._slots[stage.name]
        return StageStatus(
            name=stage.name,
            state=slot.state.value,
            trigger=str(stage.trigger),
            source=stage.source.name,
            target=stage.target.name,
            suspended=slot.suspended,
            last_run_time=slot.last_run_time,
            last_outcome=slot.last_outcome,
            last_error=slot.last_error,
            next_run_time=slot.next_run_time,
        )

    async def has_unconsumed(self, name: str) -> bool:
        """Gate predicate of a stage.

        Raises:
            StageNotFoundError: If no stage has this name
            GateEvaluationError: If the change log could not be queried
        """
        return await self.pipeline.stage(name).has_unconsumed()

    async def force_run(self, name: str, cascade: bool = True) -> RunOutcome:
        """Run a stage now, bypassing its timer.

        Single-flight and the gate still apply: if the stage is already
        running the request is dropped and a no-op with reason "busy" is
        returned.

        Args:
            name: Stage name
            cascade: Also run AfterStage children on success or no-op

        Returns:
            The stage's own RunOutcome

        Raises:
            StageNotFoundError: If no stage has this name
            StageError: If the run failed (already recorded)
        """
        stage = self.pipeline.stage(name)
        tick_time = self._clock()
        logger.info("Manual stage run", extra={"stage": name, "cascade": cascade})

        result = await self._execute(stage, tick_time)
        if result.dropped:
            return RunOutcome.noop("busy")
        if result.outcome is None:
            raise result.error or StageError(f"Stage '{name}' finished without an outcome", name)
        if cascade:
            await self._run_children(stage, tick_time, result.high_water)
        return result.outcome

    def suspend(self, name: str) -> None:
        """Stop scheduling a stage; a suspended child is skipped by its parent."""
        self.pipeline.stage(name)
        slot = self._slots[name]
        slot.suspended = True
        slot.next_run_time = None
        logger.info("Stage suspended", extra={"stage": name})

    def resume(self, name: str) -> None:
        """Resume scheduling a suspended stage."""
        self.pipeline.stage(name)
        self._slots[name].suspended = False
        logger.info("Stage resumed", extra={"stage": name})

    async def run_history(self, name: str | None = None, limit: int = 50) -> list[StageRunRecord]:
        """Recent runs, newest first."""
        if name is not None:
            self.pipeline.stage(name)
        return await self.history.list_runs(name, limit=limit)


def _now_ms() -> int:
    return int(time.time() * 1000)
