"""Generation-tagged poll scheduler."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import IntEnum, auto
from typing import Generic, TypeVar

import structlog
from codetiming import Timer

from betwatch.core.logging import Logger

logger: Logger = structlog.get_logger()

ResultType = TypeVar("ResultType")

RefreshCycle = Callable[[], Awaitable[ResultType]]
ResultCallback = Callable[[ResultType], None]


class SchedulerState(IntEnum):
    """Poll scheduler status"""

    IDLE = auto()  # No timer armed
    ACTIVE = auto()  # Timer armed, cycles running at the interval


def validate_interval(interval_ms: int) -> None:
    """Raise ValueError unless interval_ms is a positive integer."""
    if isinstance(interval_ms, bool) or not isinstance(interval_ms, int):
        raise ValueError(f"interval_ms must be an integer, got {interval_ms!r}")

    if interval_ms <= 0:
        raise ValueError(f"interval_ms must be positive, got {interval_ms}")


@dataclass(slots=True)
class SchedulerStats:
    """Poll cycle counters."""

    ticks: int = 0
    ticks_coalesced: int = 0
    cycles_started: int = 0
    cycles_completed: int = 0
    cycles_discarded: int = 0
    cycles_failed: int = 0
    total_cycle_seconds: float = 0.0

    @property
    def avg_cycle_seconds(self) -> float:
        """
        Average duration of finished cycles.

        Returns 0.0 if no cycle finished.
        """
        finished = self.cycles_completed + self.cycles_discarded + self.cycles_failed
        if finished > 0:
            return self.total_cycle_seconds / finished
        return 0.0


class PollScheduler(Generic[ResultType]):
    """
    Runs a refresh cycle repeatedly at a configurable interval.

    Lifecycle:
        1. start(interval_ms) arms a timer, running a cycle immediately
        2. set_interval(ms) re-arms the timer under a new generation
        3. stop() disarms the timer

    At most one cycle of the current generation is in flight. Ticks arriving
    while it runs collapse into a single pending retrigger. Cycles are never
    cancelled; results of a cycle whose generation was superseded (or which
    finishes after stop) are dropped instead of delivered to on_result.
    """

    __slots__ = (
        "_cycle",
        "_on_result",
        "_name",
        "_state",
        "_interval_ms",
        "_generation",
        "_timer_task",
        "_inflight",
        "_inflight_generation",
        "_pending",
        "_cycle_tasks",
        "_stats",
    )

    def __init__(
        self,
        cycle: RefreshCycle[ResultType],
        on_result: ResultCallback[ResultType],
        interval_ms: int = 60_000,
        name: str = "poll",
    ) -> None:
        """
        Args:
            cycle: Coroutine function performing one refresh cycle
            on_result: Synchronous sink for results of current-generation cycles
            interval_ms: Initial interval used when start() is given none
            name: Task name prefix
        """
        validate_interval(interval_ms)

        self._cycle = cycle
        self._on_result = on_result
        self._name = name

        self._state = SchedulerState.IDLE
        self._interval_ms = interval_ms
        self._generation = 0

        self._timer_task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._inflight_generation = 0
        self._pending = False
        self._cycle_tasks: set[asyncio.Task] = set()
        self._stats = SchedulerStats()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == SchedulerState.ACTIVE

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def is_cycle_inflight(self) -> bool:
        """Whether a current-generation cycle is running."""
        return (
            self._inflight is not None
            and not self._inflight.done()
            and self._inflight_generation == self._generation
        )

    @property
    def stats(self) -> SchedulerStats:
        """Read-only access to scheduler statistics."""
        return self._stats

    def start(self, interval_ms: int | None = None) -> None:
        """Idle -> Active. Must be called from a running event loop."""
        if self._state == SchedulerState.ACTIVE:
            logger.warning(f"Scheduler {self._name} already running")
            return

        if interval_ms is not None:
            validate_interval(interval_ms)
            self._interval_ms = interval_ms

        self._state = SchedulerState.ACTIVE
        self._arm()

        logger.info(
            f"Scheduler {self._name} started: interval={self._interval_ms}ms "
            f"generation={self._generation}"
        )

    def set_interval(self, interval_ms: int) -> None:
        """
        Change the interval.

        While active the old timer is cancelled and a new generation is armed
        immediately; in-flight results of the old generation are discarded.
        """
        validate_interval(interval_ms)
        self._interval_ms = interval_ms

        if self._state != SchedulerState.ACTIVE:
            return

        self._cancel_timer()
        self._arm()

        logger.info(
            f"Scheduler {self._name} interval changed to {interval_ms}ms "
            f"generation={self._generation}"
        )

    def trigger(self) -> bool:
        """
        Request an out-of-band cycle in the current generation.

        Returns False when idle.
        """
        if self._state != SchedulerState.ACTIVE:
            return False

        self._tick(self._generation)
        return True

    async def stop(self) -> None:
        """Active -> Idle. In-flight cycles finish but their results are dropped."""
        if self._state != SchedulerState.ACTIVE:
            return

        self._state = SchedulerState.IDLE
        self._generation += 1
        self._pending = False

        timer = self._cancel_timer()
        if timer:
            try:
                await timer
            except asyncio.CancelledError:
                pass

        logger.info(f"Scheduler {self._name} stopped")

    async def wait_idle(self) -> None:
        """Wait for every outstanding cycle task, including stale ones."""
        while self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)

    def is_current(self, generation: int) -> bool:
        return self._state == SchedulerState.ACTIVE and generation == self._generation

    def _arm(self) -> None:
        self._generation += 1
        self._pending = False

        generation = self._generation
        self._timer_task = asyncio.create_task(
            self._timer_loop(generation, self._interval_ms / 1000),
            name=f"{self._name}-timer-{generation}",
        )

    def _cancel_timer(self) -> asyncio.Task | None:
        timer = self._timer_task
        self._timer_task = None

        if timer and not timer.done():
            timer.cancel()

        return timer

    async def _timer_loop(self, generation: int, interval: float) -> None:
        """Background task: tick now, then every interval seconds."""
        while self.is_current(generation):
            try:
                self._tick(generation)
            except Exception as e:
                logger.error(f"Scheduler {self._name} tick error: {e}", exc_info=True)

            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

    def _tick(self, generation: int) -> None:
        self._stats.ticks += 1

        if self.is_cycle_inflight:
            if self._pending:
                self._stats.ticks_coalesced += 1
            self._pending = True
            return

        self._launch(generation)

    def _launch(self, generation: int) -> None:
        self._stats.cycles_started += 1
        self._inflight_generation = generation

        task = asyncio.create_task(
            self._run_cycle(generation),
            name=f"{self._name}-cycle-{generation}",
        )
        self._inflight = task
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    async def _run_cycle(self, generation: int) -> None:
        timer = Timer(f"{self._name}-cycle", logger=None)
        timer.start()

        try:
            result = await self._cycle()

        except Exception as e:
            self._stats.cycles_failed += 1
            logger.error(
                f"Scheduler {self._name} cycle failed (generation={generation}): {e}",
                exc_info=True,
            )

        else:
            if self.is_current(generation):
                try:
                    self._on_result(result)
                    self._stats.cycles_completed += 1
                except Exception as e:
                    self._stats.cycles_failed += 1
                    logger.error(
                        f"Scheduler {self._name} result handler error: {e}",
                        exc_info=True,
                    )
            else:
                self._stats.cycles_discarded += 1
                logger.debug(
                    f"Scheduler {self._name} discarded stale cycle "
                    f"(generation={generation}, current={self._generation})"
                )

        finally:
            self._stats.total_cycle_seconds += timer.stop()

            if self.is_current(generation) and self._pending:
                self._pending = False
                self._launch(generation)
