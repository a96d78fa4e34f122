"""
Fixed-interval task scheduling.

Each loop runs as its own asyncio task. A tick that is still running when
the next one is due causes that next tick to be skipped, not queued.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from shared.models import TickResult, utcnow

logger = structlog.get_logger(__name__)

TickFn = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """
    Runs a coroutine function every ``interval`` seconds until stopped.
    """

    def __init__(self, name: str, interval: float, tick: TickFn):
        self.name = name
        self.interval = interval
        self._tick = tick
        self._stopping = asyncio.Event()
        self._runner: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self.last_started_at: datetime | None = None
        self.last_result: Any = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._runner = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        logger.info("periodic_task_started", task=self.name, interval=self.interval)

    async def stop(self, grace: float = 5.0) -> None:
        """
        Stop scheduling and wait briefly for an in-flight tick.

        A tick still running after ``grace`` seconds is cancelled.
        """
        self._stopping.set()
        if self._runner is not None:
            await self._runner
            self._runner = None

        inflight = self._inflight
        if inflight is not None and not inflight.done():
            done, _ = await asyncio.wait({inflight}, timeout=grace)
            if not done:
                inflight.cancel()
                try:
                    await inflight
                except asyncio.CancelledError:
                    pass
        self._inflight = None
        logger.info("periodic_task_stopped", task=self.name, runs=self.runs, skipped=self.skipped)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            if self.busy:
                self.skipped += 1
                logger.debug("tick_skipped", task=self.name)
            else:
                self._inflight = asyncio.create_task(self.run_once(), name=f"tick:{self.name}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> Any:
        """Run one tick now, recording its result. Errors are logged, not raised."""
        self.runs += 1
        self.last_started_at = utcnow()
        try:
            self.last_result = await self._tick()
            self.last_error = None
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error("tick_failed", task=self.name, error=str(e))
        return self.last_result

    def status(self) -> dict[str, Any]:
        last_result = self.last_result
        if isinstance(last_result, TickResult):
            last_result = last_result.model_dump(mode="json")
        return {
            "name": self.name,
            "interval_seconds": self.interval,
            "running": self.running,
            "busy": self.busy,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_error": self.last_error,
            "last_result": last_result,
        }


class Scheduler:
    """Owns a set of periodic tasks tied to the process lifetime."""

    def __init__(self) -> None:
        self.tasks: dict[str, PeriodicTask] = {}

    def add(self, name: str, interval: float, tick: TickFn) -> PeriodicTask:
        task = PeriodicTask(name, interval, tick)
        self.tasks[name] = task
        return task

    def start(self) -> None:
        for task in self.tasks.values():
            task.start()

    async def stop(self) -> None:
        await asyncio.gather(*(task.stop() for task in self.tasks.values()))

    @property
    def running(self) -> bool:
        return any(task.running for task in self.tasks.values())

    def status(self) -> list[dict[str, Any]]:
        return [task.status() for task in self.tasks.values()]
