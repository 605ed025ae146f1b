"""
Stage Scheduler

Runs stage jobs as asyncio tasks with a bounded number executing at once.
Delayed jobs are armed with loop timers; nothing sleeps while holding a slot.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

Job = Callable[[], Awaitable[object]]


class StageScheduler:
    """Bounded, timer-driven executor for stage jobs."""

    def __init__(self, workers: int = 10):
        self.workers = workers
        self._semaphore = asyncio.Semaphore(workers)
        self._tasks: set[asyncio.Task] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self.running = True
        self.logger = structlog.get_logger("migration").bind(component="scheduler")

    def enqueue(self, job: Job, *, name: str, delay: float = 0.0) -> None:
        """Run ``job`` now, or after ``delay`` seconds."""
        if not self.running:
            self.logger.warning("Scheduler stopped, dropping job", job=name)
            return
        if delay <= 0:
            self._spawn(job, name)
            return

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def fire() -> None:
            self._timers.discard(handle)
            self._spawn(job, name)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)
        self.logger.debug("Job scheduled", job=name, delay=delay)

    def _spawn(self, job: Job, name: str) -> None:
        if not self.running:
            return
        task = asyncio.create_task(self._run(job, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job, name: str) -> None:
        async with self._semaphore:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # stage jobs record their own failures; reaching here is a bug
                self.logger.exception("Stage job crashed", job=name, error=str(e))

    @property
    def pending(self) -> int:
        """Jobs running, waiting for a slot, or waiting on a timer."""
        return len(self._tasks) + len(self._timers)

    async def drain(self) -> None:
        """Wait until no job is running or queued for a slot (timers excluded)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Disarm timers and cancel running jobs."""
        self.running = False
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info("Stopped stage jobs", count=len(tasks))
        self._tasks.clear()
