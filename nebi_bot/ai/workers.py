from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger("nebi_bot")

T = TypeVar("T")


class PoolSaturatedError(RuntimeError):
    """The worker queue is full; the job was not accepted."""


@dataclass(slots=True)
class WorkerPoolStats:
    queue_depth: int
    active_workers: int
    completed_tasks: int


@dataclass(slots=True)
class _Job:
    kind: str
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class WorkerPool:
    """Fixed set of asyncio workers draining one bounded queue.

    ``submit`` never waits for queue space: a full queue raises
    :class:`PoolSaturatedError` so a worker can safely submit follow-up jobs
    without deadlocking on its own queue.
    """

    def __init__(self, name: str = "ai", workers: int = 2, queue_size: int = 200) -> None:
        self.name = name
        self.worker_count = max(1, int(workers))
        self.queue: asyncio.Queue[_Job] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._tasks: list[asyncio.Task[None]] = []
        self._active = 0
        self._completed = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"{self.name}-worker-{index}")
            for index in range(1, self.worker_count + 1)
        ]
        logger.info("Worker pool '%s' started (workers=%s queue=%s)", self.name, self.worker_count, self.queue.maxsize)

    def submit(self, factory: Callable[[], Awaitable[T]], *, kind: str = "task") -> "asyncio.Future[T]":
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        try:
            self.queue.put_nowait(_Job(kind=kind, factory=factory, future=future))
        except asyncio.QueueFull as exc:
            raise PoolSaturatedError(
                f"worker pool '{self.name}' is saturated ({self.queue.maxsize} queued); dropped {kind} job"
            ) from exc
        return future

    async def _worker(self) -> None:
        while True:
            job = await self.queue.get()
            self._active += 1
            try:
                if job.future.cancelled():
                    continue
                result = await job.factory()
                if not job.future.done():
                    job.future.set_result(result)
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.cancel()
                raise
            except Exception as exc:
                if not job.future.done():
                    job.future.set_exception(exc)
                else:
                    logger.exception("Worker job failed (%s): %s", job.kind, exc)
            finally:
                self._active -= 1
                self._completed += 1
                self.queue.task_done()

    async def join(self) -> None:
        await self.queue.join()

    def stats(self) -> WorkerPoolStats:
        return WorkerPoolStats(
            queue_depth=self.queue.qsize(),
            active_workers=self._active,
            completed_tasks=self._completed,
        )

    async def close(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        while True:
            try:
                job = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not job.future.done():
                job.future.cancel()
            self.queue.task_done()
