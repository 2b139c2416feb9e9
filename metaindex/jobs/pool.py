from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from uuid import UUID

from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Job = Callable[[], Awaitable[None]]


class WorkerPool:
    """Bounded queue drained by a fixed number of asyncio worker tasks.

    Workers start lazily inside the running loop on first submit. ``submit``
    never blocks: a full queue rejects the job, and the caller relies on the
    event staying unfinished so the recovery scanner picks it up later.
    """

    def __init__(self, *, concurrency: int, max_queue_size: int) -> None:
        self.concurrency = max(1, concurrency)
        self.max_queue_size = max(1, max_queue_size)
        self._queue: asyncio.Queue[tuple[UUID, Job]] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._pending: set[UUID] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    def submit(self, event_id: UUID, job: Job) -> bool:
        queue = self._ensure_started()
        if event_id in self._pending:
            logger.info("event already queued id=%s", event_id)
            return True
        try:
            queue.put_nowait((event_id, job))
        except asyncio.QueueFull:
            logger.warning("worker queue full (size=%s); event id=%s left for recovery", self.max_queue_size, event_id)
            return False
        self._pending.add(event_id)
        return True

    def is_pending(self, event_id: UUID) -> bool:
        return event_id in self._pending

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        for worker in workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._queue = None
        self._loop = None
        self._pending.clear()

    def _ensure_started(self) -> asyncio.Queue[tuple[UUID, Job]]:
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop or all(worker.done() for worker in self._workers):
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=self.max_queue_size)
            self._pending.clear()
            self._workers = [
                asyncio.create_task(self._run_worker(index), name=f"metaindex-worker-{index}")
                for index in range(self.concurrency)
            ]
            logger.info("started worker pool concurrency=%s queue_size=%s", self.concurrency, self.max_queue_size)
        return self._queue

    async def _run_worker(self, index: int) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            event_id, job = await queue.get()
            try:
                with tracer.start_as_current_span("worker.process_event") as span:
                    span.set_attribute("event.id", str(event_id))
                    span.set_attribute("worker.index", index)
                    await job()
            except Exception:
                logger.exception("worker job failed for event id=%s", event_id)
            finally:
                self._pending.discard(event_id)
                queue.task_done()
