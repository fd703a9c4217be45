"""Background queue that turns study-log posts into stored AI replies.

Jobs are best effort: each one is attempted once, failures are logged and
dropped, and nothing cancels a job once it is running.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Protocol

from commonroom.logging import get_logger
from commonroom.service.ai_gateway import AIGateway, AIGatewayError
from commonroom.storage.models import AIResponse

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 2
DEFAULT_MAX_QUEUE_SIZE = 100


@dataclass(frozen=True)
class ReplyJob:
    post_id: int
    content: str
    target_language: str


class ReplyStore(Protocol):
    def add_ai_response(
        self,
        post_id: int,
        content: str,
        target_language: str,
        *,
        response_type: str = "study_support",
    ) -> AIResponse: ...


class ReplyScheduler(Protocol):
    def submit(self, job: ReplyJob) -> bool: ...


class AIReplyWorker:
    """Consumes :class:`ReplyJob` items with a fixed number of asyncio tasks."""

    def __init__(
        self,
        gateway: AIGateway,
        store: ReplyStore,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.concurrency = max(1, concurrency)
        self.max_queue_size = max_queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not all(t.done() for t in self._tasks)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        self._ensure_started()

    def _ensure_started(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._queue is not None and self._loop is loop and self.running:
            return self._queue
        # A new loop (e.g. a fresh test client) gets a fresh queue.
        self._discard_stale()
        self._loop = loop
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._tasks = [
            loop.create_task(self._consume(self._queue)) for _ in range(self.concurrency)
        ]
        logger.info("ai_reply_worker_started", concurrency=self.concurrency)
        return self._queue

    def _discard_stale(self) -> None:
        """Cancel consumers left on a previous loop and log jobs they never ran."""
        stale = [t for t in self._tasks if not t.done()]
        dropped = self._queue.qsize() if self._queue is not None else 0
        if stale or dropped:
            logger.warning(
                "ai_reply_worker_rebound",
                stale_consumers=len(stale),
                dropped_jobs=dropped,
            )
        old_loop = self._loop
        if stale and old_loop is not None and not old_loop.is_closed():
            for task in stale:
                old_loop.call_soon_threadsafe(task.cancel)
        self._tasks = []
        self._queue = None

    def submit(self, job: ReplyJob) -> bool:
        """Enqueue ``job`` without waiting. Returns False when it was dropped."""
        queue = self._ensure_started()
        try:
            queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("ai_reply_queue_full", post_id=job.post_id)
            return False
        logger.info("ai_reply_queued", post_id=job.post_id, queue_depth=queue.qsize())
        return True

    async def join(self) -> None:
        """Wait until every queued job has been attempted."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._queue = None
        self._loop = None
        logger.info("ai_reply_worker_stopped")

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            job = await queue.get()
            try:
                await self.process(job)
            finally:
                queue.task_done()

    async def process(self, job: ReplyJob) -> Optional[AIResponse]:
        """Run one job. Never raises for provider or storage failures."""
        try:
            text = await asyncio.to_thread(
                self.gateway.generate_supportive_reply, job.content, job.target_language
            )
        except AIGatewayError as exc:
            logger.warning(
                "ai_reply_failed",
                post_id=job.post_id,
                reason=exc.kind,
                error=str(exc),
            )
            return None
        try:
            response = await asyncio.to_thread(
                self.store.add_ai_response, job.post_id, text, job.target_language
            )
        except Exception as exc:
            logger.error(
                "ai_reply_store_failed",
                post_id=job.post_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        logger.info("ai_reply_stored", post_id=job.post_id, response_id=response.id)
        return response
