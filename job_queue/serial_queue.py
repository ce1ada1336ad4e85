"""
Serial Question Queue — one question fully handled before the next starts.

Topology:
  ┌────────────┐  enqueue   ┌──────────────┐   FIFO   ┌──────────────┐
  │ Poll loop  │──────────▶│ seen-id      │────────▶│ single worker │──▶ handler(question)
  │ (producer) │            │ filter       │          │ (one in      │
  └────────────┘            └──────────────┘          │  flight)     │
                                                      └──────────────┘

The downstream automation is not reentrant, so there is exactly one
worker task. A failing handler is logged and the worker moves on; the
question is not retried.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional

from models.schemas import InboundQuestion

logger = structlog.get_logger()

QuestionHandler = Callable[[InboundQuestion], Awaitable[Any]]


class SeenIds:
    """
    Insertion-ordered set of question ids already accepted.

    Retention: ``prune_below(cursor)`` forgets integer ids more than
    ``retention`` below the cursor (the broker never redelivers below the
    cursor), and ``max_size`` caps memory by evicting the oldest entries.
    """

    def __init__(self, max_size: int = 10000, retention: int = 1000):
        self.max_size = max_size
        self.retention = retention
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, key: str) -> None:
        self._ids[key] = None
        while len(self._ids) > self.max_size:
            self._ids.popitem(last=False)

    def prune_below(self, cursor: int) -> int:
        floor = cursor - self.retention
        stale = [k for k in self._ids if k.lstrip("-").isdigit() and int(k) <= floor]
        for key in stale:
            del self._ids[key]
        return len(stale)


class SerialQuestionQueue:
    """
    FIFO of inbound questions drained by exactly one worker.

    Usage:
        queue = SerialQuestionQueue(handler)
        await queue.start_background()
        queue.enqueue(question)          # never blocks
        await queue.stop()
    """

    def __init__(
        self,
        handler: QuestionHandler,
        seen: SeenIds = None,
        settle_delay: float = 0.0,
    ):
        self.handler = handler
        self.seen = seen or SeenIds()
        self.settle_delay = settle_delay
        self._queue: asyncio.Queue[InboundQuestion] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.stats = {"enqueued": 0, "duplicates": 0, "processed": 0, "failed": 0}

    @property
    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, question: InboundQuestion) -> bool:
        """Queue a question unless its id was seen before. Returns True if queued."""
        key = question.key
        if key and key in self.seen:
            self.stats["duplicates"] += 1
            logger.debug("question_duplicate_skipped", question_id=key)
            return False
        if key:
            self.seen.add(key)

        self._queue.put_nowait(question)
        self.stats["enqueued"] += 1
        logger.info("question_enqueued", question_id=key or None, depth=self._queue.qsize())
        return True

    async def start_background(self) -> asyncio.Task:
        """Start the worker in a background task. Returns the task handle."""
        self._running = True
        self._task = asyncio.create_task(self._run(), name="serial_question_worker")
        return self._task

    async def stop(self) -> None:
        """Stop the worker. A question in flight is cancelled with it."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("serial_queue_stopped", **self.stats)

    async def join(self) -> None:
        """Wait until every queued question has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        logger.info("serial_queue_started")
        while self._running:
            question = await self._queue.get()
            try:
                await self._handle(question)
            finally:
                self._queue.task_done()
            if self.settle_delay:
                await asyncio.sleep(self.settle_delay)

    async def _handle(self, question: InboundQuestion) -> None:
        logger.info("processing_question",
                    question_id=question.key or None,
                    attachments=len(question.attachments))
        try:
            await self.handler(question)
            self.stats["processed"] += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats["failed"] += 1
            logger.error("question_processing_failed",
                         question_id=question.key or None,
                         error=str(e),
                         exc_info=True)
