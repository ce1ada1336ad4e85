"""
Waiter Registry & Delivery Engine — suspended long-poll requests.

Lifecycle of one long-poll request:

    wait(cursor) ──▶ questions past cursor? ──yes──▶ return batch (no waiter)
                           │ no
                           ▼
                    register Waiter + deadline timer
                           │
        ┌──────────────────┼────────────────────┐
        ▼                  ▼                    ▼
    notify()          timer fires          client goes away
    (new question)    (deadline)           (task cancelled)
        │                  │                    │
        └───────── claim: pop from registry ────┘
                           │
            only the path that popped the waiter
            resolves the future / cancels the timer

Every path runs on the event loop thread without awaiting between the
pop and the resolve, so claim-then-respond is a single atomic step.
"""
from __future__ import annotations

import asyncio
import itertools
import time
import structlog
from typing import Optional

from broker.question_log import QuestionLog
from models.schemas import LongPollBatch

logger = structlog.get_logger()


class Waiter:
    """A suspended long-poll request."""

    __slots__ = ("id", "cursor", "future", "timer", "registered_at")

    def __init__(self, waiter_id: int, cursor: int, future: asyncio.Future):
        self.id = waiter_id
        self.cursor = cursor
        self.future = future
        self.timer: Optional[asyncio.TimerHandle] = None
        self.registered_at = time.monotonic()


class WaiterRegistry:
    """
    Single authoritative map of pending waiters.

    Usage:
        registry = WaiterRegistry(question_log)
        batch = await registry.wait(cursor=0, timeout=25.0)   # None → no data
        registry.notify()                                      # after each append
    """

    def __init__(self, log: QuestionLog):
        self.log = log
        self._waiters: dict[int, Waiter] = {}
        self._ids = itertools.count(1)

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def batch_since(self, cursor: int) -> Optional[LongPollBatch]:
        items = self.log.list_since(cursor)
        if not items:
            return None
        return LongPollBatch(items=items, next_cursor=items[-1].id)

    async def wait(self, cursor: int, timeout: float) -> Optional[LongPollBatch]:
        """Return questions past ``cursor``, suspending up to ``timeout`` seconds."""
        batch = self.batch_since(cursor)
        if batch is not None:
            return batch

        loop = asyncio.get_running_loop()
        waiter = Waiter(next(self._ids), cursor, loop.create_future())
        waiter.timer = loop.call_later(timeout, self._expire, waiter.id)
        self._waiters[waiter.id] = waiter
        logger.debug("waiter_registered",
                     waiter_id=waiter.id,
                     cursor=cursor,
                     pending=len(self._waiters))

        try:
            return await waiter.future
        finally:
            # Still registered here only if the request itself was cancelled.
            abandoned = self._claim(waiter.id)
            if abandoned is not None:
                abandoned.timer.cancel()
                logger.debug("waiter_abandoned", waiter_id=waiter.id, cursor=cursor)

    def notify(self) -> int:
        """Deliver to every waiter that now has questions past its cursor."""
        if not self._waiters:
            return 0

        delivered = 0
        for waiter_id, waiter in list(self._waiters.items()):
            batch = self.batch_since(waiter.cursor)
            if batch is None:
                continue
            if self._claim(waiter_id) is None:
                continue
            waiter.timer.cancel()
            if not waiter.future.done():
                waiter.future.set_result(batch)
                delivered += 1

        if delivered:
            logger.info("waiters_notified", delivered=delivered, pending=len(self._waiters))
        return delivered

    def close(self) -> int:
        """Release every pending waiter with "no data"."""
        released = 0
        for waiter_id in list(self._waiters):
            waiter = self._claim(waiter_id)
            if waiter is None:
                continue
            waiter.timer.cancel()
            if not waiter.future.done():
                waiter.future.set_result(None)
                released += 1
        return released

    def _claim(self, waiter_id: int) -> Optional[Waiter]:
        return self._waiters.pop(waiter_id, None)

    def _expire(self, waiter_id: int) -> None:
        waiter = self._claim(waiter_id)
        if waiter is None:
            return  # already delivered or abandoned
        if not waiter.future.done():
            waiter.future.set_result(None)
        logger.debug("long_poll_timeout",
                     waiter_id=waiter_id,
                     cursor=waiter.cursor,
                     waited_s=round(time.monotonic() - waiter.registered_at, 3))
