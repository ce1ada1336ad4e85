"""
Long-Poll Consumer — cursor-tracked polling of the broker with adaptive backoff.

Runs as a single background task; never re-entrant.

State machine per request:
    items   → hand each to the enqueue callback, reset backoff, poll again at once
    idle    → sleep the current delay, grow it by idle_multiplier (capped)
    error   → sleep the current delay, grow it by error_multiplier (capped)
"""
from __future__ import annotations

import asyncio
import structlog
from enum import Enum
from typing import Any, Callable, Optional

from consumer.client import BrokerClient, TransportError
from models.schemas import InboundQuestion

logger = structlog.get_logger()


class PollOutcome(str, Enum):
    ITEMS = "items"
    IDLE = "idle"
    ERROR = "error"


class PollBackoff:
    """
    One delay shared by the idle and error branches, reset to ``floor``
    whenever items arrive and never grown past ``ceiling``.
    """

    def __init__(
        self,
        floor: float = 1.0,
        ceiling: float = 15.0,
        idle_multiplier: float = 1.2,
        error_multiplier: float = 2.0,
    ):
        self.floor = floor
        self.ceiling = max(ceiling, floor)
        self.idle_multiplier = idle_multiplier
        self.error_multiplier = error_multiplier
        self.current = floor

    def reset(self) -> None:
        self.current = self.floor

    def _advance(self, multiplier: float) -> float:
        delay = self.current
        self.current = min(self.current * multiplier, self.ceiling)
        return delay

    def next_idle(self) -> float:
        """Delay to sleep after an empty poll; grows the stored delay."""
        return self._advance(self.idle_multiplier)

    def next_error(self) -> float:
        """Delay to sleep after a failed poll; grows the stored delay."""
        return self._advance(self.error_multiplier)


class LongPollConsumer:
    """
    Polls the broker and hands every received question to ``enqueue_fn``.

    The cursor starts unset (receive everything) and follows each
    response's ``nextCursor``.
    """

    def __init__(
        self,
        client: BrokerClient,
        enqueue_fn: Callable[[InboundQuestion], Any],
        backoff: PollBackoff = None,
        on_cursor: Callable[[int], Any] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.client = client
        self._enqueue_fn = enqueue_fn
        self._on_cursor = on_cursor
        self.backoff = backoff or PollBackoff()
        self._sleep = sleep
        self.cursor: Optional[int] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.stats = {"polls": 0, "items": 0, "idle": 0, "errors": 0}

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="long_poll_consumer")
        logger.info("long_poll_consumer_started", cursor=self.cursor)

    async def stop(self) -> None:
        """Gracefully stop the poller."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("long_poll_consumer_stopped", cursor=self.cursor, **self.stats)

    async def _poll_loop(self) -> None:
        """Main polling loop — runs until stopped."""
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("poll_loop_error", error=str(e), exc_info=True)
                await self._sleep(self.backoff.next_error())

    async def poll_once(self) -> PollOutcome:
        """One request plus whatever sleep its outcome calls for."""
        self.stats["polls"] += 1
        try:
            response = await self.client.long_poll(self.cursor)
        except TransportError as e:
            self.stats["errors"] += 1
            delay = self.backoff.next_error()
            logger.warning("poll_error", error=str(e), retry_in_s=round(delay, 2))
            await self._sleep(delay)
            return PollOutcome.ERROR

        if response.is_idle:
            self.stats["idle"] += 1
            delay = self.backoff.next_idle()
            logger.debug("poll_idle", status=response.status_code, sleep_s=round(delay, 2))
            await self._sleep(delay)
            return PollOutcome.IDLE

        for raw in response.items:
            self.stats["items"] += 1
            self._enqueue_fn(InboundQuestion.from_raw(raw))

        if response.next_cursor is not None:
            self.cursor = response.next_cursor
            if self._on_cursor:
                self._on_cursor(self.cursor)

        self.backoff.reset()
        logger.info("poll_received", items=len(response.items), cursor=self.cursor)
        return PollOutcome.ITEMS
