"""
Broker Client — the consumer's HTTP transport to the long-poll broker.

The long-poll request carries a client timeout strictly greater than the
broker's own long-poll deadline, so a broker that correctly answered
"no data" (204) is never confused with a transport failure.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from config.settings import ConsumerConfig, get_settings

logger = structlog.get_logger()

IDLE_STATUSES = {202, 204, 304}


class TransportError(Exception):
    """Network failure or timeout talking to the broker. Drives backoff, never surfaced upstream."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class ProtocolError(TransportError):
    """The broker answered with a status or body the consumer does not understand."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, retryable=status_code >= 500)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.retryable


@dataclass
class PollResponse:
    """Outcome of one long-poll request. ``items`` empty means "no data"."""
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[int] = None
    status_code: int = 200

    @property
    def is_idle(self) -> bool:
        return not self.items


def extract_items(body: Any) -> list[dict[str, Any]]:
    """
    Accept ``{"items": [...]}``, a bare list, ``{"item": {...}}`` or a single
    question object.
    """
    if isinstance(body, dict) and isinstance(body.get("items"), list):
        items = body["items"]
    elif isinstance(body, list):
        items = body
    elif isinstance(body, dict) and body.get("item"):
        items = [body["item"]]
    elif isinstance(body, dict) and any(body.get(k) for k in ("id", "text", "content", "prompt")):
        items = [body]
    else:
        items = []
    return [item for item in items if isinstance(item, dict)]


def _parse_cursor(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class BrokerClient:
    """
    Thin async client over the broker's HTTP surface.

    Bearer tokens and extra headers are passed through untouched.
    """

    def __init__(
        self,
        config: ConsumerConfig = None,
        long_poll_timeout: float = 25.0,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.config = config or get_settings().consumer
        self.long_poll_timeout = long_poll_timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def poll_timeout(self) -> float:
        return self.long_poll_timeout + self.config.client_timeout_margin

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        headers.update(self.config.extra_headers or {})
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.broker_url,
                headers=self._headers(),
                timeout=self.config.ack_timeout,
                transport=self._transport,
            )
        return self.client

    async def long_poll(self, cursor: Optional[int] = None) -> PollResponse:
        """One long-poll round trip. Raises TransportError/ProtocolError."""
        client = await self._get_client()
        params = {"cursor": str(cursor)} if cursor is not None else None
        try:
            response = await client.get(
                "/v1/questions/long-poll",
                params=params,
                timeout=self.poll_timeout,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"long poll failed: {type(e).__name__}: {e}") from e

        if response.status_code in IDLE_STATUSES or not response.content:
            return PollResponse(status_code=response.status_code)

        if response.status_code != 200:
            raise ProtocolError(
                f"unexpected long-poll status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProtocolError("long-poll body is not JSON", status_code=200) from e

        return PollResponse(
            items=extract_items(body),
            next_cursor=_parse_cursor(body.get("nextCursor")) if isinstance(body, dict) else None,
            status_code=200,
        )

    async def post_answer(self, question_id: Union[int, str], answer: str) -> dict[str, Any]:
        """
        Deliver an answer. Transport failures and 5xx responses are retried
        ``ack_attempts`` times with exponential wait before giving up.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self.config.ack_attempts, 1)),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._post_answer_once(question_id, answer)

    async def _post_answer_once(self, question_id: Union[int, str], answer: str) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                "/v1/answers",
                json={"questionId": question_id, "answer": answer},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"answer post failed: {type(e).__name__}: {e}") from e

        if response.status_code >= 500:
            raise TransportError(f"answer post got {response.status_code}")
        if response.status_code >= 400:
            raise ProtocolError(
                f"answer rejected with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json() if response.content else {}

    async def close(self):
        if self.client:
            await self.client.aclose()
