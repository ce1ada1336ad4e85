r"""
Answer normalization and idempotent acknowledgment.

Captured answer text is canonicalized before it is compared or sent:

    "Hello\r\n\r\n\r\nWorld  \nWorld\n\nHello"
        → strip \r, trailing blanks, collapse blank runs
        → drop repeated paragraphs          ("Hello" seen twice)
        → drop consecutive repeated lines   ("World" twice in a row)
        = "Hello\n\nWorld"

The acknowledger remembers a hash of the last answer it delivered for
each question and suppresses an identical re-send.
"""
from __future__ import annotations

import hashlib
import re
import structlog
from collections import OrderedDict
from enum import Enum
from typing import Any, Optional, Union

from consumer.client import TransportError

logger = structlog.get_logger()

_TRAILING_BLANKS = re.compile(r"[ \t]+\n")
_BLANK_RUN = re.compile(r"\n{3,}")
_PARAGRAPH_BREAK = re.compile(r"\n{2,}")


def _normalize_once(text: str) -> str:
    t = text.replace("\r", "")
    t = _TRAILING_BLANKS.sub("\n", t)
    t = _BLANK_RUN.sub("\n\n", t).strip()
    if not t:
        return t

    seen: set[str] = set()
    paragraphs = []
    for paragraph in _PARAGRAPH_BREAK.split(t):
        key = paragraph.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        paragraphs.append(key)
    t = "\n\n".join(paragraphs)

    lines = []
    prev = ""
    for line in t.split("\n"):
        if line.strip() == prev.strip():
            continue
        lines.append(line)
        prev = line
    return "\n".join(lines).strip()


def normalize_answer(text: Optional[str]) -> str:
    """
    Canonical form of a captured answer.

    Line removal can expose a paragraph that now duplicates an earlier one,
    so passes repeat until nothing changes; this keeps the result stable
    under re-normalization.
    """
    current = text or ""
    while True:
        nxt = _normalize_once(current)
        if nxt == current:
            return nxt
        current = nxt


def answer_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class AckStatus(str, Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"
    EMPTY = "empty"
    FAILED = "failed"


class AnswerAcknowledger:
    """
    Sends normalized answers to the broker at most once per distinct content.

    The hash cache is updated only after the broker accepted the answer, so
    a failed send is retried the next time the same answer is captured.
    """

    def __init__(self, client: Any, max_entries: int = 10000):
        self.client = client                       # anything with async post_answer(question_id, text)
        self.max_entries = max_entries
        self._last_sent: OrderedDict[str, str] = OrderedDict()

    def last_hash(self, question_id: Union[int, str]) -> Optional[str]:
        return self._last_sent.get(str(question_id))

    def _remember(self, key: str, digest: str) -> None:
        self._last_sent[key] = digest
        self._last_sent.move_to_end(key)
        while len(self._last_sent) > self.max_entries:
            self._last_sent.popitem(last=False)

    async def acknowledge(self, question_id: Optional[Union[int, str]], raw_text: str) -> AckStatus:
        cleaned = normalize_answer(raw_text)
        if not cleaned:
            logger.info("answer_empty_skipped", question_id=question_id)
            return AckStatus.EMPTY

        key = "" if question_id is None else str(question_id)
        digest = answer_hash(cleaned)
        if key and self._last_sent.get(key) == digest:
            logger.info("answer_duplicate_suppressed", question_id=key)
            return AckStatus.DUPLICATE

        try:
            await self.client.post_answer(question_id, cleaned)
        except TransportError as e:
            logger.error("answer_ack_failed", question_id=question_id, error=str(e))
            return AckStatus.FAILED

        if key:
            self._remember(key, digest)
        logger.info("answer_acknowledged", question_id=question_id, length=len(cleaned))
        return AckStatus.SENT
