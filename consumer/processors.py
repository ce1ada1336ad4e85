"""
Question processors — the boundary to whatever actually answers a question.

The real answerer (UI automation against a third-party chat page) lives
outside this repository. It plugs in as a ``QuestionProcessor``; a
supplementary fast-path source (e.g. a sniffed network response) plugs in
through ``FastPathProcessor`` instead of a separate consumer variant.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Optional

from models.schemas import InboundQuestion

logger = structlog.get_logger()


class QuestionProcessor(abc.ABC):
    """Turns one question into raw answer text. Never called re-entrantly."""

    name = "processor"

    @abc.abstractmethod
    async def process(self, question: InboundQuestion) -> str:
        ...


class EchoProcessor(QuestionProcessor):
    """Development processor: answers with the question text and attachment names."""

    name = "echo"

    def __init__(self, prefix: str = "Echo: ", delay: float = 0.0):
        self.prefix = prefix
        self.delay = delay

    async def process(self, question: InboundQuestion) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = f"{self.prefix}{question.text}"
        names = [a.get("filename") or a.get("url") or "file" for a in question.attachments]
        if names:
            answer += "\n\nAttachments: " + ", ".join(str(n) for n in names)
        return answer


class FastPathProcessor(QuestionProcessor):
    """
    Races an optional fast-path source against the primary processor.

    The first non-empty answer wins. If the fast path comes back empty or
    fails, the primary's answer is awaited. The loser is cancelled.
    """

    name = "fast_path"

    def __init__(self, primary: QuestionProcessor, fast_path: Optional[QuestionProcessor] = None):
        self.primary = primary
        self.fast_path = fast_path

    async def process(self, question: InboundQuestion) -> str:
        if self.fast_path is None:
            return await self.primary.process(question)

        primary = asyncio.create_task(self.primary.process(question), name="primary_answer")
        fast = asyncio.create_task(self.fast_path.process(question), name="fast_path_answer")
        try:
            done, _ = await asyncio.wait({primary, fast}, return_when=asyncio.FIRST_COMPLETED)

            if fast in done:
                answer = self._fast_result(fast, question)
                if answer:
                    return answer
                return await primary

            # primary finished first; its failure propagates
            answer = primary.result()
            if answer:
                return answer
            await asyncio.wait({fast})
            return self._fast_result(fast, question)
        finally:
            for task in (primary, fast):
                if not task.done():
                    task.cancel()

    def _fast_result(self, task: asyncio.Task, question: InboundQuestion) -> str:
        try:
            return task.result() or ""
        except Exception as e:
            logger.warning("fast_path_failed", question_id=question.key or None, error=str(e))
            return ""


def create_processor(name: str = "echo") -> QuestionProcessor:
    """Factory: build the configured processor."""
    if name == "echo":
        return EchoProcessor()
    raise ValueError(f"Unknown processor: {name}")
