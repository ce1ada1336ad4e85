"""
Broker — the façade the HTTP handlers call.

One instance owns every piece of broker state. It is built once at
process start and handed to the API explicitly (``create_app(broker)``).
Request bodies are validated at the API edge; these methods take the
already-validated fields.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

from broker.attachments import AttachmentStore, decode_content
from broker.errors import PartialDecodeError, ValidationError
from broker.question_log import AnswerLog, QuestionLog
from broker.waiters import WaiterRegistry
from config.settings import BrokerConfig
from models.schemas import (
    Answer, AttachmentMeta, AttachmentRef, LongPollBatch, Question, StoredAttachment,
)

logger = structlog.get_logger()


class Broker:
    def __init__(self, config: BrokerConfig = None):
        self.config = config or BrokerConfig()
        self.attachments = AttachmentStore(url_prefix=self.config.attachment_url_prefix)
        self.questions = QuestionLog()
        self.answers = AnswerLog()
        self.waiters = WaiterRegistry(self.questions)

    # ── Questions ─────────────────────────────────────────────

    def submit_question(self, text: str, attachments: Any = None) -> Question:
        """
        Normalize attachments, append and fan out.

        Append and notify run back to back with no await in between, so a
        waiter registered concurrently either sees the question in its
        initial check or is registered before ``notify`` scans.
        """
        refs = self.attachments.normalize_many(attachments)
        question = self.questions.append(text, refs)
        delivered = self.waiters.notify()

        logger.info("question_submitted",
                    question_id=question.id,
                    attachments=len(refs),
                    delivered_to=delivered)
        return question

    async def long_poll(self, cursor: int, timeout: Optional[float] = None) -> Optional[LongPollBatch]:
        if timeout is None:
            timeout = self.config.long_poll_timeout
        return await self.waiters.wait(cursor, timeout)

    # ── Attachments ───────────────────────────────────────────

    def store_attachment(
        self,
        content: str,
        filename: Optional[str] = None,
        mime: Optional[str] = None,
    ) -> AttachmentRef:
        """Decode and store standalone content; a data-URI mime wins over ``mime``."""
        try:
            data, resolved_mime = decode_content(content, mime or None)
        except PartialDecodeError as e:
            raise ValidationError("Invalid content encoding") from e

        return self.attachments.store(filename or None, resolved_mime, data)

    def upload_attachment(self, filename: Optional[str], mime: Optional[str], content: bytes) -> AttachmentRef:
        return self.attachments.store(filename, mime, content)

    def fetch_attachment(self, attachment_id: int) -> StoredAttachment:
        return self.attachments.fetch(attachment_id)

    # ── Answers ───────────────────────────────────────────────

    def submit_answer(self, question_id: Union[int, str], text: str) -> Answer:
        answer = self.answers.append(question_id, text)
        logger.info("answer_received",
                    question_id=question_id,
                    length=len(text),
                    preview=text[:80])
        return answer

    # ── Introspection ─────────────────────────────────────────

    def list_questions(self) -> list[Question]:
        return self.questions.all()

    def list_answers(self) -> list[Answer]:
        return self.answers.all()

    def list_attachments(self) -> list[AttachmentMeta]:
        return self.attachments.list_meta()

    def stats(self) -> dict[str, int]:
        return {
            "questions": len(self.questions),
            "answers": len(self.answers),
            "attachments": len(self.attachments),
            "pending_waiters": self.waiters.pending,
            "last_question_id": self.questions.last_id,
        }

    def shutdown(self) -> None:
        released = self.waiters.close()
        logger.info("broker_shutdown", released_waiters=released)
