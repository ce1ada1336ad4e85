"""
Core data models for the long-poll bridge.
These are the universal types shared by the broker, the API and the consumer.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Attachments
# ──────────────────────────────────────────────────────────────

class AttachmentRef(BaseModel):
    """
    An attachment as it appears on a Question.

    Stored references carry ``id`` and ``size``; external pass-through
    references only carry ``filename``, ``mime`` and ``url``.
    """
    id: Optional[int] = None
    filename: str = "file"
    mime: str = "application/octet-stream"
    size: Optional[int] = None
    url: str = ""

    @property
    def is_external(self) -> bool:
        return self.id is None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class AttachmentMeta(BaseModel):
    """Byte-free view of a stored attachment, for admin listings."""
    id: int
    filename: str
    mime: str
    size: int
    created_at: datetime


class StoredAttachment(BaseModel):
    """A stored blob. Content is never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    id: int
    filename: str
    mime: str
    size: int
    content: bytes
    created_at: datetime = Field(default_factory=utcnow)

    def meta(self) -> AttachmentMeta:
        return AttachmentMeta(
            id=self.id, filename=self.filename, mime=self.mime,
            size=self.size, created_at=self.created_at,
        )


# ──────────────────────────────────────────────────────────────
#  Questions & Answers
# ──────────────────────────────────────────────────────────────

class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    text: str
    attachments: list[AttachmentRef] = []
    created_at: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "attachments": [a.to_wire() for a in self.attachments],
            "created_at": self.created_at.isoformat(),
        }


class Answer(BaseModel):
    question_id: Union[int, str]              # opaque, never checked against the question log
    answer: str
    ts: datetime = Field(default_factory=utcnow)


class LongPollBatch(BaseModel):
    items: list[Question]
    next_cursor: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "items": [q.to_wire() for q in self.items],
            "nextCursor": self.next_cursor,
        }


# ──────────────────────────────────────────────────────────────
#  Consumer side
# ──────────────────────────────────────────────────────────────

class InboundQuestion(BaseModel):
    """A question as received by the consumer from a long-poll response."""
    id: Optional[Union[int, str]] = None
    text: str = ""
    attachments: list[dict[str, Any]] = []
    raw: dict[str, Any] = {}

    @property
    def key(self) -> str:
        """Dedup key; empty when the producer sent no id."""
        return "" if self.id is None else str(self.id)

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> InboundQuestion:
        attachments = raw.get("attachments")
        qid = raw.get("id")
        return cls(
            id=qid if isinstance(qid, (int, str)) and not isinstance(qid, bool) else None,
            text=str(raw.get("text") or raw.get("content") or raw.get("prompt") or ""),
            attachments=[a for a in attachments if isinstance(a, dict)]
            if isinstance(attachments, list) else [],
            raw=raw,
        )
