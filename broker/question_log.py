"""
Question and answer logs — append-only, in-memory, process lifetime.
"""
from __future__ import annotations

import bisect
import itertools
import structlog
from typing import Union

from models.schemas import Answer, AttachmentRef, Question

logger = structlog.get_logger()


class QuestionLog:
    """
    Questions ordered by id. Ids are assigned here, strictly increasing
    from 1, so the list is always sorted and ``list_since`` can bisect.
    """

    def __init__(self):
        self._questions: list[Question] = []
        self._ids: list[int] = []
        self._counter = itertools.count(1)

    def __len__(self) -> int:
        return len(self._questions)

    @property
    def last_id(self) -> int:
        return self._ids[-1] if self._ids else 0

    def append(self, text: str, attachments: list[AttachmentRef] = None) -> Question:
        question = Question(
            id=next(self._counter),
            text=text,
            attachments=list(attachments or []),
        )
        self._questions.append(question)
        self._ids.append(question.id)
        return question

    def list_since(self, cursor: int) -> list[Question]:
        """Every question with id > cursor, ascending."""
        start = bisect.bisect_right(self._ids, cursor)
        return self._questions[start:]

    def all(self) -> list[Question]:
        return list(self._questions)


class AnswerLog:
    """Sink for acknowledged answers. No check that the question exists."""

    def __init__(self):
        self._answers: list[Answer] = []

    def __len__(self) -> int:
        return len(self._answers)

    def append(self, question_id: Union[int, str], text: str) -> Answer:
        answer = Answer(question_id=question_id, answer=text)
        self._answers.append(answer)
        return answer

    def all(self) -> list[Answer]:
        return list(self._answers)
