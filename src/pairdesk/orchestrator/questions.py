"""Interactive yes/no questions with remembered answers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from pairdesk.orchestrator.models import QuestionData

logger = logging.getLogger(__name__)

QuestionAnswer = tuple[str, str | None]

_REMEMBERED = frozenset({"a", "d"})
_AFFIRMATIVE = frozenset({"a", "y"})


def question_key(question: QuestionData) -> str:
    """Identity of a question: explicit key, else text plus subject."""

    return question.key or f"{question.text}_{question.subject or ''}"


class QuestionBroker:
    """Holds the single open question of a project and the remembered answers."""

    def __init__(
        self,
        base_dir: str,
        *,
        route_answer: Callable[[str], object],
        emit_question: Callable[[QuestionData], object],
    ) -> None:
        self.base_dir = base_dir
        self._route_answer = route_answer
        self._emit_question = emit_question
        self._current: QuestionData | None = None
        self._waiter: asyncio.Future[QuestionAnswer] | None = None
        self._answers: dict[str, str] = {}

    @property
    def current_question(self) -> QuestionData | None:
        return self._current

    def remembered_answer(self, question: QuestionData) -> str | None:
        return self._answers.get(question_key(question))

    async def ask(self, question: QuestionData) -> QuestionAnswer:
        stored = self.remembered_answer(question)
        logger.info(
            "Asking question for %s: %r (stored answer: %s)",
            self.base_dir,
            question.text,
            stored,
        )
        if stored is not None:
            if not question.internal:
                self._route_answer(stored)
            return stored, None

        if self._waiter is not None and not self._waiter.done():
            logger.warning("Replacing unanswered question for %s", self.base_dir)
            self._waiter.set_result(("n", None))

        self._current = question
        self._waiter = asyncio.get_running_loop().create_future()
        waiter = self._waiter
        self._emit_question(question)
        return await waiter

    def answer(self, raw: str, user_input: str | None = None) -> bool:
        """Answer the open question; True when a waiting asker was resolved."""

        question = self._current
        if question is None:
            return False

        normalized = raw.strip().lower()
        answer = "y" if normalized in _AFFIRMATIVE else "n"
        logger.info("Answering question for %s: %r -> %s", self.base_dir, question.text, answer)
        if normalized in _REMEMBERED:
            logger.info("Storing answer %s for question %r", answer, question_key(question))
            self._answers[question_key(question)] = answer

        if not question.internal:
            self._route_answer(answer)
        self._current = None

        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result((answer, user_input))
            return True
        return False

    def clear(self) -> None:
        """Drop the open question, releasing its asker with a negative answer."""

        self._current = None
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(("n", None))

    def forget_answers(self) -> None:
        self._answers.clear()
