from __future__ import annotations

import asyncio

import allure

from pairdesk.orchestrator.models import QuestionData
from pairdesk.orchestrator.questions import QuestionBroker, question_key

pytestmark = [
    allure.epic("Worker Orchestration"),
    allure.feature("Questions"),
]


def _broker(routed: list[str], emitted: list[QuestionData]) -> QuestionBroker:
    return QuestionBroker("/r", route_answer=routed.append, emit_question=emitted.append)


def test_question_key_prefers_explicit_key() -> None:
    assert question_key(QuestionData(text="Run?", subject="ls", key="shell")) == "shell"
    assert question_key(QuestionData(text="Run?", subject="ls")) == "Run?_ls"
    assert question_key(QuestionData(text="Run?")) == "Run?_"


def test_answer_resolves_waiter_and_routes_normalized_answer() -> None:
    routed: list[str] = []
    emitted: list[QuestionData] = []

    async def scenario():
        broker = _broker(routed, emitted)
        pending = asyncio.create_task(broker.ask(QuestionData(text="Edit file?")))
        await asyncio.sleep(0)
        assert broker.current_question is not None
        assert broker.answer("Y", "extra") is True
        assert broker.current_question is None
        return await pending

    assert asyncio.run(scenario()) == ("y", "extra")
    assert routed == ["y"]
    assert [question.text for question in emitted] == ["Edit file?"]


def test_always_answer_is_remembered_and_reused_without_prompting() -> None:
    routed: list[str] = []
    emitted: list[QuestionData] = []

    async def scenario():
        broker = _broker(routed, emitted)
        first = asyncio.create_task(broker.ask(QuestionData(text="Add url?", subject="a.io")))
        await asyncio.sleep(0)
        broker.answer("a")
        await first
        return await broker.ask(QuestionData(text="Add url?", subject="a.io"))

    assert asyncio.run(scenario()) == ("y", None)
    assert routed == ["y", "y"]
    assert len(emitted) == 1


def test_dont_ask_again_remembers_negative_answer() -> None:
    routed: list[str] = []
    emitted: list[QuestionData] = []

    async def scenario():
        broker = _broker(routed, emitted)
        first = asyncio.create_task(broker.ask(QuestionData(text="Commit?", key="commit")))
        await asyncio.sleep(0)
        broker.answer("d")
        await first
        return await broker.ask(QuestionData(text="Commit now?", key="commit", internal=True))

    assert asyncio.run(scenario()) == ("n", None)
    assert routed == ["n"]


def test_new_question_releases_previous_asker_with_no() -> None:
    async def scenario():
        broker = _broker([], [])
        first = asyncio.create_task(broker.ask(QuestionData(text="One?")))
        await asyncio.sleep(0)
        second = asyncio.create_task(broker.ask(QuestionData(text="Two?")))
        await asyncio.sleep(0)
        assert broker.current_question.text == "Two?"
        broker.answer("y")
        return await first, await second

    assert asyncio.run(scenario()) == (("n", None), ("y", None))


def test_internal_question_answer_is_not_routed() -> None:
    routed: list[str] = []

    async def scenario():
        broker = _broker(routed, [])
        pending = asyncio.create_task(broker.ask(QuestionData(text="Cont?", internal=True)))
        await asyncio.sleep(0)
        broker.answer("y")
        return await pending

    assert asyncio.run(scenario()) == ("y", None)
    assert routed == []


def test_answer_without_question_and_clear() -> None:
    async def scenario():
        broker = _broker([], [])
        assert broker.answer("y") is False
        pending = asyncio.create_task(broker.ask(QuestionData(text="Stop?")))
        await asyncio.sleep(0)
        broker.clear()
        return await pending

    assert asyncio.run(scenario()) == ("n", None)
