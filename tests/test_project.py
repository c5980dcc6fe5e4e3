from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Any

import allure
import pytest

from pairdesk.config import Settings
from pairdesk.orchestrator.backend.base import WorkerProcessError
from pairdesk.orchestrator.connectors import ChannelConnector, CommandCategory
from pairdesk.orchestrator.events import RecordingUiSink, UiEvent
from pairdesk.orchestrator.execution import ExecutionState
from pairdesk.orchestrator.models import (
    ContextFile,
    ContextMessage,
    LogLevel,
    MessageRole,
    Mode,
    ModelsData,
    QuestionData,
    ResponseMessage,
    StartupMode,
    UsageReport,
)
from pairdesk.orchestrator.project import Project
from pairdesk.orchestrator.store import AppSettings, ProjectSettings, Store, WorkerOptions

pytestmark = [
    allure.epic("Worker Orchestration"),
    allure.feature("Project Orchestrator"),
]

ALL_COMMANDS = [category.value for category in CommandCategory]
USAGE_TEXT = "Tokens: 2.0k sent, 0.5k received. Cost: $0.012 message, $0.05 session."


class ScriptedAgent:
    def __init__(self, messages: list[ContextMessage]) -> None:
        self.messages = messages
        self.prompts: list[str] = []
        self.interrupted = False

    async def run_agent(self, project: Project, prompt: str) -> list[ContextMessage]:
        self.prompts.append(prompt)
        return self.messages

    def interrupt(self) -> None:
        self.interrupted = True


def _project(
    base_dir: str,
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    **kwargs: Any,
) -> Project:
    return Project(base_dir, store=store, runtime=runtime, ui=ui, **kwargs)


def _connect(project: Project, listen_to: list[str] | None = None) -> list[dict[str, Any]]:
    sent: list[dict[str, Any]] = []
    project.add_connector(ChannelConnector(sent.append, listen_to or ALL_COMMANDS))
    return sent


def _actions(sent: list[dict[str, Any]], action: str) -> list[dict[str, Any]]:
    return [message for message in sent if message["action"] == action]


def _complete(project: Project, content: str, **fields: Any) -> None:
    project.process_response_message(ResponseMessage(content=content, finished=True, **fields))
    project.prompt_finished()


def test_concurrent_submits_run_one_at_a_time_in_fifo_order(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        sent = _connect(project)
        tasks = [asyncio.create_task(project.submit(p)) for p in ("one", "two", "three")]
        await asyncio.sleep(0)
        assert [m["prompt"] for m in _actions(sent, "prompt")] == ["one"]

        _complete(project, "reply one")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert [m["prompt"] for m in _actions(sent, "prompt")] == ["one", "two"]

        _complete(project, "reply two")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        _complete(project, "reply three")
        results = await asyncio.gather(*tasks)
        return project, sent, results

    project, sent, results = asyncio.run(scenario())

    assert [[r.content for r in result] for result in results] == [
        ["reply one"],
        ["reply two"],
        ["reply three"],
    ]
    prompt_ids = [m["promptId"] for m in _actions(sent, "prompt")]
    assert len(set(prompt_ids)) == 3
    assert [m.content for m in project.get_context_messages()] == [
        "one",
        "reply one",
        "two",
        "reply two",
        "three",
        "reply three",
    ]
    assert project.load_input_history() == ["three", "two", "one"]


def test_completed_response_carries_usage_suffix_and_updates_costs(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        _connect(project)
        pending = asyncio.create_task(project.submit("fix"))
        await asyncio.sleep(0)
        _complete(project, "done", commit_message="fix", usage_report=USAGE_TEXT)
        return project, await pending

    project, responses = asyncio.run(scenario())

    assert [r.commit_message for r in responses] == ["fix i2.0k o0.5k $0.012"]
    assert responses[0].usage_report.sent_tokens == 2000
    assert project.worker_total_cost == 0.05
    assert ui.of(UiEvent.RESPONSE_COMPLETED)[0].commit_message == "fix i2.0k o0.5k $0.012"
    logs = ui.of(UiEvent.LOG)
    assert [log.level for log in logs] == [LogLevel.LOADING]
    assert [m.content for m in ui.of(UiEvent.USER_MESSAGE)] == ["fix"]


def test_streamed_chunks_share_one_message_id(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    project = _project(base_dir, runtime, store, ui)

    first_id = project.process_response_message(ResponseMessage(content="Hel", finished=False))
    second_id = project.process_response_message(ResponseMessage(content="lo", finished=False))
    project.prompt_finished()

    chunks = ui.of(UiEvent.RESPONSE_CHUNK)
    completed = ui.of(UiEvent.RESPONSE_COMPLETED)
    assert first_id == second_id
    assert [chunk.chunk for chunk in chunks] == ["Hel", "lo"]
    assert {chunk.message_id for chunk in chunks} == {first_id}
    assert completed[0].message_id == first_id
    assert completed[0].content == ""


def test_command_output_is_folded_into_conversation(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    project = _project(base_dir, runtime, store, ui)
    sent = _connect(project)

    project.run_command("diff")
    project.open_command_output("/diff")
    project.command_output.append("--- a/x.py\n+++ b/x.py\n")
    project.prompt_finished()

    assert _actions(sent, "run-command") == [{"action": "run-command", "command": "/diff"}]
    assert project.get_context_messages() == [
        ContextMessage(MessageRole.ASSISTANT, "/diff\n\n--- a/x.py\n+++ b/x.py\n"),
    ]
    assert [data.output for data in ui.of(UiEvent.COMMAND_OUTPUT)] == [
        "",
        "--- a/x.py\n+++ b/x.py\n",
    ]
    assert project.load_input_history() == ["/diff"]


def test_submit_with_open_question_answers_no_and_is_consumed(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        sent = _connect(project)
        question = asyncio.create_task(project.ask_question(QuestionData(text="Create file?")))
        await asyncio.sleep(0)
        responses = await project.submit("actually, rename it")
        return sent, responses, await question

    sent, responses, answer = asyncio.run(scenario())

    assert responses == []
    assert answer == ("n", "actually, rename it")
    assert _actions(sent, "answer-question") == [{"action": "answer-question", "answer": "n"}]
    assert _actions(sent, "prompt") == []


def test_dont_ask_again_answer_resolves_next_question_immediately(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        sent = _connect(project)
        first = asyncio.create_task(project.ask_question(QuestionData(text="Run?", subject="ls")))
        await asyncio.sleep(0)
        assert project.answer_question("d")
        await first
        second = await project.ask_question(QuestionData(text="Run?", subject="ls"))
        return sent, second

    sent, second = asyncio.run(scenario())

    assert second == ("n", None)
    assert len(ui.of(UiEvent.ASK_QUESTION)) == 1
    assert [m["answer"] for m in _actions(sent, "answer-question")] == ["n", "n"]


def test_worker_exit_callback_releases_active_and_queued_prompts(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        _connect(project)
        active = asyncio.create_task(project.submit("one"))
        queued = asyncio.create_task(project.submit("two"))
        await asyncio.sleep(0)
        project.process_response_message(ResponseMessage(content="partial", finished=True))
        project._on_worker_exit(-9)
        return await active, await queued, project

    active, queued, project = asyncio.run(scenario())

    assert active == []
    assert queued == []
    assert project.execution.active_unit is None


def test_worker_crash_resolves_pending_submit(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    store.save_settings(AppSettings(worker=WorkerOptions(options="--exit-after 0.3")))

    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        await project.start()
        _connect(project)
        responses = await asyncio.wait_for(project.submit("never answered"), timeout=15)
        return project, responses

    project, responses = asyncio.run(scenario())

    assert responses == []
    assert not project.is_started()


def test_prompt_without_connectors_finishes_immediately(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        return await asyncio.wait_for(project.submit("hello?"), timeout=5)

    assert asyncio.run(scenario()) == []


def test_stale_prompt_finished_is_ignored(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        sent = _connect(project)
        pending = asyncio.create_task(project.submit("hi"))
        await asyncio.sleep(0)
        assert project.prompt_finished("some-old-prompt") == []
        assert not pending.done()
        project.prompt_finished(_actions(sent, "prompt")[0]["promptId"])
        return await pending

    assert asyncio.run(scenario()) == []


def test_architect_model_from_settings_is_sent_with_prompt(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    store.save_project_settings(base_dir, ProjectSettings(architect_model="o3"))

    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        sent = _connect(project)
        pending = asyncio.create_task(project.submit("design", Mode.ARCHITECT))
        await asyncio.sleep(0)
        project.prompt_finished()
        await pending
        return sent

    prompt = _actions(asyncio.run(scenario()), "prompt")[0]

    assert prompt["editFormat"] == "architect"
    assert prompt["architectModel"] == "o3"
    assert prompt["clearContext"] is False


def test_agent_mode_forwards_agent_messages(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    agent = ScriptedAgent(
        [ContextMessage(MessageRole.ASSISTANT, "plan"), ContextMessage(MessageRole.USER, " ")],
    )

    async def scenario():
        project = _project(base_dir, runtime, store, ui, agent=agent)
        sent = _connect(project)
        return sent, await project.submit("refactor", Mode.AGENT)

    sent, responses = asyncio.run(scenario())

    assert responses == []
    assert agent.prompts == ["refactor"]
    assert _actions(sent, "add-message") == [
        {"action": "add-message", "role": "assistant", "content": "plan", "acknowledge": False},
    ]
    assert _actions(sent, "prompt") == []


def test_interrupt_routes_command_and_stops_agent(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    agent = ScriptedAgent([])
    project = _project(base_dir, runtime, store, ui, agent=agent)
    sent = _connect(project)

    project.interrupt_response()

    assert sent == [{"action": "interrupt-response"}]
    assert agent.interrupted


def test_drop_file_path_rules(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    project = _project(base_dir, runtime, store, ui)
    sent = _connect(project, ["add-file", "drop-file"])
    assert project.add_file(ContextFile("src/a.py"))
    assert not project.add_file(ContextFile("src/a.py"))
    project.add_file(ContextFile("/abs/doc.md", read_only=True))

    project.drop_file("src/a.py")
    project.drop_file("/abs/doc.md")
    project.drop_file("../outside.py")
    project.drop_file(os.path.join(base_dir, "b.py"))

    assert [m["path"] for m in _actions(sent, "drop-file")] == [
        os.path.join(base_dir, "src/a.py"),
        "/abs/doc.md",
        os.path.abspath(os.path.join(base_dir, "../outside.py")),
        os.path.join(base_dir, "b.py"),
    ]
    assert project.get_context_files() == []


def test_addable_files_exclude_context_and_filter_by_regex(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    project = _project(base_dir, runtime, store, ui)
    project.set_all_tracked_files(["src/App.py", "src/util.py", "README.md"])
    project.add_file(ContextFile("src/util.py"))

    assert project.get_addable_files() == ["src/App.py", "README.md"]
    assert project.get_addable_files("app") == ["src/App.py"]
    assert project.get_addable_files("([") == ["src/App.py", "README.md"]


def test_set_current_models_persists_and_keeps_architect_model(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    store.save_project_settings(base_dir, ProjectSettings(architect_model="o3"))
    project = _project(base_dir, runtime, store, ui)

    project.set_current_models(
        ModelsData(base_dir=base_dir, main_model="gpt-4o", reasoning_effort="high"),
    )
    project.set_architect_model("o4")

    emitted = ui.of(UiEvent.SET_CURRENT_MODELS)
    assert [models.architect_model for models in emitted] == ["o3", "o4"]
    settings = store.get_project_settings(base_dir)
    assert settings.reasoning_effort == "high"
    assert settings.architect_model == "o4"


def test_clear_context_runs_clear_and_notifies_ui(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    project = _project(base_dir, runtime, store, ui)
    sent = _connect(project)
    project.add_context_message(MessageRole.USER, "old")

    project.clear_context()

    assert project.get_context_messages() == []
    assert _actions(sent, "run-command") == [{"action": "run-command", "command": "/clear"}]
    cleared = ui.of(UiEvent.CLEAR_PROJECT)
    assert [(c.clear_messages, c.clear_session) for c in cleared] == [(True, False)]
    assert project.load_input_history() == []


def test_connector_replay_and_history_file_override(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
    tmp_path: Path,
) -> None:
    project = _project(base_dir, runtime, store, ui)
    project.add_file(ContextFile("a.py"))
    project.session.add_context_message(MessageRole.USER, "earlier")
    history_file = tmp_path / "shared.history"
    sent: list[dict[str, Any]] = []

    project.add_connector(
        ChannelConnector(sent.append, ALL_COMMANDS, input_history_file=str(history_file)),
    )
    project.add_to_input_history("from connector")

    assert [m["action"] for m in sent] == ["add-file", "add-message"]
    assert history_file.exists()
    assert ui.of(UiEvent.INPUT_HISTORY_UPDATED)[-1].messages == ["from connector"]


def test_sessions_save_load_and_export(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
    tmp_path: Path,
) -> None:
    project = _project(base_dir, runtime, store, ui)
    sent = _connect(project)
    project.add_file(ContextFile("a.py"))
    project.add_context_message(MessageRole.USER, "question")
    project.add_context_message(MessageRole.ASSISTANT, "answer")
    project.save_session("review")

    other = _project(base_dir, runtime, store, RecordingUiSink())
    other_sent = _connect(other)
    assert other.load_session_messages("review")
    assert other.load_session_files("review")
    assert not other.load_session_files("missing")

    assert [s.name for s in other.list_sessions()] == ["review"]
    assert [m.content for m in other.get_context_messages()] == ["question", "answer"]
    assert [m["path"] for m in _actions(other_sent, "add-file")] == ["a.py"]
    assert len(_actions(sent, "add-message")) == 2

    exported = other.export_session_to_markdown(tmp_path / "review.md")
    assert exported is not None
    assert exported.read_text("utf-8").startswith("### User\n\nquestion")
    assert other.delete_session("review")
    assert other.list_sessions() == []


def test_close_autosaves_and_last_startup_mode_restores(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        project.add_file(ContextFile("a.py"))
        project.add_context_message(MessageRole.USER, "remember me")
        await project.close()

        store.save_settings(AppSettings(startup_mode=StartupMode.LAST))
        restored_ui = RecordingUiSink()
        restored = _project(base_dir, runtime, store, restored_ui)
        await restored.start()
        try:
            assert restored.is_started()
            messages = restored.get_context_messages()
        finally:
            await restored.close()
        return messages, restored_ui

    messages, restored_ui = asyncio.run(scenario())

    assert [(c.clear_messages, c.clear_session) for c in ui.of(UiEvent.CLEAR_PROJECT)] == [
        (True, True),
    ]
    assert messages == [ContextMessage(MessageRole.USER, "remember me")]
    assert [data.file.path for data in restored_ui.of(UiEvent.FILE_ADDED)] == ["a.py"]
    assert restored_ui.of(UiEvent.INPUT_HISTORY_UPDATED)


def test_tool_messages_update_agent_costs(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    project = _project(base_dir, runtime, store, ui)

    project.add_tool_message(
        "t-1",
        "files",
        "read",
        {"path": "a.py"},
        "ok",
        None,
    )
    project.add_tool_message(
        "t-2",
        "files",
        "write",
        usage_report=UsageReport(agent_total_cost=0.4),
    )

    assert [tool.tool_name for tool in ui.of(UiEvent.TOOL)] == ["read", "write"]
    assert project.agent_total_cost == 0.4


def test_submit_arriving_during_handoff_runs_after_queued_prompt(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        sent = _connect(project)
        first = asyncio.create_task(project.submit("one"))
        second = asyncio.create_task(project.submit("two"))
        await asyncio.sleep(0)
        late = asyncio.create_task(project.submit("late"))

        _complete(project, "reply one")
        for _ in range(3):
            await asyncio.sleep(0)
        assert [m["prompt"] for m in _actions(sent, "prompt")] == ["one", "two"]

        _complete(project, "reply two")
        for _ in range(3):
            await asyncio.sleep(0)
        _complete(project, "reply late")
        results = await asyncio.gather(first, second, late)
        return sent, results

    sent, results = asyncio.run(scenario())

    assert [m["prompt"] for m in _actions(sent, "prompt")] == ["one", "two", "late"]
    assert [[r.content for r in result] for result in results] == [
        ["reply one"],
        ["reply two"],
        ["reply late"],
    ]


def test_stop_worker_releases_prompts_and_clears_transient_state(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
) -> None:
    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        await project.start()
        _connect(project)
        active = asyncio.create_task(project.submit("one"))
        queued = asyncio.create_task(project.submit("two"))
        await asyncio.sleep(0)
        project.process_response_message(ResponseMessage(content="partial", finished=False))
        project.open_command_output("/tokens")
        question = asyncio.create_task(project.ask_question(QuestionData(text="Apply?")))
        await asyncio.sleep(0)

        await project.stop_worker()

        state = (
            project.questions.current_question,
            project.command_output.current_command,
            project._response_message_id,
            project.execution.state,
        )
        return project, await active, await queued, await question, state

    project, active, queued, answer, state = asyncio.run(scenario())

    assert active == []
    assert queued == []
    assert answer == ("n", None)
    assert state == (None, None, None, ExecutionState.IDLE)
    assert not project.is_started()


def test_stop_worker_kill_failure_propagates_after_releasing_prompts(
    runtime: Settings,
    store: Store,
    ui: RecordingUiSink,
    base_dir: str,
    monkeypatch,
) -> None:
    real_killpg = os.killpg

    def refuse(pid: int, sig: int) -> None:
        raise PermissionError(1, "Operation not permitted")

    async def scenario():
        project = _project(base_dir, runtime, store, ui)
        await project.start()
        pid = project.supervisor.pid
        _connect(project)
        active = asyncio.create_task(project.submit("one"))
        queued = asyncio.create_task(project.submit("two"))
        await asyncio.sleep(0)

        monkeypatch.setattr(os, "killpg", refuse)
        try:
            with pytest.raises(WorkerProcessError) as raised:
                await project.stop_worker()
        finally:
            monkeypatch.setattr(os, "killpg", real_killpg)
            real_killpg(pid, signal.SIGKILL)
        return project, pid, raised.value, await active, await queued

    project, pid, error, active, queued = asyncio.run(scenario())

    assert error.pid == pid
    assert isinstance(error.__cause__, PermissionError)
    assert active == []
    assert queued == []
    assert project.execution.state == ExecutionState.IDLE
    assert not project.is_started()
