"""Project orchestrator: one supervised worker plus its conversation state."""

from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pairdesk.config import Settings
from pairdesk.orchestrator.agent import Agent, NullAgent
from pairdesk.orchestrator.backend.process import WorkerSupervisor
from pairdesk.orchestrator.command_output import CommandOutputCapture
from pairdesk.orchestrator.connectors import (
    AddFileCommand,
    AddMessageCommand,
    AnswerQuestionCommand,
    ApplyEditsCommand,
    Connector,
    ConnectorRouter,
    DropFileCommand,
    InterruptResponseCommand,
    PromptCommand,
    RunCommandCommand,
    SetModelsCommand,
)
from pairdesk.orchestrator.events import UiEvent, UiSink
from pairdesk.orchestrator.execution import ExecutionUnit, PromptExecution
from pairdesk.orchestrator.input_history import InputHistory
from pairdesk.orchestrator.models import (
    AskQuestionData,
    ClearProjectData,
    CommandOutputData,
    ContextFile,
    ContextFilesData,
    ContextMessage,
    FileAddedData,
    FileEdit,
    InputHistoryData,
    LogData,
    LogLevel,
    MessageRole,
    Mode,
    ModelsData,
    QuestionData,
    ResponseChunkData,
    ResponseCompletedData,
    ResponseMessage,
    SessionData,
    StartupMode,
    ToolData,
    UsageReport,
    UserMessageData,
)
from pairdesk.orchestrator.questions import QuestionAnswer, QuestionBroker
from pairdesk.orchestrator.session import (
    AUTOSAVED_SESSION_NAME,
    JsonSessionRepository,
    SessionState,
)
from pairdesk.orchestrator.store import Store
from pairdesk.orchestrator.usage import CostTotals, coerce_usage_report, format_cost_suffix

logger = logging.getLogger(__name__)


class Project:
    """Coordinates the worker of one base directory and everything routed to it."""

    def __init__(  # noqa: PLR0913
        self,
        base_dir: str,
        *,
        store: Store,
        runtime: Settings,
        ui: UiSink,
        agent: Agent | None = None,
        sessions: JsonSessionRepository | None = None,
    ) -> None:
        self.base_dir = base_dir
        self.store = store
        self.runtime = runtime
        self.ui = ui
        self.agent = agent or NullAgent()
        self.sessions = sessions or JsonSessionRepository(
            Path(base_dir) / runtime.storage.sessions_dir_name,
        )
        self.router = ConnectorRouter(base_dir)
        self.session = SessionState()
        self.execution = PromptExecution(base_dir)
        self.costs = CostTotals()
        self.input_history = InputHistory(base_dir, runtime.storage.input_history_file)
        self.questions = QuestionBroker(
            base_dir,
            route_answer=lambda answer: self.router.route(AnswerQuestionCommand(answer=answer)),
            emit_question=lambda question: self.ui.emit(
                UiEvent.ASK_QUESTION,
                AskQuestionData(base_dir=self.base_dir, question=question),
            ),
        )
        self.command_output = CommandOutputCapture(
            emit_output=lambda command, output: self.ui.emit(
                UiEvent.COMMAND_OUTPUT,
                CommandOutputData(base_dir=self.base_dir, command=command, output=output),
            ),
            add_context_message=lambda content: self.session.add_context_message(
                MessageRole.ASSISTANT,
                content,
            ),
        )
        self.supervisor = WorkerSupervisor(
            base_dir=base_dir,
            runtime=runtime,
            store=store,
            on_output=self.command_output.append,
            on_error_message=lambda message: self.add_log_message(LogLevel.ERROR, message),
            on_exit=self._on_worker_exit,
        )
        self._response_message_id: str | None = None
        self._all_tracked_files: list[str] = []
        self._repo_map = ""
        self._models: ModelsData | None = None

    # Lifecycle

    async def start(self) -> None:
        await self.stop_worker()

        settings = self.store.get_settings()
        try:
            if settings.startup_mode == StartupMode.LAST:
                logger.info("Loading autosaved session for %s", self.base_dir)
                self._restore_session(AUTOSAVED_SESSION_NAME)
            else:
                logger.info("Starting with empty session for %s", self.base_dir)
        except (OSError, KeyError, TypeError, ValueError) as error:
            logger.error("Error loading session for %s: %s", self.base_dir, error)

        for context_file in self.session.get_context_files():
            self.ui.emit(
                UiEvent.FILE_ADDED,
                FileAddedData(base_dir=self.base_dir, file=context_file),
            )

        self.costs.reset()
        self._reset_run_state()
        self.questions.forget_answers()

        await self.supervisor.start()
        self._emit_input_history()

    async def close(self) -> None:
        logger.info("Closing project %s", self.base_dir)
        self.ui.emit(
            UiEvent.CLEAR_PROJECT,
            ClearProjectData(base_dir=self.base_dir, clear_messages=True, clear_session=True),
        )
        if self.runtime.storage.autosave_on_close:
            self._autosave()
        await self.stop_worker()

    async def stop_worker(self) -> None:
        """Kill the worker and release everything waiting on it."""

        if not self.supervisor.is_running:
            return
        try:
            await self.supervisor.stop()
        finally:
            self._reset_run_state()
            self.session.clear_messages()

    def is_started(self) -> bool:
        return self.supervisor.is_running

    def _on_worker_exit(self, code: int | None) -> None:
        logger.warning("Worker for %s exited unexpectedly (code %s)", self.base_dir, code)
        self._reset_run_state()

    def _reset_run_state(self) -> None:
        self.questions.clear()
        self.command_output.reset()
        self.execution.abort()
        self._response_message_id = None

    # Connectors

    def add_connector(self, connector: Connector) -> None:
        history_file = self.router.register(
            connector,
            context_files=self.session.get_context_files(),
            connector_messages=self.session.to_connector_messages(),
        )
        if history_file:
            self.input_history.file_name = history_file
            self._emit_input_history()

    def remove_connector(self, connector: Connector) -> None:
        self.router.unregister(connector)

    # Prompt execution

    async def submit(self, prompt: str, mode: Mode | None = None) -> list[ResponseCompletedData]:
        """Run a user prompt; concurrent callers are served one at a time."""

        if self.questions.current_question is not None and self.questions.answer("n", prompt):
            return []

        if not await self.execution.wait_until_idle():
            return []

        logger.info("Running prompt for %s (mode=%s): %r", self.base_dir, mode, prompt)
        if mode == Mode.AGENT:
            # the agent queues its own worker prompts through send_prompt
            self.execution.release()
            self._record_prompt(prompt, mode)
            messages = await self.agent.run_agent(self, prompt)
            for message in messages:
                self.session.add_context_message(message.role, message.content)
            for message in self.session.to_connector_messages(messages):
                self.send_add_message(message.role, message.content, acknowledge=False)
            return []

        unit = self.execution.begin(prompt, mode)
        self._record_prompt(prompt, mode)
        responses = await self._dispatch_prompt(unit, clear_context=False)

        self.session.add_context_message(MessageRole.USER, prompt)
        for response in responses:
            if response.reflected_message:
                self.session.add_context_message(MessageRole.USER, response.reflected_message)
            if response.content:
                self.session.add_context_message(MessageRole.ASSISTANT, response.content)
        return responses

    async def send_prompt(
        self,
        prompt: str,
        mode: Mode | None = None,
        clear_context: bool = False,
    ) -> list[ResponseCompletedData]:
        """Send a prompt without history or UI side effects (used by the agent)."""

        if not await self.execution.wait_until_idle():
            return []
        unit = self.execution.begin(prompt, mode)
        return await self._dispatch_prompt(unit, clear_context=clear_context)

    def get_architect_model(self) -> str | None:
        return self.store.get_project_settings(self.base_dir).architect_model or None

    def process_response_message(self, message: ResponseMessage) -> str | None:
        """Forward a streamed chunk or fold a finished message into the active unit."""

        if self._response_message_id is None:
            self._response_message_id = str(uuid.uuid4())
        message_id = message.id or self._response_message_id

        if not message.finished:
            logger.debug("Sending response chunk to %s", self.base_dir)
            self.ui.emit(
                UiEvent.RESPONSE_CHUNK,
                ResponseChunkData(
                    base_dir=self.base_dir,
                    message_id=message_id,
                    chunk=message.content,
                    reflected_message=message.reflected_message,
                ),
            )
            return self._response_message_id

        logger.info("Sending response completed to %s", self.base_dir)
        usage_report = coerce_usage_report(message.usage_report)
        if usage_report is not None:
            logger.info("Usage report for %s: %s", self.base_dir, usage_report)
            self.update_total_costs(usage_report)

        commit_message = message.commit_message
        if commit_message and usage_report is not None:
            commit_message += format_cost_suffix(usage_report)

        data = ResponseCompletedData(
            base_dir=self.base_dir,
            message_id=message_id,
            content=message.content,
            reflected_message=message.reflected_message,
            edited_files=message.edited_files,
            commit_hash=message.commit_hash,
            commit_message=commit_message,
            diff=message.diff,
            usage_report=usage_report,
        )
        self.ui.emit(UiEvent.RESPONSE_COMPLETED, data)
        self._response_message_id = None
        self.command_output.close()
        self.execution.add_response(data)
        return None

    def prompt_finished(self, prompt_id: str | None = None) -> list[ResponseCompletedData]:
        """Close the active turn and release every caller waiting on it."""

        current_prompt_id = self.execution.current_prompt_id
        if prompt_id and current_prompt_id and prompt_id != current_prompt_id:
            logger.warning(
                "Ignoring finish of stale prompt %s (active %s) for %s",
                prompt_id,
                current_prompt_id,
                self.base_dir,
            )
            return []

        if self._response_message_id:
            self.ui.emit(
                UiEvent.RESPONSE_COMPLETED,
                ResponseCompletedData(
                    base_dir=self.base_dir,
                    message_id=self._response_message_id,
                    content="",
                ),
            )
            self._response_message_id = None

        self.command_output.close()
        return self.execution.finish()

    def interrupt_response(self) -> None:
        logger.info("Interrupting response for %s", self.base_dir)
        self.router.route(InterruptResponseCommand())
        self.agent.interrupt()

    async def _dispatch_prompt(
        self,
        unit: ExecutionUnit,
        *,
        clear_context: bool,
    ) -> list[ResponseCompletedData]:
        self._response_message_id = None
        command = PromptCommand(
            prompt=unit.prompt,
            prompt_id=unit.prompt_id,
            mode=unit.mode,
            architect_model=self.get_architect_model(),
            clear_context=clear_context,
        )
        if self.router.route(command) == 0:
            logger.warning("No connector accepted prompt %s for %s", unit.prompt_id, self.base_dir)
            self.prompt_finished(unit.prompt_id)
        return await unit.completion

    def _record_prompt(self, prompt: str, mode: Mode | None) -> None:
        self.add_to_input_history(prompt)
        self.add_user_message(prompt, mode)
        self.add_log_message(LogLevel.LOADING)

    # Questions

    async def ask_question(self, question: QuestionData) -> QuestionAnswer:
        return await self.questions.ask(question)

    def answer_question(self, answer: str, user_input: str | None = None) -> bool:
        return self.questions.answer(answer, user_input)

    # Command output

    def open_command_output(self, command: str) -> None:
        self.command_output.open(command)

    def close_command_output(self) -> None:
        self.command_output.close()

    def run_command(self, command: str, add_to_history: bool = True) -> None:
        if self.questions.current_question is not None:
            self.questions.answer("n")
        logger.info("Running command for %s: %s", self.base_dir, command)
        if add_to_history:
            self.add_to_input_history(f"/{command}")
        self.router.route(RunCommandCommand(command=command))

    def clear_context(self, add_to_history: bool = False) -> None:
        self.session.clear_messages()
        self.run_command("clear", add_to_history)
        self.ui.emit(
            UiEvent.CLEAR_PROJECT,
            ClearProjectData(base_dir=self.base_dir, clear_messages=True, clear_session=False),
        )

    def apply_edits(self, edits: list[FileEdit]) -> None:
        logger.info("Applying %d edits for %s", len(edits), self.base_dir)
        self.router.route(ApplyEditsCommand(edits=list(edits)))

    # Costs and tools

    @property
    def agent_total_cost(self) -> float:
        return self.costs.agent_total_cost

    @property
    def worker_total_cost(self) -> float:
        return self.costs.worker_total_cost

    def update_total_costs(self, report: UsageReport) -> None:
        self.costs.update(report)

    def add_tool_message(  # noqa: PLR0913
        self,
        id: str,  # noqa: A002
        server_name: str,
        tool_name: str,
        args: dict[str, Any] | None = None,
        response: str | None = None,
        usage_report: UsageReport | None = None,
    ) -> None:
        logger.debug("Sending tool message %s (%s/%s)", id, server_name, tool_name)
        if usage_report is not None:
            self.update_total_costs(usage_report)
        self.ui.emit(
            UiEvent.TOOL,
            ToolData(
                base_dir=self.base_dir,
                id=id,
                server_name=server_name,
                tool_name=tool_name,
                args=args,
                response=response,
                usage_report=usage_report,
            ),
        )

    # Files

    def add_file(self, context_file: ContextFile) -> bool:
        logger.info("Adding file %s (read-only=%s)", context_file.path, context_file.read_only)
        if not self.session.add_context_file(context_file):
            return False
        self.router.route(AddFileCommand(file=context_file))
        return True

    def drop_file(self, file_path: str) -> None:
        logger.info("Dropping file %s", file_path)
        dropped = self.session.drop_context_file(file_path)
        if dropped is not None:
            self.send_drop_file(dropped.path, dropped.read_only)
        else:
            self.send_drop_file(file_path)

    def send_drop_file(self, file_path: str, read_only: bool = False) -> None:
        base_dir = os.path.abspath(self.base_dir)
        absolute_path = os.path.abspath(os.path.join(base_dir, file_path))
        outside_project = not Path(absolute_path).is_relative_to(base_dir)
        if read_only or outside_project:
            path_to_send = absolute_path
        elif file_path.startswith(self.base_dir):
            path_to_send = file_path
        else:
            path_to_send = os.path.join(self.base_dir, file_path)
        self.router.route(DropFileCommand(path=path_to_send))

    def update_context_files(self, context_files: list[ContextFile]) -> None:
        self.session.set_context_files(context_files)
        self.ui.emit(
            UiEvent.CONTEXT_FILES_UPDATED,
            ContextFilesData(base_dir=self.base_dir, files=list(context_files)),
        )

    def get_context_files(self) -> list[ContextFile]:
        return self.session.get_context_files()

    def set_all_tracked_files(self, files: list[str]) -> None:
        self._all_tracked_files = list(files)

    def get_addable_files(self, search_regex: str | None = None) -> list[str]:
        in_context = {context_file.path for context_file in self.session.get_context_files()}
        files = [path for path in self._all_tracked_files if path not in in_context]
        if not search_regex:
            return files
        try:
            pattern = re.compile(search_regex, re.IGNORECASE)
        except re.error as error:
            logger.error("Invalid regex %r for addable files: %s", search_regex, error)
            return files
        return [path for path in files if pattern.search(path)]

    # Models and repo map

    def set_current_models(self, models: ModelsData) -> None:
        current = self.store.get_project_settings(self.base_dir)
        self.store.save_project_settings(
            self.base_dir,
            replace(
                current,
                reasoning_effort=models.reasoning_effort or None,
                thinking_tokens=models.thinking_tokens or None,
            ),
        )
        architect_model = (
            models.architect_model
            if models.architect_model is not None
            else self.get_architect_model()
        )
        self._models = replace(models, architect_model=architect_model)
        self.ui.emit(UiEvent.SET_CURRENT_MODELS, self._models)

    def update_models(self, main_model: str, weak_model: str | None) -> None:
        logger.info(
            "Updating models for %s: main=%s weak=%s",
            self.base_dir,
            main_model,
            weak_model,
        )
        self.router.route(SetModelsCommand(main_model=main_model, weak_model=weak_model))

    def set_architect_model(self, architect_model: str) -> None:
        logger.info("Setting architect model for %s: %s", self.base_dir, architect_model)
        settings = self.store.get_project_settings(self.base_dir)
        self.store.save_project_settings(
            self.base_dir,
            replace(settings, architect_model=architect_model),
        )
        models = self._models or ModelsData(base_dir=self.base_dir, main_model=settings.main_model)
        self.set_current_models(replace(models, architect_model=architect_model))

    @property
    def current_models(self) -> ModelsData | None:
        return self._models

    def get_repo_map(self) -> str:
        return self._repo_map

    def set_repo_map(self, repo_map: str) -> None:
        self._repo_map = repo_map

    # Input history

    def add_to_input_history(self, message: str) -> None:
        if self.input_history.append(message):
            self._emit_input_history()

    def load_input_history(self) -> list[str]:
        return self.input_history.load()

    def _emit_input_history(self) -> None:
        self.ui.emit(
            UiEvent.INPUT_HISTORY_UPDATED,
            InputHistoryData(base_dir=self.base_dir, messages=self.load_input_history()),
        )

    # Messages

    def add_log_message(self, level: LogLevel, message: str | None = None) -> None:
        self.ui.emit(UiEvent.LOG, LogData(base_dir=self.base_dir, level=level, message=message))

    def add_user_message(self, content: str, mode: Mode | None = None) -> None:
        self.ui.emit(
            UiEvent.USER_MESSAGE,
            UserMessageData(base_dir=self.base_dir, content=content, mode=mode),
        )

    def add_context_message(self, role: MessageRole, content: str) -> None:
        logger.info("Adding %s context message for %s", role.value, self.base_dir)
        self.session.add_context_message(role, content)
        self.send_add_message(role, content, acknowledge=False)

    def send_add_message(
        self,
        role: MessageRole = MessageRole.USER,
        content: str = "",
        acknowledge: bool = True,
    ) -> None:
        self.router.route(AddMessageCommand(role=role, content=content, acknowledge=acknowledge))

    def get_context_messages(self) -> list[ContextMessage]:
        return self.session.get_context_messages()

    def remove_last_message(self) -> None:
        self.session.remove_last_message()

    # Sessions

    def save_session(self, name: str) -> None:
        logger.info("Saving session %s for %s", name, self.base_dir)
        self.sessions.save(self.session.snapshot(name))

    def load_session_messages(self, name: str) -> bool:
        session = self.sessions.find(name)
        if session is None:
            return False
        self.session.load_messages(session.context_messages)
        for message in self.session.to_connector_messages():
            self.send_add_message(message.role, message.content, acknowledge=False)
        return True

    def load_session_files(self, name: str) -> bool:
        session = self.sessions.find(name)
        if session is None:
            return False
        for context_file in self.session.get_context_files():
            self.send_drop_file(context_file.path, context_file.read_only)
        self.session.load_files(session.context_files)
        for context_file in self.session.get_context_files():
            self.router.route(AddFileCommand(file=context_file))
        self.ui.emit(
            UiEvent.CONTEXT_FILES_UPDATED,
            ContextFilesData(base_dir=self.base_dir, files=self.session.get_context_files()),
        )
        return True

    def delete_session(self, name: str) -> bool:
        logger.info("Deleting session %s for %s", name, self.base_dir)
        return self.sessions.delete(name)

    def list_sessions(self) -> list[SessionData]:
        return self.sessions.list_all()

    def export_session_to_markdown(self, path: Path | None = None) -> Path | None:
        markdown = self.session.to_markdown()
        if not markdown:
            return None
        if path is None:
            stamp = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H-%M-%S")
            path = Path(self.base_dir) / f"session-{stamp}.md"
        try:
            path.write_text(markdown, "utf-8")
        except OSError as error:
            logger.error("Failed to write session markdown %s: %s", path, error)
            return None
        logger.info("Session exported to %s", path)
        return path

    def _restore_session(self, name: str) -> None:
        session = self.sessions.find(name)
        if session is None:
            return
        self.session.load_messages(session.context_messages)
        self.session.load_files(session.context_files)

    def _autosave(self) -> None:
        try:
            self.sessions.save(self.session.snapshot(AUTOSAVED_SESSION_NAME))
        except OSError as error:
            logger.error("Failed to autosave session for %s: %s", self.base_dir, error)
