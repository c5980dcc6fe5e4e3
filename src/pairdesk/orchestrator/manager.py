"""Project registry and inbound event demultiplexing."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pairdesk.config import Settings
from pairdesk.orchestrator.agent import Agent
from pairdesk.orchestrator.connectors import CommandCategory, Connector
from pairdesk.orchestrator.contracts import (
    CommandOutputPayload,
    InboundCategory,
    InboundEvent,
    InitPayload,
    LogPayload,
    SetModelsPayload,
    ToolPayload,
    parse_inbound_event,
)
from pairdesk.orchestrator.events import UiSink
from pairdesk.orchestrator.models import ModelsData
from pairdesk.orchestrator.project import Project
from pairdesk.orchestrator.store import Store, normalize_base_dir

logger = logging.getLogger(__name__)


class ProjectManager:
    """Owns one Project per base directory and routes inbound events to them."""

    def __init__(
        self,
        *,
        store: Store,
        runtime: Settings,
        ui: UiSink,
        agent: Agent | None = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.ui = ui
        self.agent = agent
        self._projects: dict[str, Project] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def projects(self) -> list[Project]:
        return list(self._projects.values())

    def get_project(self, base_dir: str) -> Project | None:
        return self._projects.get(normalize_base_dir(base_dir))

    async def open_project(self, base_dir: str) -> Project:
        key = normalize_base_dir(base_dir)
        project = self._projects.get(key)
        if project is None:
            logger.info("Opening project %s", base_dir)
            project = Project(
                base_dir,
                store=self.store,
                runtime=self.runtime,
                ui=self.ui,
                agent=self.agent,
            )
            self._projects[key] = project
        if not project.is_started():
            await project.start()
        return project

    async def close_project(self, base_dir: str) -> None:
        project = self._projects.pop(normalize_base_dir(base_dir), None)
        if project is None:
            logger.warning("No open project to close for %s", base_dir)
            return
        await project.close()

    async def restart_project(self, base_dir: str) -> Project:
        project = self.get_project(base_dir)
        if project is None:
            return await self.open_project(base_dir)
        logger.info("Restarting project %s", base_dir)
        await project.start()
        return project

    async def close_all(self) -> None:
        projects, self._projects = list(self._projects.values()), {}
        for project in projects:
            await project.close()

    def dispatch(
        self,
        raw_event: Any,
        connector: Connector | None = None,
    ) -> asyncio.Task[Any] | None:
        """Route one inbound message; returns the task of async handlers."""

        try:
            event = parse_inbound_event(raw_event)
        except (TypeError, ValueError) as error:
            logger.error("Ignoring malformed inbound event: %s", error)
            return None

        project = self.get_project(event.base_dir)
        if project is None:
            logger.warning(
                "Ignoring %s event for unknown project %s",
                event.category.value,
                event.base_dir,
            )
            return None
        return self._handle(project, event, connector)

    def disconnect(self, connector: Connector) -> None:
        for project in self._projects.values():
            project.remove_connector(connector)

    def _handle(  # noqa: C901, PLR0911, PLR0912
        self,
        project: Project,
        event: InboundEvent,
        connector: Connector | None,
    ) -> asyncio.Task[Any] | None:
        category = event.category
        payload = event.payload

        if category == InboundCategory.INIT:
            if connector is None:
                logger.error("init event for %s arrived without a connector", project.base_dir)
                return None
            _apply_init(connector, payload)
            project.add_connector(connector)
            return None
        if category == InboundCategory.RESPONSE:
            project.process_response_message(payload)
            return None
        if category == InboundCategory.PROMPT_FINISHED:
            project.prompt_finished(payload)
            return None
        if category == InboundCategory.TOOL:
            tool: ToolPayload = payload
            project.add_tool_message(
                tool.id,
                tool.server_name,
                tool.tool_name,
                tool.args,
                tool.response,
                tool.usage_report,
            )
            return None
        if category == InboundCategory.ASK_QUESTION:
            return self._spawn(project.ask_question(payload))
        if category == InboundCategory.SET_MODELS:
            models: SetModelsPayload = payload
            project.set_current_models(
                ModelsData(
                    base_dir=project.base_dir,
                    main_model=models.main_model,
                    weak_model=models.weak_model,
                    architect_model=models.architect_model,
                    reasoning_effort=models.reasoning_effort,
                    thinking_tokens=models.thinking_tokens,
                    error=models.error,
                ),
            )
            return None
        if category == InboundCategory.UPDATE_REPO_MAP:
            project.set_repo_map(payload)
            return None
        if category == InboundCategory.UPDATE_AUTOCOMPLETION:
            project.set_all_tracked_files(payload)
            return None
        if category == InboundCategory.UPDATE_CONTEXT_FILES:
            project.update_context_files(payload)
            return None
        if category == InboundCategory.ADD_TO_INPUT_HISTORY:
            project.add_to_input_history(payload)
            return None
        if category == InboundCategory.USE_COMMAND_OUTPUT:
            output: CommandOutputPayload = payload
            if output.finished:
                project.close_command_output()
            else:
                project.open_command_output(output.command)
            return None

        log: LogPayload = payload
        project.add_log_message(log.level, log.message)
        return None

    def _spawn(self, coroutine: Any) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def _apply_init(connector: Connector, payload: InitPayload) -> None:
    listen_to: set[CommandCategory] = set()
    for value in payload.listen_to:
        try:
            listen_to.add(CommandCategory(value))
        except ValueError:
            logger.warning("Connector declared unknown command category %r", value)
    connector.listen_to = frozenset(listen_to)
    if payload.input_history_file:
        connector.input_history_file = payload.input_history_file
