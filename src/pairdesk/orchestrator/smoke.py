"""End-to-end smoke check: real echo worker plus an in-process loopback connector."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

import pairdesk
from pairdesk.config import Settings
from pairdesk.orchestrator.connectors import ChannelConnector, CommandCategory
from pairdesk.orchestrator.events import RecordingUiSink, UiEvent
from pairdesk.orchestrator.manager import ProjectManager
from pairdesk.orchestrator.models import ResponseCompletedData
from pairdesk.orchestrator.store import Store

logger = logging.getLogger(__name__)

ECHO_WORKER_MODULE = "pairdesk.orchestrator.backend.echo_worker"
SMOKE_USAGE_REPORT = "Tokens: 2.0k sent, 0.5k received. Cost: $0.012 message, $0.05 session."
SMOKE_LISTEN_TO = (
    CommandCategory.ADD_FILE.value,
    CommandCategory.DROP_FILE.value,
    CommandCategory.ADD_MESSAGE.value,
    CommandCategory.PROMPT.value,
    CommandCategory.RUN_COMMAND.value,
    CommandCategory.ANSWER_QUESTION.value,
    CommandCategory.INTERRUPT_RESPONSE.value,
)


class LoopbackChannel:
    """Answers every prompt the way a connected worker would."""

    def __init__(self, manager: ProjectManager, base_dir: str) -> None:
        self.manager = manager
        self.base_dir = base_dir
        self.received: list[dict[str, Any]] = []

    def __call__(self, message: dict[str, Any]) -> None:
        self.received.append(message)
        if message.get("action") == CommandCategory.PROMPT.value:
            asyncio.get_running_loop().call_soon(self._reply, message)

    def _reply(self, message: dict[str, Any]) -> None:
        prompt_id = message["promptId"]
        content = f"echo: {message['prompt']}"
        self.manager.dispatch(
            {"action": "response", "baseDir": self.base_dir, "content": content[:6]},
        )
        self.manager.dispatch(
            {
                "action": "response",
                "baseDir": self.base_dir,
                "content": content,
                "finished": True,
                "commitMessage": "smoke",
                "usageReport": SMOKE_USAGE_REPORT,
            },
        )
        self.manager.dispatch(
            {"action": "prompt-finished", "baseDir": self.base_dir, "promptId": prompt_id},
        )


@dataclass(slots=True)
class SmokeResult:
    """Outcome of one smoke run."""

    worker_pid: int | None
    responses: list[ResponseCompletedData]
    worker_total_cost: float
    agent_total_cost: float
    chunks: int
    commands_sent: list[str] = field(default_factory=list)


def smoke_settings(runtime: Settings, work_dir: Path) -> Settings:
    """Runtime settings pointing the supervisor at the echo worker."""

    return replace(
        runtime,
        worker=replace(
            runtime.worker,
            worker_module=ECHO_WORKER_MODULE,
            connector_dir=Path(pairdesk.__file__).resolve().parent.parent,
            pid_files_dir=work_dir / "pids",
        ),
        storage=replace(
            runtime.storage,
            store_path=work_dir / "settings.json",
            input_history_file=str(work_dir / "input.history"),
            autosave_on_close=False,
        ),
    )


async def run_smoke(base_dir: str, runtime: Settings, prompt: str) -> SmokeResult:
    """Start the echo worker for ``base_dir``, run one prompt and shut down."""

    with TemporaryDirectory(prefix="pairdesk-smoke-") as temp_dir:
        settings = smoke_settings(runtime, Path(temp_dir))
        ui = RecordingUiSink()
        manager = ProjectManager(
            store=Store(settings.storage.store_path),
            runtime=settings,
            ui=ui,
        )
        project = await manager.open_project(base_dir)
        channel = LoopbackChannel(manager, project.base_dir)
        connector = ChannelConnector(channel, listen_to=())
        manager.dispatch(
            {"action": "init", "baseDir": project.base_dir, "listenTo": list(SMOKE_LISTEN_TO)},
            connector,
        )
        worker_pid = project.supervisor.pid
        logger.info("Smoke worker started with pid %s", worker_pid)
        try:
            responses = await project.submit(prompt)
        finally:
            await manager.close_all()

    return SmokeResult(
        worker_pid=worker_pid,
        responses=responses,
        worker_total_cost=project.worker_total_cost,
        agent_total_cost=project.agent_total_cost,
        chunks=len(ui.of(UiEvent.RESPONSE_CHUNK)),
        commands_sent=[message["action"] for message in channel.received],
    )
