"""Controllers for pairdesk CLI commands."""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import asdict, dataclass
from pathlib import Path

from pairdesk.config import Settings
from pairdesk.orchestrator.backend.process import (
    WorkerSupervisor,
    cleanup_stale_marker,
    liveness_marker_path,
)
from pairdesk.orchestrator.input_history import InputHistory
from pairdesk.orchestrator.smoke import run_smoke
from pairdesk.orchestrator.store import Store

_SHOWN_ENV_KEYS = ("PYTHONPATH", "CONNECTOR_SERVER_URL")


@dataclass(slots=True)
class WorkerArgsCommand:
    """CLI input for launch argument preview."""

    base_dir: str
    store_path: Path | None


@dataclass(slots=True)
class WorkerCleanupCommand:
    """CLI input for stale worker cleanup."""

    base_dir: str


@dataclass(slots=True)
class HistoryShowCommand:
    base_dir: str
    limit: int
    file_name: str | None = None


@dataclass(slots=True)
class HistoryAddCommand:
    base_dir: str
    message: str
    file_name: str | None = None


@dataclass(slots=True)
class SettingsShowCommand:
    base_dir: str | None
    store_path: Path | None


@dataclass(slots=True)
class SmokeCommand:
    """CLI input for the end-to-end smoke run."""

    base_dir: str
    prompt: str


class PairdeskCliController:
    """Coordinates worker, history, settings and smoke CLI operations."""

    def worker_args(self, command: WorkerArgsCommand) -> list[str]:
        settings = _settings(command.store_path)
        supervisor = WorkerSupervisor(
            base_dir=command.base_dir,
            runtime=settings,
            store=Store(settings.storage.store_path),
            on_output=_ignore,
            on_error_message=_ignore,
            on_exit=_ignore,
        )
        spec = supervisor.launch_spec()
        lines = [f"Command: {shlex.join(spec.argv)}", f"Working directory: {spec.cwd}"]
        lines.extend(f"{key}={spec.env[key]}" for key in _SHOWN_ENV_KEYS)
        lines.append(f"Liveness marker: {supervisor.marker_path}")
        return lines

    def worker_cleanup(self, command: WorkerCleanupCommand) -> list[str]:
        settings = _settings(None)
        marker_path = liveness_marker_path(settings.worker.pid_files_dir, command.base_dir)
        if not marker_path.exists():
            return [f"No liveness marker for {command.base_dir}"]
        cleanup_stale_marker(marker_path)
        if marker_path.exists():
            return [f"Liveness marker could not be removed: {marker_path}"]
        return [f"Cleaned up stale worker marker: {marker_path}"]

    def history_show(self, command: HistoryShowCommand) -> list[str]:
        history = _input_history(command.base_dir, command.file_name)
        entries = history.load()[: command.limit]
        if not entries:
            return [f"No input history at {history.path}"]
        lines: list[str] = []
        for index, entry in enumerate(entries, start=1):
            first, *rest = entry.split("\n")
            lines.append(f"{index}. {first}")
            lines.extend(f"   {line}" for line in rest)
        return lines

    def history_add(self, command: HistoryAddCommand) -> list[str]:
        history = _input_history(command.base_dir, command.file_name)
        if not history.append(command.message):
            return [f"Failed to write input history: {history.path}"]
        return [f"Added to input history: {history.path}"]

    def settings_show(self, command: SettingsShowCommand) -> list[str]:
        settings = _settings(command.store_path)
        store = Store(settings.storage.store_path)
        app_settings = store.get_settings()
        lines = [
            f"Store: {store.path}",
            f"language={app_settings.language}",
            f"startup_mode={app_settings.startup_mode.value}",
            f"worker.options={app_settings.worker.options}",
            f"models.preferred={', '.join(app_settings.models.preferred)}",
        ]
        if command.base_dir is not None:
            project_settings = store.get_project_settings(command.base_dir)
            lines.extend(
                f"project.{key}={value}" for key, value in asdict(project_settings).items()
            )
        return lines

    def smoke(self, command: SmokeCommand) -> list[str]:
        result = asyncio.run(run_smoke(command.base_dir, _settings(None), command.prompt))
        lines = [
            f"Worker pid: {result.worker_pid}",
            f"Commands sent: {', '.join(result.commands_sent)}",
            f"Response chunks: {result.chunks}",
        ]
        for response in result.responses:
            lines.append(f"Response: {response.content}")
            if response.commit_message:
                lines.append(f"Commit message: {response.commit_message}")
        lines.append(
            f"Costs: worker=${result.worker_total_cost:.3f} agent=${result.agent_total_cost:.3f}",
        )
        return lines


def _settings(store_path: Path | None) -> Settings:
    settings = Settings.from_env(store_path=store_path)
    settings.validate()
    return settings


def _input_history(base_dir: str, file_name: str | None) -> InputHistory:
    return InputHistory(base_dir, file_name or _settings(None).storage.input_history_file)


def _ignore(*_: object) -> None:
    return None
