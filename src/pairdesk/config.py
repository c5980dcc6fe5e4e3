"""Runtime configuration for worker supervision and local storage."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MAIN_MODEL = "deepseek/deepseek-chat"
DEFAULT_INPUT_HISTORY_FILE = ".pairdesk.input.history"

_DEFAULT_HOME = Path.home() / ".pairdesk"


@dataclass(slots=True)
class WorkerSettings:
    """How the per-project worker process is launched and tracked."""

    python_command: str = sys.executable
    worker_module: str = "connector"
    connector_dir: Path = _DEFAULT_HOME / "connector"
    server_port: int = 24337
    pid_files_dir: Path = _DEFAULT_HOME / "pids"
    default_main_model: str = DEFAULT_MAIN_MODEL


@dataclass(slots=True)
class StorageSettings:
    """Locations of persisted settings, sessions and input history."""

    store_path: Path = _DEFAULT_HOME / "settings.json"
    sessions_dir_name: str = ".pairdesk/sessions"
    input_history_file: str = DEFAULT_INPUT_HISTORY_FILE
    autosave_on_close: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    worker: WorkerSettings = field(default_factory=WorkerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, store_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        home = Path(os.getenv("PAIRDESK_HOME", str(_DEFAULT_HOME)))
        return cls(
            worker=WorkerSettings(
                python_command=os.getenv("PAIRDESK_PYTHON_COMMAND", sys.executable),
                worker_module=os.getenv("PAIRDESK_WORKER_MODULE", "connector"),
                connector_dir=Path(
                    os.getenv("PAIRDESK_CONNECTOR_DIR", str(home / "connector")),
                ),
                server_port=int(os.getenv("PAIRDESK_SERVER_PORT", "24337")),
                pid_files_dir=Path(os.getenv("PAIRDESK_PID_FILES_DIR", str(home / "pids"))),
                default_main_model=os.getenv("PAIRDESK_DEFAULT_MAIN_MODEL", DEFAULT_MAIN_MODEL),
            ),
            storage=StorageSettings(
                store_path=store_path
                or Path(os.getenv("PAIRDESK_STORE_PATH", str(home / "settings.json"))),
                sessions_dir_name=os.getenv("PAIRDESK_SESSIONS_DIR_NAME", ".pairdesk/sessions"),
                input_history_file=os.getenv(
                    "PAIRDESK_INPUT_HISTORY_FILE",
                    DEFAULT_INPUT_HISTORY_FILE,
                ),
                autosave_on_close=_env_bool("PAIRDESK_AUTOSAVE_ON_CLOSE", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the supervisor cannot work with."""

        if not self.worker.python_command.strip():
            raise ValueError("PAIRDESK_PYTHON_COMMAND must not be empty.")
        if not self.worker.worker_module.strip():
            raise ValueError("PAIRDESK_WORKER_MODULE must not be empty.")
        if not 0 < self.worker.server_port < 65_536:
            raise ValueError("PAIRDESK_SERVER_PORT must be between 1 and 65535.")
        if not self.storage.input_history_file.strip():
            raise ValueError("PAIRDESK_INPUT_HISTORY_FILE must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
