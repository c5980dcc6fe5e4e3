"""Persisted user settings, open projects and recent projects.

Readers always get complete objects: stored values are merged over the
defaults at every nesting level.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from pairdesk.config import DEFAULT_MAIN_MODEL
from pairdesk.orchestrator.models import StartupMode

logger = logging.getLogger(__name__)

MAX_RECENT_PROJECTS = 10


@dataclass(slots=True)
class WorkerOptions:
    """Free-text worker options and dotenv-style environment overrides."""

    options: str = ""
    environment_variables: str = ""


@dataclass(slots=True)
class ModelPreferences:
    preferred: list[str] = field(
        default_factory=lambda: [
            "deepseek/deepseek-chat",
            "gpt-4o",
            "deepseek/deepseek-coder",
            "claude-3-7-sonnet-20250219",
        ],
    )


@dataclass(slots=True)
class AppSettings:
    language: str = "en"
    startup_mode: StartupMode = StartupMode.EMPTY
    worker: WorkerOptions = field(default_factory=WorkerOptions)
    models: ModelPreferences = field(default_factory=ModelPreferences)


@dataclass(slots=True)
class ProjectSettings:
    main_model: str = DEFAULT_MAIN_MODEL
    weak_model: str | None = None
    architect_model: str | None = None
    reasoning_effort: str | None = None
    thinking_tokens: str | None = None
    current_mode: str = "code"
    render_markdown: bool = False


@dataclass(slots=True)
class ProjectData:
    base_dir: str
    active: bool = False
    settings: ProjectSettings = field(default_factory=ProjectSettings)


def normalize_base_dir(base_dir: str) -> str:
    """Comparison form of a project directory."""

    return os.path.normcase(os.path.normpath(os.path.expanduser(base_dir)))


def same_base_dir(first: str, second: str) -> bool:
    return normalize_base_dir(first) == normalize_base_dir(second)


class Store:
    """JSON-file backed settings store."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def get_settings(self) -> AppSettings:
        raw = self._read().get("settings")
        if not isinstance(raw, dict):
            return AppSettings()
        return _app_settings_from_json(raw)

    def save_settings(self, settings: AppSettings) -> None:
        document = self._read()
        document["settings"] = _app_settings_to_json(settings)
        self._write(document)

    def get_open_projects(self) -> list[ProjectData]:
        raw = self._read().get("openProjects")
        if not isinstance(raw, list):
            return []
        return [_project_from_json(item) for item in raw if isinstance(item, dict)]

    def set_open_projects(self, projects: list[ProjectData]) -> None:
        document = self._read()
        document["openProjects"] = [_project_to_json(project) for project in projects]
        self._write(document)

    def get_recent_projects(self) -> list[str]:
        open_dirs = [project.base_dir for project in self.get_open_projects()]
        return [
            base_dir
            for base_dir in self._recent()
            if not any(same_base_dir(base_dir, open_dir) for open_dir in open_dirs)
        ]

    def add_recent_project(self, base_dir: str) -> None:
        recent = [item for item in self._recent() if not same_base_dir(item, base_dir)]
        recent.insert(0, base_dir)
        document = self._read()
        document["recentProjects"] = recent[:MAX_RECENT_PROJECTS]
        self._write(document)

    def remove_recent_project(self, base_dir: str) -> None:
        document = self._read()
        document["recentProjects"] = [
            item for item in self.get_recent_projects() if not same_base_dir(item, base_dir)
        ]
        self._write(document)

    def get_project_settings(self, base_dir: str) -> ProjectSettings:
        for project in self.get_open_projects():
            if same_base_dir(project.base_dir, base_dir):
                return replace(project.settings)
        return ProjectSettings()

    def save_project_settings(self, base_dir: str, settings: ProjectSettings) -> ProjectSettings:
        projects = self.get_open_projects()
        for index, project in enumerate(projects):
            if same_base_dir(project.base_dir, base_dir):
                projects[index] = replace(project, settings=settings)
                self.set_open_projects(projects)
                logger.info("Project settings saved for %s", base_dir)
                return settings
        logger.warning("No open project found for %s; settings not saved", base_dir)
        return settings

    def _recent(self) -> list[str]:
        raw = self._read().get("recentProjects")
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, str)]

    def _read(self) -> dict[str, Any]:
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as error:
            logger.error("Failed to read settings store %s: %s", self.path, error)
            return {}
        if not isinstance(payload, dict):
            logger.error("Settings store %s does not contain an object", self.path)
            return {}
        return payload

    def _write(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True),
            "utf-8",
        )


def _app_settings_from_json(raw: dict[str, Any]) -> AppSettings:
    defaults = AppSettings()
    worker = raw.get("worker") if isinstance(raw.get("worker"), dict) else {}
    models = raw.get("models") if isinstance(raw.get("models"), dict) else {}
    try:
        startup_mode = StartupMode(raw.get("startupMode", defaults.startup_mode.value))
    except ValueError:
        logger.warning("Unknown startup mode %r, using default", raw.get("startupMode"))
        startup_mode = defaults.startup_mode
    preferred = models.get("preferred")
    return AppSettings(
        language=str(raw.get("language", defaults.language)),
        startup_mode=startup_mode,
        worker=WorkerOptions(
            options=str(worker.get("options", defaults.worker.options)),
            environment_variables=str(
                worker.get("environmentVariables", defaults.worker.environment_variables),
            ),
        ),
        models=ModelPreferences(
            preferred=(
                [str(item) for item in preferred]
                if isinstance(preferred, list)
                else defaults.models.preferred
            ),
        ),
    )


def _app_settings_to_json(settings: AppSettings) -> dict[str, Any]:
    return {
        "language": settings.language,
        "startupMode": settings.startup_mode.value,
        "worker": {
            "options": settings.worker.options,
            "environmentVariables": settings.worker.environment_variables,
        },
        "models": {"preferred": list(settings.models.preferred)},
    }


def _project_settings_from_json(raw: Any) -> ProjectSettings:
    defaults = ProjectSettings()
    if not isinstance(raw, dict):
        return defaults
    return ProjectSettings(
        main_model=raw.get("mainModel") or defaults.main_model,
        weak_model=_optional(raw.get("weakModel")),
        architect_model=_optional(raw.get("architectModel")),
        reasoning_effort=_optional(raw.get("reasoningEffort")),
        thinking_tokens=_optional(raw.get("thinkingTokens")),
        current_mode=str(raw.get("currentMode") or defaults.current_mode),
        render_markdown=bool(raw.get("renderMarkdown", defaults.render_markdown)),
    )


def _project_settings_to_json(settings: ProjectSettings) -> dict[str, Any]:
    return {
        "mainModel": settings.main_model,
        "weakModel": settings.weak_model,
        "architectModel": settings.architect_model,
        "reasoningEffort": settings.reasoning_effort,
        "thinkingTokens": settings.thinking_tokens,
        "currentMode": settings.current_mode,
        "renderMarkdown": settings.render_markdown,
    }


def _project_from_json(raw: dict[str, Any]) -> ProjectData:
    return ProjectData(
        base_dir=str(raw.get("baseDir", "")),
        active=bool(raw.get("active", False)),
        settings=_project_settings_from_json(raw.get("settings")),
    )


def _project_to_json(project: ProjectData) -> dict[str, Any]:
    return {
        "baseDir": project.base_dir,
        "active": project.active,
        "settings": _project_settings_to_json(project.settings),
    }


def _optional(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
