"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

import pairdesk
from pairdesk.config import Settings
from pairdesk.orchestrator.events import RecordingUiSink
from pairdesk.orchestrator.store import ProjectData, Store

ECHO_WORKER_MODULE = "pairdesk.orchestrator.backend.echo_worker"
SRC_DIR = Path(pairdesk.__file__).resolve().parent.parent


@pytest.fixture()
def runtime(tmp_path: Path) -> Settings:
    """Settings isolated under tmp_path, launching the echo worker."""

    settings = Settings()
    return replace(
        settings,
        worker=replace(
            settings.worker,
            worker_module=ECHO_WORKER_MODULE,
            connector_dir=SRC_DIR,
            pid_files_dir=tmp_path / "pids",
        ),
        storage=replace(settings.storage, store_path=tmp_path / "settings.json"),
    )


@pytest.fixture()
def store(runtime: Settings) -> Store:
    return Store(runtime.storage.store_path)


@pytest.fixture()
def ui() -> RecordingUiSink:
    return RecordingUiSink()


@pytest.fixture()
def base_dir(tmp_path: Path, store: Store) -> str:
    """A project directory registered as open in the store."""

    project_dir = tmp_path / "project"
    project_dir.mkdir()
    store.set_open_projects([ProjectData(base_dir=str(project_dir), active=True)])
    return str(project_dir)
