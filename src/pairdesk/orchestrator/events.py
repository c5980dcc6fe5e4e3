"""UI-facing event sink."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class UiEvent(str, Enum):
    """Events the orchestrator pushes to the host UI."""

    FILE_ADDED = "file-added"
    RESPONSE_CHUNK = "response-chunk"
    RESPONSE_COMPLETED = "response-completed"
    ASK_QUESTION = "ask-question"
    COMMAND_OUTPUT = "command-output"
    LOG = "log"
    USER_MESSAGE = "user-message"
    TOOL = "tool"
    INPUT_HISTORY_UPDATED = "input-history-updated"
    CONTEXT_FILES_UPDATED = "context-files-updated"
    SET_CURRENT_MODELS = "set-current-models"
    CLEAR_PROJECT = "clear-project"


class UiSink(Protocol):
    """Receives UI events; must not block."""

    def emit(self, event: UiEvent, data: Any) -> None:
        """Deliver one event with its data object."""


class LoggingUiSink:
    """Headless sink that only logs events."""

    def emit(self, event: UiEvent, data: Any) -> None:
        logger.debug("UI event %s: %r", event.value, data)


@dataclass(slots=True)
class RecordingUiSink:
    """Keeps every emitted event in order."""

    events: list[tuple[UiEvent, Any]] = field(default_factory=list)

    def emit(self, event: UiEvent, data: Any) -> None:
        self.events.append((event, data))

    def of(self, event: UiEvent) -> list[Any]:
        return [data for recorded, data in self.events if recorded == event]
