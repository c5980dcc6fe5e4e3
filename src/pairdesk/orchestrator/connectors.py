"""Connector registry and command routing.

A connector bridges one project to the worker transport. It declares the
command categories it accepts; the router fans every outbound command out to
the connectors interested in its category, in registration order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

from pairdesk.orchestrator.models import (
    ContextFile,
    ContextMessage,
    FileEdit,
    MessageRole,
    Mode,
)

logger = logging.getLogger(__name__)


class CommandCategory(str, Enum):
    """Outbound command categories; also the connector interest tags."""

    ADD_FILE = "add-file"
    DROP_FILE = "drop-file"
    ADD_MESSAGE = "add-message"
    PROMPT = "prompt"
    RUN_COMMAND = "run-command"
    ANSWER_QUESTION = "answer-question"
    INTERRUPT_RESPONSE = "interrupt-response"
    APPLY_EDITS = "apply-edits"
    SET_MODELS = "set-models"


@dataclass(slots=True)
class AddFileCommand:
    category: ClassVar[CommandCategory] = CommandCategory.ADD_FILE

    file: ContextFile

    def to_message(self) -> dict[str, Any]:
        return {"action": self.category.value, **self.file.to_message()}


@dataclass(slots=True)
class DropFileCommand:
    category: ClassVar[CommandCategory] = CommandCategory.DROP_FILE

    path: str

    def to_message(self) -> dict[str, Any]:
        return {"action": self.category.value, "path": self.path}


@dataclass(slots=True)
class AddMessageCommand:
    category: ClassVar[CommandCategory] = CommandCategory.ADD_MESSAGE

    role: MessageRole
    content: str
    acknowledge: bool = True

    def to_message(self) -> dict[str, Any]:
        return {
            "action": self.category.value,
            "role": self.role.value,
            "content": self.content,
            "acknowledge": self.acknowledge,
        }


@dataclass(slots=True)
class PromptCommand:
    category: ClassVar[CommandCategory] = CommandCategory.PROMPT

    prompt: str
    prompt_id: str
    mode: Mode | None = None
    architect_model: str | None = None
    clear_context: bool = False

    def to_message(self) -> dict[str, Any]:
        return {
            "action": self.category.value,
            "prompt": self.prompt,
            "editFormat": self.mode.value if self.mode else None,
            "architectModel": self.architect_model,
            "promptId": self.prompt_id,
            "clearContext": self.clear_context,
        }


@dataclass(slots=True)
class RunCommandCommand:
    category: ClassVar[CommandCategory] = CommandCategory.RUN_COMMAND

    command: str

    def to_message(self) -> dict[str, Any]:
        return {"action": self.category.value, "command": f"/{self.command}"}


@dataclass(slots=True)
class AnswerQuestionCommand:
    category: ClassVar[CommandCategory] = CommandCategory.ANSWER_QUESTION

    answer: str

    def to_message(self) -> dict[str, Any]:
        return {"action": self.category.value, "answer": self.answer}


@dataclass(slots=True)
class InterruptResponseCommand:
    category: ClassVar[CommandCategory] = CommandCategory.INTERRUPT_RESPONSE

    def to_message(self) -> dict[str, Any]:
        return {"action": self.category.value}


@dataclass(slots=True)
class ApplyEditsCommand:
    category: ClassVar[CommandCategory] = CommandCategory.APPLY_EDITS

    edits: list[FileEdit]

    def to_message(self) -> dict[str, Any]:
        return {"action": self.category.value, "edits": [e.to_message() for e in self.edits]}


@dataclass(slots=True)
class SetModelsCommand:
    category: ClassVar[CommandCategory] = CommandCategory.SET_MODELS

    main_model: str
    weak_model: str | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "action": self.category.value,
            "mainModel": self.main_model,
            "weakModel": self.weak_model,
        }


ConnectorCommand = (
    AddFileCommand
    | DropFileCommand
    | AddMessageCommand
    | PromptCommand
    | RunCommandCommand
    | AnswerQuestionCommand
    | InterruptResponseCommand
    | ApplyEditsCommand
    | SetModelsCommand
)


class Connector:
    """Capability-scoped subscriber attached to one project."""

    def __init__(
        self,
        listen_to: Iterable[CommandCategory | str],
        *,
        input_history_file: str | None = None,
    ) -> None:
        self.listen_to = frozenset(CommandCategory(value) for value in listen_to)
        self.input_history_file = input_history_file

    def listens_to(self, category: CommandCategory) -> bool:
        return category in self.listen_to

    def send(self, command: ConnectorCommand) -> None:
        raise NotImplementedError


class ChannelConnector(Connector):
    """Connector writing wire messages into an already-open message channel.

    ``channel`` receives one JSON-ready dict per command. It may be a plain
    callable or a coroutine function; coroutines are scheduled without waiting.
    """

    def __init__(
        self,
        channel: Callable[[dict[str, Any]], Any],
        listen_to: Iterable[CommandCategory | str],
        *,
        input_history_file: str | None = None,
    ) -> None:
        super().__init__(listen_to, input_history_file=input_history_file)
        self._channel = channel
        self._pending: set[asyncio.Future[Any]] = set()

    def send(self, command: ConnectorCommand) -> None:
        result = self._channel(command.to_message())
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._on_delivered)

    def _on_delivered(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Connector channel delivery failed: %s", error)


class ConnectorRouter:
    """Order-preserving connector collection with per-category fan-out."""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = base_dir
        self._connectors: list[Connector] = []

    @property
    def connectors(self) -> tuple[Connector, ...]:
        return tuple(self._connectors)

    def register(
        self,
        connector: Connector,
        *,
        context_files: Iterable[ContextFile] = (),
        connector_messages: Iterable[ContextMessage] = (),
    ) -> str | None:
        """Attach a connector and replay current state to it.

        Returns the connector's input-history file override, if any.
        """

        logger.info("Adding connector for base directory: %s", self.base_dir)
        self._connectors.append(connector)
        if connector.listens_to(CommandCategory.ADD_FILE):
            for context_file in context_files:
                self._deliver(connector, AddFileCommand(file=context_file))
        if connector.listens_to(CommandCategory.ADD_MESSAGE):
            for message in connector_messages:
                self._deliver(
                    connector,
                    AddMessageCommand(
                        role=message.role,
                        content=message.content,
                        acknowledge=False,
                    ),
                )
        return connector.input_history_file

    def unregister(self, connector: Connector) -> None:
        self._connectors = [c for c in self._connectors if c is not connector]

    def route(self, command: ConnectorCommand) -> int:
        """Send a command to every interested connector; returns deliveries."""

        delivered = 0
        for connector in list(self._connectors):
            if not connector.listens_to(command.category):
                continue
            if self._deliver(connector, command):
                delivered += 1
        return delivered

    def _deliver(self, connector: Connector, command: ConnectorCommand) -> bool:
        try:
            connector.send(command)
        except Exception:
            logger.exception(
                "Connector failed to handle %s for %s",
                command.category.value,
                self.base_dir,
            )
            return False
        return True
