"""Domain models shared by the orchestrator, connectors and UI sink."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageRole(str, Enum):
    """Conversation roles recorded in session context."""

    USER = "user"
    ASSISTANT = "assistant"


class Mode(str, Enum):
    """Prompt edit modes understood by the worker."""

    CODE = "code"
    ASK = "ask"
    ARCHITECT = "architect"
    AGENT = "agent"


class StartupMode(str, Enum):
    """What a project restores when it starts."""

    EMPTY = "empty"
    LAST = "last"


class LogLevel(str, Enum):
    """Levels of user-visible log lines."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    LOADING = "loading"


@dataclass(slots=True, frozen=True)
class ContextFile:
    """File (or folder) included in the worker's chat context."""

    path: str
    read_only: bool = False

    def to_message(self) -> dict[str, Any]:
        return {"path": self.path, "readOnly": self.read_only}


@dataclass(slots=True)
class ContextMessage:
    """One conversation record kept for session persistence and replay."""

    role: MessageRole
    content: str


@dataclass(slots=True)
class QuestionData:
    """Interactive yes/no question raised by the worker."""

    text: str
    subject: str | None = None
    key: str | None = None
    default_answer: str | None = None
    internal: bool = False


@dataclass(slots=True)
class UsageReport:
    """Token and cost accounting attached to a completed response or tool call.

    ``worker_total_cost`` and ``agent_total_cost`` are running totals reported by
    their subsystem, not deltas.
    """

    sent_tokens: int = 0
    received_tokens: int = 0
    message_cost: float = 0.0
    worker_total_cost: float | None = None
    agent_total_cost: float | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "sentTokens": self.sent_tokens,
            "receivedTokens": self.received_tokens,
            "messageCost": self.message_cost,
            "workerTotalCost": self.worker_total_cost,
            "agentTotalCost": self.agent_total_cost,
        }


@dataclass(slots=True)
class FileEdit:
    """Search/replace edit forwarded to the worker for application."""

    path: str
    original: str
    updated: str

    def to_message(self) -> dict[str, Any]:
        return {"path": self.path, "original": self.original, "updated": self.updated}


@dataclass(slots=True)
class ModelsData:
    """Models currently used by the worker for a project."""

    base_dir: str
    main_model: str
    weak_model: str | None = None
    architect_model: str | None = None
    reasoning_effort: str | None = None
    thinking_tokens: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ResponseMessage:
    """Inbound response chunk or completed message from the worker."""

    content: str
    finished: bool
    id: str | None = None
    reflected_message: str | None = None
    edited_files: list[str] | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    usage_report: UsageReport | str | None = None


@dataclass(slots=True)
class ResponseChunkData:
    base_dir: str
    message_id: str
    chunk: str
    reflected_message: str | None = None


@dataclass(slots=True)
class ResponseCompletedData:
    """Completed response fragment; the unit of a prompt's result list."""

    base_dir: str
    message_id: str
    content: str
    reflected_message: str | None = None
    edited_files: list[str] | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    usage_report: UsageReport | None = None


@dataclass(slots=True)
class UserMessageData:
    base_dir: str
    content: str
    mode: Mode | None = None


@dataclass(slots=True)
class LogData:
    base_dir: str
    level: LogLevel
    message: str | None = None


@dataclass(slots=True)
class ToolData:
    base_dir: str
    id: str
    server_name: str
    tool_name: str
    args: dict[str, Any] | None = None
    response: str | None = None
    usage_report: UsageReport | None = None


@dataclass(slots=True)
class CommandOutputData:
    base_dir: str
    command: str
    output: str


@dataclass(slots=True)
class InputHistoryData:
    base_dir: str
    messages: list[str]


@dataclass(slots=True)
class FileAddedData:
    base_dir: str
    file: ContextFile


@dataclass(slots=True)
class ContextFilesData:
    base_dir: str
    files: list[ContextFile]


@dataclass(slots=True)
class AskQuestionData:
    base_dir: str
    question: QuestionData


@dataclass(slots=True)
class ClearProjectData:
    base_dir: str
    clear_messages: bool
    clear_session: bool


@dataclass(slots=True)
class SessionData:
    """Named snapshot of a project's conversation and context files."""

    name: str
    context_messages: list[ContextMessage] = field(default_factory=list)
    context_files: list[ContextFile] = field(default_factory=list)
