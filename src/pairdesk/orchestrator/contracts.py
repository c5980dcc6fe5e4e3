"""Typed contracts for inbound worker/agent events arriving as untyped dicts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pairdesk.orchestrator.models import (
    ContextFile,
    LogLevel,
    QuestionData,
    ResponseMessage,
    UsageReport,
)
from pairdesk.orchestrator.usage import coerce_usage_report


class InboundCategory(str, Enum):
    """Event categories a connector may send to the orchestrator."""

    INIT = "init"
    RESPONSE = "response"
    PROMPT_FINISHED = "prompt-finished"
    TOOL = "tool"
    ASK_QUESTION = "ask-question"
    SET_MODELS = "set-models"
    UPDATE_REPO_MAP = "update-repo-map"
    UPDATE_AUTOCOMPLETION = "update-autocompletion"
    UPDATE_CONTEXT_FILES = "update-context-files"
    ADD_TO_INPUT_HISTORY = "add-to-input-history"
    USE_COMMAND_OUTPUT = "use-command-output"
    ADD_LOG = "add-log"


@dataclass(slots=True)
class InboundEvent:
    """Parsed inbound event; ``payload`` type depends on ``category``."""

    category: InboundCategory
    base_dir: str
    payload: Any


@dataclass(slots=True)
class InitPayload:
    listen_to: tuple[str, ...]
    input_history_file: str | None = None


@dataclass(slots=True)
class ToolPayload:
    id: str
    server_name: str
    tool_name: str
    args: dict[str, Any] | None = None
    response: str | None = None
    usage_report: UsageReport | None = None


@dataclass(slots=True)
class SetModelsPayload:
    main_model: str
    weak_model: str | None = None
    architect_model: str | None = None
    reasoning_effort: str | None = None
    thinking_tokens: str | None = None
    error: str | None = None


@dataclass(slots=True)
class CommandOutputPayload:
    command: str
    finished: bool


@dataclass(slots=True)
class LogPayload:
    level: LogLevel
    message: str | None = None


def parse_inbound_event(raw: Any) -> InboundEvent:  # noqa: C901, PLR0911
    """Validate one inbound message and convert it into a typed event."""

    if not isinstance(raw, dict):
        raise TypeError("Inbound event must be an object")
    action = raw.get("action")
    try:
        category = InboundCategory(action)
    except ValueError as error:
        raise ValueError(f"Unsupported inbound action: {action!r}") from error

    base_dir = raw.get("baseDir")
    if not isinstance(base_dir, str) or not base_dir.strip():
        raise ValueError("Inbound event baseDir must be a non-empty string")

    if category == InboundCategory.INIT:
        listen_to = raw.get("listenTo", [])
        if not isinstance(listen_to, list) or not all(isinstance(v, str) for v in listen_to):
            raise TypeError("init.listenTo must be an array of strings")
        return InboundEvent(
            category,
            base_dir,
            InitPayload(
                listen_to=tuple(listen_to),
                input_history_file=_optional_str(raw, "inputHistoryFile"),
            ),
        )
    if category == InboundCategory.RESPONSE:
        return InboundEvent(category, base_dir, _parse_response(raw))
    if category == InboundCategory.PROMPT_FINISHED:
        return InboundEvent(category, base_dir, _optional_str(raw, "promptId"))
    if category == InboundCategory.TOOL:
        return InboundEvent(
            category,
            base_dir,
            ToolPayload(
                id=_required_str(raw, "id"),
                server_name=_required_str(raw, "serverName"),
                tool_name=_required_str(raw, "toolName"),
                args=_optional_dict(raw, "args"),
                response=_optional_str(raw, "response"),
                usage_report=coerce_usage_report(raw.get("usageReport")),
            ),
        )
    if category == InboundCategory.ASK_QUESTION:
        return InboundEvent(
            category,
            base_dir,
            QuestionData(
                text=_required_str(raw, "question"),
                subject=_optional_str(raw, "subject"),
                key=_optional_str(raw, "key"),
                default_answer=_optional_str(raw, "defaultAnswer"),
                internal=bool(raw.get("internal", False)),
            ),
        )
    if category == InboundCategory.SET_MODELS:
        return InboundEvent(
            category,
            base_dir,
            SetModelsPayload(
                main_model=_required_str(raw, "mainModel"),
                weak_model=_optional_str(raw, "weakModel"),
                architect_model=_optional_str(raw, "architectModel"),
                reasoning_effort=_optional_str(raw, "reasoningEffort"),
                thinking_tokens=_optional_text(raw, "thinkingTokens"),
                error=_optional_str(raw, "error"),
            ),
        )
    if category == InboundCategory.UPDATE_REPO_MAP:
        return InboundEvent(category, base_dir, _optional_str(raw, "repoMap") or "")
    if category == InboundCategory.UPDATE_AUTOCOMPLETION:
        return InboundEvent(category, base_dir, _str_list(raw, "allFiles"))
    if category == InboundCategory.UPDATE_CONTEXT_FILES:
        files = raw.get("files", [])
        if not isinstance(files, list):
            raise TypeError("update-context-files.files must be an array")
        return InboundEvent(category, base_dir, [_parse_context_file(item) for item in files])
    if category == InboundCategory.ADD_TO_INPUT_HISTORY:
        return InboundEvent(category, base_dir, _required_str(raw, "message"))
    if category == InboundCategory.USE_COMMAND_OUTPUT:
        return InboundEvent(
            category,
            base_dir,
            CommandOutputPayload(
                command=_required_str(raw, "command"),
                finished=bool(raw.get("finished", False)),
            ),
        )
    level = raw.get("level", LogLevel.INFO.value)
    try:
        log_level = LogLevel(level)
    except ValueError as error:
        raise ValueError(f"Unsupported log level: {level!r}") from error
    return InboundEvent(
        category,
        base_dir,
        LogPayload(level=log_level, message=_optional_str(raw, "message")),
    )


def _parse_response(raw: dict[str, Any]) -> ResponseMessage:
    content = raw.get("content", "")
    if not isinstance(content, str):
        raise TypeError("response.content must be a string")
    usage_report = raw.get("usageReport")
    if usage_report is not None and not isinstance(usage_report, str):
        usage_report = coerce_usage_report(usage_report)
    edited_files = raw.get("editedFiles")
    return ResponseMessage(
        content=content,
        finished=bool(raw.get("finished", False)),
        id=_optional_str(raw, "messageId"),
        reflected_message=_optional_str(raw, "reflectedMessage"),
        edited_files=_str_list(raw, "editedFiles") if edited_files is not None else None,
        commit_hash=_optional_str(raw, "commitHash"),
        commit_message=_optional_str(raw, "commitMessage"),
        diff=_optional_str(raw, "diff"),
        usage_report=usage_report,
    )


def _parse_context_file(item: Any) -> ContextFile:
    if not isinstance(item, dict):
        raise TypeError("context file entry must be an object")
    return ContextFile(path=_required_str(item, "path"), read_only=bool(item.get("readOnly")))


def _required_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _optional_text(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    return _optional_str(raw, key)


def _optional_dict(raw: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise TypeError(f"{key} must be an object")
    return value


def _str_list(raw: dict[str, Any], key: str) -> list[str]:
    value = raw.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TypeError(f"{key} must be an array of strings")
    return list(value)
