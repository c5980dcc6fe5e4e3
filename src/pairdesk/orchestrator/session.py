"""Conversation and context-file state plus named session persistence."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from urllib.parse import quote

from pairdesk.orchestrator.models import ContextFile, ContextMessage, MessageRole, SessionData

logger = logging.getLogger(__name__)

AUTOSAVED_SESSION_NAME = "__autosaved__"


class SessionState:
    """In-memory context of one project: files in chat and conversation records."""

    def __init__(self) -> None:
        self._files: list[ContextFile] = []
        self._messages: list[ContextMessage] = []

    def get_context_files(self) -> list[ContextFile]:
        return list(self._files)

    def add_context_file(self, context_file: ContextFile) -> bool:
        if any(existing.path == context_file.path for existing in self._files):
            return False
        self._files.append(context_file)
        return True

    def drop_context_file(self, path: str) -> ContextFile | None:
        for index, existing in enumerate(self._files):
            if existing.path == path:
                return self._files.pop(index)
        return None

    def set_context_files(self, files: Iterable[ContextFile]) -> None:
        self._files = []
        for context_file in files:
            self.add_context_file(context_file)

    def get_context_messages(self) -> list[ContextMessage]:
        return list(self._messages)

    def add_context_message(self, role: MessageRole, content: str) -> None:
        self._messages.append(ContextMessage(role=role, content=content))

    def remove_last_message(self) -> ContextMessage | None:
        if not self._messages:
            return None
        return self._messages.pop()

    def clear_messages(self) -> None:
        self._messages = []

    def load_messages(self, messages: Iterable[ContextMessage]) -> None:
        self._messages = list(messages)

    def load_files(self, files: Iterable[ContextFile]) -> None:
        self.set_context_files(files)

    def to_connector_messages(
        self,
        messages: Iterable[ContextMessage] | None = None,
    ) -> list[ContextMessage]:
        """Messages as the worker should see them: non-empty, in order."""

        source = self._messages if messages is None else list(messages)
        return [message for message in source if message.content.strip()]

    def snapshot(self, name: str) -> SessionData:
        return SessionData(
            name=name,
            context_messages=self.get_context_messages(),
            context_files=self.get_context_files(),
        )

    def to_markdown(self) -> str:
        lines: list[str] = []
        for message in self._messages:
            heading = "User" if message.role == MessageRole.USER else "Assistant"
            lines.append(f"### {heading}\n\n{message.content.strip()}\n")
        return "\n".join(lines)


class JsonSessionRepository:
    """Stores named sessions as one JSON document per session."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def save(self, session: SessionData) -> Path:
        path = self._path(session.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(_session_to_json(session), ensure_ascii=False, indent=2, sort_keys=True),
            "utf-8",
        )
        return path

    def find(self, name: str) -> SessionData | None:
        path = self._path(name)
        if not path.exists():
            return None
        return _session_from_json(json.loads(path.read_text("utf-8")))

    def list_all(self) -> list[SessionData]:
        if not self.directory.exists():
            return []
        sessions: list[SessionData] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                session = _session_from_json(json.loads(path.read_text("utf-8")))
            except (OSError, KeyError, ValueError, TypeError) as error:
                logger.warning("Skipping unreadable session file %s: %s", path, error)
                continue
            if session.name != AUTOSAVED_SESSION_NAME:
                sessions.append(session)
        return sessions

    def delete(self, name: str) -> bool:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _path(self, name: str) -> Path:
        # percent-encoding keeps distinct names in distinct files
        return self.directory / f"{quote(name, safe='')}.json"


def _session_to_json(session: SessionData) -> dict[str, Any]:
    return {
        "name": session.name,
        "contextMessages": [
            {"role": message.role.value, "content": message.content}
            for message in session.context_messages
        ],
        "contextFiles": [context_file.to_message() for context_file in session.context_files],
    }


def _session_from_json(raw: Any) -> SessionData:
    if not isinstance(raw, dict):
        raise TypeError("Session document must be an object")
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("session.name must be a non-empty string")
    messages = raw.get("contextMessages", [])
    files = raw.get("contextFiles", [])
    if not isinstance(messages, list) or not isinstance(files, list):
        raise TypeError("session.contextMessages and session.contextFiles must be arrays")
    return SessionData(
        name=name,
        context_messages=[
            ContextMessage(role=MessageRole(item["role"]), content=str(item["content"]))
            for item in messages
        ],
        context_files=[
            ContextFile(path=str(item["path"]), read_only=bool(item.get("readOnly")))
            for item in files
        ],
    )
