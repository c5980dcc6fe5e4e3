"""Append-only prompt history shared with the worker.

File format::

    # 2026-10-17T12:00:00.000000+00:00
    +first line
    +second line
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def format_history_entry(message: str, timestamp: datetime) -> str:
    body = message.replace("\n", "\n+")
    return f"\n# {timestamp.isoformat()}\n+{body}\n"


def parse_input_history(content: str) -> list[str]:
    """Return entries most recent first."""

    history: list[str] = []
    current: list[str] | None = None
    for line in content.split("\n"):
        if line.startswith("# "):
            if current is not None:
                history.append("\n".join(current))
            current = None
        elif line.startswith("+"):
            if current is None:
                current = []
            current.append(line[1:].removesuffix("\r"))
    if current is not None:
        history.append("\n".join(current))
    history.reverse()
    return history


class InputHistory:
    """Reads and appends the project's input history file."""

    def __init__(self, base_dir: str, file_name: str) -> None:
        self.base_dir = base_dir
        self.file_name = file_name

    @property
    def path(self) -> Path:
        file_path = Path(self.file_name)
        if file_path.is_absolute():
            return file_path
        return Path(self.base_dir) / file_path

    def load(self) -> list[str]:
        try:
            content = self.path.read_text("utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as error:
            logger.error("Failed to load input history %s: %s", self.path, error)
            return []
        return parse_input_history(content)

    def append(self, message: str) -> bool:
        entry = format_history_entry(message, datetime.now(tz=UTC))
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(entry)
        except OSError as error:
            logger.error("Failed to add to input history %s: %s", self.path, error)
            return False
        return True
