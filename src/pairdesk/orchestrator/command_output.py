"""Buffering of worker output produced while a slash command runs."""

from __future__ import annotations

from collections.abc import Callable


class CommandOutputCapture:
    """Collects stdout per command and folds it into the conversation on close."""

    def __init__(
        self,
        *,
        emit_output: Callable[[str, str], object],
        add_context_message: Callable[[str], object],
    ) -> None:
        self._emit_output = emit_output
        self._add_context_message = add_context_message
        self._current: str | None = None
        self._buffers: dict[str, str] = {}

    @property
    def current_command(self) -> str | None:
        return self._current

    def buffer(self, command: str) -> str:
        return self._buffers.get(command, "")

    def open(self, command: str) -> None:
        self._current = command
        self._buffers[command] = ""
        self._add(command, "")

    def append(self, output: str) -> None:
        if self._current is None:
            return
        self._add(self._current, output)

    def close(self) -> None:
        command = self._current
        if command is None:
            return
        output = self._buffers.pop(command, "")
        if output.strip():
            self._add_context_message(f"{command}\n\n{output}")
        self._current = None

    def reset(self) -> None:
        self._current = None
        self._buffers.clear()

    def _add(self, command: str, output: str) -> None:
        self._buffers[command] = self._buffers.get(command, "") + output
        self._emit_output(command, output)
