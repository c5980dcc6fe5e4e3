"""Launch description and errors for the worker process backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


class WorkerProcessError(RuntimeError):
    """Worker process could not be terminated."""

    def __init__(self, message: str, *, pid: int | None) -> None:
        super().__init__(message)
        self.pid = pid


@dataclass(slots=True)
class WorkerLaunchSpec:
    """Everything needed to spawn one worker process."""

    program: str
    args: list[str]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]
