"""Classification of worker stderr output."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

WARNING_MARKER = "Warning:"
USAGE_MARKER = "usage:"
ERROR_TOKEN = "error:"


class StderrKind(str, Enum):
    WARNING = "warning"
    USAGE = "usage"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class StderrClassification:
    kind: StderrKind
    message: str


def classify_stderr_line(text: str) -> StderrClassification:
    """Warnings are noise, usage errors are user-facing, the rest is logged."""

    if text.startswith(WARNING_MARKER):
        return StderrClassification(StderrKind.WARNING, text)
    if text.startswith(USAGE_MARKER):
        error_at = text.find(ERROR_TOKEN)
        message = text[error_at:] if error_at >= 0 else text
        return StderrClassification(StderrKind.USAGE, message)
    return StderrClassification(StderrKind.UNKNOWN, text)
