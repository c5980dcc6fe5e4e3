"""Worker process backend."""

from pairdesk.orchestrator.backend.base import WorkerLaunchSpec, WorkerProcessError
from pairdesk.orchestrator.backend.process import WorkerSupervisor

__all__ = [
    "WorkerLaunchSpec",
    "WorkerProcessError",
    "WorkerSupervisor",
]
