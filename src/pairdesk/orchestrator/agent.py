"""Tool-calling agent collaborator used for ``agent`` mode prompts."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from pairdesk.orchestrator.models import ContextMessage

if TYPE_CHECKING:
    from pairdesk.orchestrator.project import Project

logger = logging.getLogger(__name__)


class Agent(Protocol):
    """Agent loop deciding what to ask the worker; runs outside this package."""

    async def run_agent(self, project: Project, prompt: str) -> list[ContextMessage]:
        """Run the agent for one prompt and return messages to add to context."""

    def interrupt(self) -> None:
        """Cancel the running agent loop, if any."""


class NullAgent:
    """Agent used when no tool-calling agent is configured."""

    async def run_agent(self, project: Project, prompt: str) -> list[ContextMessage]:
        logger.warning("Agent mode requested for %s but no agent is configured", project.base_dir)
        return []

    def interrupt(self) -> None:
        logger.debug("Interrupt requested with no agent configured")
