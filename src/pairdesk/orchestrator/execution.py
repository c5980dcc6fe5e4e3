"""Single-flight prompt execution with FIFO queuing of concurrent callers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from pairdesk.orchestrator.models import Mode, ResponseCompletedData

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    """Project-level prompt execution state."""

    IDLE = "idle"
    QUEUED = "queued"
    ACTIVE = "active"


@dataclass(slots=True)
class ExecutionUnit:
    """One logical prompt turn, from submission to finish."""

    prompt_id: str
    prompt: str
    mode: Mode | None
    completion: asyncio.Future[list[ResponseCompletedData]]
    responses: list[ResponseCompletedData] = field(default_factory=list)


class PromptExecution:
    """Owns the active execution unit and the callers queued behind it.

    Callers wait in one queue owned by the execution, not by the unit. When a
    unit finishes, the turn is handed directly to the head of the queue and
    stays reserved for it until it calls ``begin`` (or ``release``), so a
    caller arriving in between queues behind everyone already waiting.
    ``finish`` and ``abort`` are the only transitions away from a unit, and
    both resolve every future they own.
    """

    def __init__(self, base_dir: str) -> None:
        self.base_dir = base_dir
        self._active: ExecutionUnit | None = None
        self._queue: deque[asyncio.Future[bool]] = deque()
        self._reserved = False

    @property
    def state(self) -> ExecutionState:
        if self._queue:
            return ExecutionState.QUEUED
        if self._active is None and not self._reserved:
            return ExecutionState.IDLE
        return ExecutionState.ACTIVE

    @property
    def active_unit(self) -> ExecutionUnit | None:
        return self._active

    @property
    def current_prompt_id(self) -> str | None:
        return self._active.prompt_id if self._active else None

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def wait_until_idle(self) -> bool:
        """Suspend until this caller holds the turn.

        Returns True once the worker is free for this caller, who must then
        ``begin`` a unit or ``release`` the turn without awaiting anything in
        between. Returns False when the queue was aborted (worker stopped or
        died).
        """

        if self._active is None and not self._reserved and not self._queue:
            return True

        if self._active is not None:
            logger.info("Waiting for prompt %s to finish...", self._active.prompt_id)
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.result():
                self.release()
            elif waiter in self._queue:
                self._queue.remove(waiter)
            raise

    def begin(self, prompt: str, mode: Mode | None = None) -> ExecutionUnit:
        if self._active is not None:
            raise RuntimeError(f"Prompt {self._active.prompt_id} is still active")
        self._reserved = False
        self._active = ExecutionUnit(
            prompt_id=str(uuid.uuid4()),
            prompt=prompt,
            mode=mode,
            completion=asyncio.get_running_loop().create_future(),
        )
        return self._active

    def release(self) -> None:
        """Give up a turn obtained from ``wait_until_idle`` without starting a unit."""

        self._reserved = False
        if self._active is None:
            self._hand_off()

    def add_response(self, data: ResponseCompletedData) -> None:
        if self._active is None:
            logger.warning(
                "Completed response received with no active prompt: %s",
                data.message_id,
            )
            return
        self._active.responses.append(data)

    def finish(self) -> list[ResponseCompletedData]:
        """Complete the active unit and pass the turn to the next caller."""

        unit = self._active
        if unit is None:
            return []
        self._active = None
        responses = list(unit.responses)
        unit.responses.clear()
        _resolve(unit.completion, responses)
        self._hand_off()
        return responses

    def abort(self) -> None:
        """Release the active unit and the whole queue with empty results."""

        unit = self._active
        self._active = None
        self._reserved = False
        if unit is not None:
            logger.info("Aborting prompt %s for %s", unit.prompt_id, self.base_dir)
            unit.responses.clear()
            _resolve(unit.completion, [])
        while self._queue:
            _release(self._queue.popleft(), released=False)

    def _hand_off(self) -> None:
        while self._queue:
            waiter = self._queue.popleft()
            if waiter.done():
                continue
            self._reserved = True
            waiter.set_result(True)
            return


def _resolve(
    future: asyncio.Future[list[ResponseCompletedData]],
    value: list[ResponseCompletedData],
) -> None:
    if not future.done():
        future.set_result(list(value))


def _release(waiter: asyncio.Future[bool], *, released: bool) -> None:
    if not waiter.done():
        waiter.set_result(released)
