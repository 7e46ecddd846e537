from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from itertools import count

from loguru import logger

from persona_chat.errors import BusyError


class GenerationState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    CANCELLING = "cancelling"


@dataclass(frozen=True)
class GenerationTicket:
    number: int
    session_id: str
    started_at: float


class GenerationStatus:
    """Process-wide gate allowing at most one in-flight generation.

    Transitions::

        idle --try_begin--> generating --cancel--> cancelling
          ^                     |                      |
          +------complete-------+----------------------+

    The generation engine is the only writer. Everything else reads ``state``
    or waits with :meth:`wait_idle`.
    """

    def __init__(self) -> None:
        self._state = GenerationState.IDLE
        self._ticket: GenerationTicket | None = None
        self._numbers = count(1)
        self._idle_waiters: list[asyncio.Future] = []
        self._listeners: list[Callable[[GenerationState], None]] = []

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def is_idle(self) -> bool:
        return self._state is GenerationState.IDLE

    @property
    def session_id(self) -> str | None:
        return self._ticket.session_id if self._ticket else None

    @property
    def ticket(self) -> GenerationTicket | None:
        return self._ticket

    def try_begin(self, session_id: str) -> GenerationTicket:
        if self._state is not GenerationState.IDLE:
            raise BusyError(self.session_id)
        self._ticket = GenerationTicket(next(self._numbers), session_id, time.monotonic())
        self._set_state(GenerationState.GENERATING)
        return self._ticket

    def cancel(self) -> bool:
        if self._state is not GenerationState.GENERATING:
            return False
        self._set_state(GenerationState.CANCELLING)
        return True

    def complete(self, ticket: GenerationTicket) -> bool:
        if not self.is_current(ticket):
            logger.debug(f"Ignoring completion for stale generation #{ticket.number}")
            return False
        self._ticket = None
        self._set_state(GenerationState.IDLE)
        return True

    def is_current(self, ticket: GenerationTicket | None) -> bool:
        return ticket is not None and self._ticket is not None and ticket.number == self._ticket.number

    def elapsed_seconds(self) -> float:
        if self._ticket is None:
            return 0.0
        return time.monotonic() - self._ticket.started_at

    def elapsed_display(self) -> str:
        if self._ticket is None:
            return ""
        return f"{self.elapsed_seconds():.1f}s"

    async def wait_idle(self) -> None:
        if self.is_idle:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        await waiter

    def add_listener(self, callback: Callable[[GenerationState], None]) -> None:
        self._listeners.append(callback)

    def _set_state(self, state: GenerationState) -> None:
        self._state = state
        if state is GenerationState.IDLE:
            waiters, self._idle_waiters = self._idle_waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(None)
        for listener in list(self._listeners):
            listener(state)
