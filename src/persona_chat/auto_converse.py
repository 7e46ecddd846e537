from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from loguru import logger

from persona_chat.errors import BusyError
from persona_chat.generation_engine import GenerationEngine, GenerationOutcome
from persona_chat.generation_status import GenerationStatus
from persona_chat.memory.session_store import SessionStore
from persona_chat.notifications import ToastChannel


class AutoConverseLoop:
    """Unattended turns for one session.

    In character mode each turn goes to the next character in roster order.
    Otherwise the same prompt is sent as a user turn, ``max_turns`` times.
    The loop waits for the generation gate to be idle before every turn and
    stops on request, on session switch or deletion, or on a failure it
    cannot retry.
    """

    def __init__(
        self,
        *,
        engine: GenerationEngine,
        sessions: SessionStore,
        status: GenerationStatus,
        toasts: ToastChannel,
        turn_delay_seconds: float = 1.0,
        error_retry_delay_seconds: float = 30.0,
        max_error_retries: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._sessions = sessions
        self._status = status
        self._toasts = toasts
        self._turn_delay_seconds = max(0.0, turn_delay_seconds)
        self._error_retry_delay_seconds = max(0.0, error_retry_delay_seconds)
        self._max_error_retries = max(0, max_error_retries)
        self._sleep = sleep
        self._session_id: str | None = None
        self._task: asyncio.Task | None = None
        self._stop_requested = False
        self._turns_completed = 0
        self._next_character_index = 0
        self._pending_stop: asyncio.Task | None = None
        sessions.on_active_session_changed(self._on_active_session_changed)
        sessions.on_session_deleted(self._on_session_deleted)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def session_id(self) -> str | None:
        return self._session_id if self.is_running else None

    @property
    def turns_completed(self) -> int:
        return self._turns_completed

    async def start(self, session_id: str, prompt: str = "", max_turns: int | None = None) -> bool:
        if self.is_running:
            self._toasts.show(f"Auto-converse is already running (session={self._session_id})", "error")
            return False
        session = self._sessions.require(session_id)
        if session.is_character_mode and not session.characters:
            self._toasts.show("Add at least one character before starting auto-converse.", "error")
            return False
        if not session.is_character_mode and not prompt.strip():
            self._toasts.show("Auto-send needs a message to repeat.", "error")
            return False

        self._session_id = session_id
        self._stop_requested = False
        self._turns_completed = 0
        self._next_character_index = 0
        self._task = asyncio.create_task(self._loop(session_id, prompt, max_turns))
        logger.info(f"Auto-converse started for session {session_id} (max_turns={max_turns})")
        return True

    async def stop(self) -> bool:
        task = self._task
        if task is None or task.done():
            return False
        self._stop_requested = True
        session_id = self._session_id
        if session_id is not None:
            await self._engine.cancel(session_id)
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info(f"Auto-converse stopped for session {session_id} after {self._turns_completed} turn(s)")
        return True

    async def wait(self) -> None:
        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _loop(self, session_id: str, prompt: str, max_turns: int | None) -> None:
        while not self._stop_requested:
            if max_turns is not None and self._turns_completed >= max_turns:
                break
            outcome = await self._run_turn(session_id, prompt)
            if outcome is None or not outcome.ok:
                break
            self._turns_completed += 1
            more = max_turns is None or self._turns_completed < max_turns
            if more and not self._stop_requested and self._turn_delay_seconds > 0:
                await self._sleep(self._turn_delay_seconds)
        if not self._stop_requested:
            self._toasts.show(f"Auto-converse finished after {self._turns_completed} turn(s).")

    async def _run_turn(self, session_id: str, prompt: str) -> GenerationOutcome | None:
        retries_left = self._max_error_retries
        while not self._stop_requested:
            await self._status.wait_idle()
            if self._stop_requested:
                return None
            session = self._sessions.get(session_id)
            if session is None:
                return None
            try:
                if session.is_character_mode:
                    if not session.characters:
                        return None
                    character = session.characters[self._next_character_index % len(session.characters)]
                    outcome = await self._engine.send(session_id, prompt, character_id=character.id, ephemeral=True)
                else:
                    outcome = await self._engine.send(session_id, prompt)
            except BusyError:
                # Someone else started a generation between idle and our send.
                continue

            if outcome.ok:
                if session.is_character_mode:
                    self._next_character_index += 1
                return outcome
            if outcome.status == "failed" and outcome.error is not None and outcome.error.retryable and retries_left > 0:
                retries_left -= 1
                self._toasts.show(
                    f"Turn failed ({outcome.error.message}); retrying in {self._error_retry_delay_seconds:.0f}s",
                    "error",
                )
                await self._sleep(self._error_retry_delay_seconds)
                continue
            if outcome.status == "failed":
                logger.warning(f"Auto-converse stopping after unrecoverable failure in session {session_id}")
            return outcome
        return None

    def _on_active_session_changed(self, previous: str | None, current: str | None) -> None:
        if self.is_running and self._session_id != current:
            self._schedule_stop()

    def _on_session_deleted(self, session_id: str) -> None:
        if self.is_running and self._session_id == session_id:
            self._schedule_stop()

    def _schedule_stop(self) -> None:
        self._stop_requested = True
        self._pending_stop = asyncio.get_running_loop().create_task(self.stop())
