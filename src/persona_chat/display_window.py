from __future__ import annotations

from loguru import logger

from persona_chat.memory.models import INITIAL_MESSAGES_COUNT, LOAD_MORE_MESSAGES_COUNT, Message, Session
from persona_chat.memory.store import KeyValueStore
from persona_chat.memory.write_sink import AsyncWriteSink

DISPLAY_CONFIG_KEY = "messages_to_display_config"


class DisplayWindowManager:
    """Decides how many trailing messages of a session are materialized.

    Two layers of per-session overrides sit above the session setting. Counts
    the user asked for with load-more are persisted under
    ``messages_to_display_config``. Transient counts only widen the window for
    the current process, for example to keep an inserted message in view, and
    win over the persisted ones.
    """

    def __init__(
        self,
        *,
        sink: AsyncWriteSink | None = None,
        default_count: int = INITIAL_MESSAGES_COUNT,
        load_more_count: int = LOAD_MORE_MESSAGES_COUNT,
    ):
        self._sink = sink
        self._default_count = max(0, default_count)
        self._load_more_count = max(1, load_more_count)
        self._persisted: dict[str, int] = {}
        self._transient: dict[str, int] = {}

    async def load(self, store: KeyValueStore) -> None:
        raw = await store.get(DISPLAY_CONFIG_KEY, {}) or {}
        self._persisted = {str(k): max(0, int(v)) for k, v in raw.items()}

    def window_size(self, session: Session) -> int:
        for overrides in (self._transient, self._persisted):
            override = overrides.get(session.id)
            if override is not None:
                return override
        setting = session.settings.max_initial_messages_displayed
        if setting is not None and setting > 0:
            return setting
        return self._default_count

    def visible_slice(self, session: Session) -> list[Message]:
        size = self.window_size(session)
        if size <= 0:
            return []
        return session.messages[-size:]

    def hidden_count(self, session: Session) -> int:
        return max(0, len(session.messages) - self.window_size(session))

    def load_more(self, session: Session, increment: int | None = None) -> int:
        step = self._load_more_count if increment is None else increment
        if step <= 0:
            return self.window_size(session)
        return self._grow(session, self.window_size(session) + step)

    def load_all(self, session: Session) -> int:
        return self._grow(session, len(session.messages))

    def widen(self, session: Session, increment: int = 1) -> int:
        """Grow the window for this process only. Nothing is persisted."""
        current = self.window_size(session)
        if increment <= 0:
            return current
        self._transient[session.id] = current + increment
        return current + increment

    def reset(self, session_id: str) -> None:
        self._transient.pop(session_id, None)
        if self._persisted.pop(session_id, None) is not None:
            self._persist()

    def _grow(self, session: Session, target: int) -> int:
        current = self.window_size(session)
        if target <= current:
            return current
        self._transient.pop(session.id, None)
        self._persisted[session.id] = target
        self._persist()
        logger.debug(f"Display window for {session.id} grown to {target}")
        return target

    def _persist(self) -> None:
        if self._sink is not None:
            self._sink.schedule(DISPLAY_CONFIG_KEY, dict(self._persisted))
