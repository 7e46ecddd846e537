from __future__ import annotations

import copy
from collections.abc import Callable, Iterable
from dataclasses import replace

from loguru import logger

from persona_chat.errors import SessionNotFoundError
from persona_chat.memory.models import DEFAULT_SESSION_TITLE, ChatSettings, Session, new_id, utc_now
from persona_chat.memory.store import KeyValueStore
from persona_chat.memory.write_sink import AsyncWriteSink

SESSIONS_KEY = "chat_sessions"
ACTIVE_SESSION_KEY = "active_chat_id"
GENERATION_TIMES_KEY = "message_generation_times"

SessionUpdater = Callable[[Session], Session | None]


class SessionStore:
    """Owns every session in the process.

    All mutation goes through :meth:`update_session`, which hands the updater a
    private copy and swaps it in only when the updater returns normally. Reads
    return copies, so callers never hold a reference into live state.
    """

    def __init__(self, sink: AsyncWriteSink | None = None, *, default_settings: ChatSettings | None = None):
        self._sink = sink
        self._default_settings = default_settings or ChatSettings()
        self._sessions: list[Session] = []
        self._active_session_id: str | None = None
        self._generation_times: dict[str, float] = {}
        self._active_listeners: list[Callable[[str | None, str | None], None]] = []
        self._deleted_listeners: list[Callable[[str], None]] = []

    async def load(self, store: KeyValueStore) -> None:
        raw_sessions = await store.get(SESSIONS_KEY, []) or []
        self._sessions = []
        for raw in raw_sessions:
            try:
                self._sessions.append(Session.from_dict(raw))
            except (KeyError, TypeError, ValueError) as ex:
                logger.warning(f"Skipping unreadable persisted session: {ex}")
        self._generation_times = {
            str(k): float(v) for k, v in (await store.get(GENERATION_TIMES_KEY, {}) or {}).items()
        }
        active_id = await store.get(ACTIVE_SESSION_KEY)
        if active_id is not None and self._index(active_id) < 0:
            active_id = None
        if active_id is None and self._sessions:
            active_id = self._sorted()[0].id
        self._active_session_id = active_id
        logger.info(f"Loaded {len(self._sessions)} sessions (active={self._active_session_id})")

    @property
    def default_settings(self) -> ChatSettings:
        return copy.deepcopy(self._default_settings)

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    @property
    def active_session(self) -> Session | None:
        if self._active_session_id is None:
            return None
        return self.get(self._active_session_id)

    @property
    def sessions(self) -> list[Session]:
        return [copy.deepcopy(s) for s in self._sorted()]

    def get(self, session_id: str) -> Session | None:
        index = self._index(session_id)
        if index < 0:
            return None
        return copy.deepcopy(self._sessions[index])

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def update_session(self, session_id: str, updater: SessionUpdater, *, persist: bool = True) -> Session | None:
        """Atomic read-modify-write. Returns the stored result, or None when the updater aborted."""
        index = self._index(session_id)
        if index < 0:
            raise SessionNotFoundError(session_id)
        draft = copy.deepcopy(self._sessions[index])
        updated = updater(draft)
        if updated is None:
            return None
        updated.id = session_id
        updated.updated_at = utc_now()
        self._sessions[index] = updated
        if persist:
            self._persist_sessions()
        return copy.deepcopy(updated)

    def create_session(
        self,
        *,
        title: str | None = None,
        settings: ChatSettings | None = None,
        select: bool = True,
    ) -> Session:
        session = Session(
            settings=copy.deepcopy(settings) if settings is not None else self.default_settings,
            title=title or DEFAULT_SESSION_TITLE,
        )
        self._sessions.insert(0, session)
        logger.info(f"Created session {session.id}")
        self._persist_sessions()
        if select:
            self.select_session(session.id)
        return copy.deepcopy(session)

    def duplicate_session(self, session_id: str, *, select: bool = True) -> Session:
        """Copy a session under fresh session, message, attachment and character ids.

        Cached audio and request logs stay with the original. Recorded
        generation times follow the copied messages.
        """
        original = self.require(session_id)
        renamed: dict[str, str] = {}
        messages = []
        for message in original.messages:
            renamed[message.id] = new_id()
            messages.append(
                replace(
                    message,
                    id=renamed[message.id],
                    attachments=[replace(a, id=new_id()) for a in message.attachments],
                    cached_audio=None,
                    is_streaming=False,
                )
            )
        duplicate = Session(
            settings=original.settings,
            title=f"{original.title} (Copy)",
            messages=messages,
            characters=[replace(c, id=new_id()) for c in original.characters],
            is_character_mode=original.is_character_mode,
        )
        self._sessions.insert(0, duplicate)
        logger.info(f"Duplicated session {session_id} as {duplicate.id}")
        self._persist_sessions()

        copied_times = {
            renamed[old]: seconds for old, seconds in self._generation_times.items() if old in renamed
        }
        if copied_times:
            self._generation_times.update(copied_times)
            self._schedule(GENERATION_TIMES_KEY, dict(self._generation_times))
        if select:
            self.select_session(duplicate.id)
        return copy.deepcopy(duplicate)

    def select_session(self, session_id: str | None) -> None:
        if session_id is not None and self._index(session_id) < 0:
            raise SessionNotFoundError(session_id)
        previous = self._active_session_id
        if previous == session_id:
            return
        self._active_session_id = session_id
        self._schedule(ACTIVE_SESSION_KEY, session_id)
        for listener in list(self._active_listeners):
            listener(previous, session_id)

    def rename_session(self, session_id: str, title: str) -> Session | None:
        title = title.strip()
        if not title:
            return None

        def apply(session: Session) -> Session:
            session.title = title
            return session

        return self.update_session(session_id, apply)

    def delete_session(self, session_id: str) -> None:
        index = self._index(session_id)
        if index < 0:
            raise SessionNotFoundError(session_id)
        removed = self._sessions.pop(index)
        self.drop_generation_times(m.id for m in removed.messages)
        self._persist_sessions()
        logger.info(f"Deleted session {session_id}")
        for listener in list(self._deleted_listeners):
            listener(session_id)
        if self._active_session_id == session_id:
            remaining = self._sorted()
            self.select_session(remaining[0].id if remaining else None)

    def on_active_session_changed(self, callback: Callable[[str | None, str | None], None]) -> None:
        self._active_listeners.append(callback)

    def on_session_deleted(self, callback: Callable[[str], None]) -> None:
        self._deleted_listeners.append(callback)

    @property
    def generation_times(self) -> dict[str, float]:
        return dict(self._generation_times)

    def generation_time(self, message_id: str) -> float | None:
        return self._generation_times.get(message_id)

    def set_generation_time(self, message_id: str, seconds: float) -> None:
        self._generation_times[message_id] = round(seconds, 3)
        self._schedule(GENERATION_TIMES_KEY, dict(self._generation_times))

    def drop_generation_times(self, message_ids: Iterable[str]) -> None:
        changed = False
        for message_id in message_ids:
            if self._generation_times.pop(message_id, None) is not None:
                changed = True
        if changed:
            self._schedule(GENERATION_TIMES_KEY, dict(self._generation_times))

    def _index(self, session_id: str) -> int:
        for i, session in enumerate(self._sessions):
            if session.id == session_id:
                return i
        return -1

    def _sorted(self) -> list[Session]:
        return sorted(self._sessions, key=lambda s: s.updated_at, reverse=True)

    def _persist_sessions(self) -> None:
        self._schedule(SESSIONS_KEY, [s.to_dict() for s in self._sessions])

    def _schedule(self, key: str, value: object) -> None:
        if self._sink is not None:
            self._sink.schedule(key, value)
