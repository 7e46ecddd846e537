from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from persona_chat.errors import MessageNotFoundError
from persona_chat.memory.models import MutationResult, Session
from persona_chat.memory.session_store import SessionStore
from persona_chat.transcript import clear_audio


class AudioCacheLifecycle:
    """Tracks the opaque cached-audio handle carried by each message.

    Content edits clear the handle through ``Message.replace_content``; this
    class covers the explicit paths (store, single reset, bulk reset).
    """

    def __init__(self, sessions: SessionStore):
        self._sessions = sessions

    def has_cached_audio(self, session_id: str, message_id: str) -> bool:
        message = self._sessions.require(session_id).find_message(message_id)
        return message is not None and message.cached_audio is not None

    def store_audio(self, session_id: str, message_id: str, handle: str) -> None:
        def apply(session: Session) -> Session:
            message = session.find_message(message_id)
            if message is None:
                raise MessageNotFoundError(session_id, message_id)
            message.cached_audio = handle
            return session

        self._sessions.update_session(session_id, apply)

    def reset_audio_cache(self, session_id: str, message_id: str) -> MutationResult:
        if self._sessions.require(session_id).find_message(message_id) is None:
            raise MessageNotFoundError(session_id, message_id)
        return self.bulk_reset(session_id, [message_id])

    def bulk_reset(self, session_id: str, message_ids: Iterable[str]) -> MutationResult:
        ids = list(message_ids)
        outcome: list[MutationResult] = []

        def apply(session: Session) -> Session | None:
            result = clear_audio(session, ids)
            outcome.append(result)
            return session if result.changed else None

        self._sessions.update_session(session_id, apply)
        result = outcome[0]
        if result.audio_invalidated_ids:
            logger.info(f"Cleared cached audio for {len(result.audio_invalidated_ids)} message(s) in {session_id}")
        return result
