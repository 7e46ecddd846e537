from __future__ import annotations

import copy
from typing import Any

from loguru import logger

from persona_chat.memory.models import RequestLogEntry, RequestType, Session
from persona_chat.memory.session_store import SessionStore


def mask_secret(value: str) -> str:
    return f"...{value[-4:]}" if value else ""


class RequestLogger:
    """Appends provider requests to a session's log when its debug flag is on."""

    def __init__(self, sessions: SessionStore):
        self._sessions = sessions

    def log(
        self,
        session_id: str,
        request_type: RequestType,
        payload: dict[str, Any],
        *,
        character_name: str | None = None,
        api_session_id: str | None = None,
    ) -> RequestLogEntry | None:
        session = self._sessions.get(session_id)
        if session is None or not session.settings.debug_api_requests:
            return None

        entry = RequestLogEntry(
            request_type=request_type,
            payload=copy.deepcopy(payload),
            api_session_id=api_session_id,
            character_name=character_name,
        )

        def apply(draft: Session) -> Session:
            draft.request_logs.append(entry)
            return draft

        self._sessions.update_session(session_id, apply)
        logger.debug(f"Request logged: session={session_id}, type={request_type.value}")
        return entry

    def clear(self, session_id: str) -> int:
        session = self._sessions.require(session_id)
        count = len(session.request_logs)
        if count == 0:
            return 0

        def apply(draft: Session) -> Session:
            draft.request_logs = []
            return draft

        self._sessions.update_session(session_id, apply)
        logger.info(f"Cleared {count} request log entries for session {session_id}")
        return count
