from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from persona_chat.audio_cache import AudioCacheLifecycle
from persona_chat.memory.models import MutationResult
from persona_chat.memory.session_store import SessionStore
from persona_chat.transcript import TranscriptService


class SelectionCoordinator:
    """Selected message ids for the active session and the bulk actions over them."""

    def __init__(self, sessions: SessionStore, transcript: TranscriptService, audio: AudioCacheLifecycle):
        self._sessions = sessions
        self._transcript = transcript
        self._audio = audio
        self._selection_mode = False
        self._selected: set[str] = set()
        sessions.on_active_session_changed(self._on_active_session_changed)

    @property
    def selection_mode(self) -> bool:
        return self._selection_mode

    @property
    def selected_ids(self) -> frozenset[str]:
        return frozenset(self._selected)

    def toggle_selection_mode(self) -> bool:
        self._selection_mode = not self._selection_mode
        self._selected.clear()
        return self._selection_mode

    def toggle(self, message_id: str) -> bool:
        if message_id in self._selected:
            self._selected.discard(message_id)
            return False
        self._selected.add(message_id)
        return True

    def select_all_visible(self, message_ids: Iterable[str]) -> None:
        self._selected = set(message_ids)

    def clear(self) -> None:
        self._selected.clear()

    def bulk_delete(self) -> MutationResult:
        session_id = self._require_active()
        if not self._selected:
            return MutationResult.unchanged()
        result = self._transcript.delete_messages(session_id, self._selected)
        logger.info(f"Bulk deleted {len(result.removed_ids)} message(s) from {session_id}")
        self._selected.clear()
        return result

    def bulk_reset_audio(self) -> MutationResult:
        session_id = self._require_active()
        if not self._selected:
            return MutationResult.unchanged()
        result = self._audio.bulk_reset(session_id, self._selected)
        self._selected.clear()
        return result

    def _require_active(self) -> str:
        session_id = self._sessions.active_session_id
        if session_id is None:
            raise ValueError("No active session")
        return session_id

    def _on_active_session_changed(self, previous: str | None, current: str | None) -> None:
        self._selected.clear()
