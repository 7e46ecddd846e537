from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from persona_chat.errors import MessageNotFoundError
from persona_chat.memory.models import Message, MessageRole, MutationResult, Session
from persona_chat.memory.session_store import SessionStore


def _require_index(session: Session, message_id: str) -> int:
    index = session.index_of(message_id)
    if index < 0:
        raise MessageNotFoundError(session.id, message_id)
    return index


def _removal(removed: list[Message]) -> MutationResult:
    if not removed:
        return MutationResult.unchanged()
    return MutationResult(
        removed_ids=tuple(m.id for m in removed),
        audio_invalidated_ids=tuple(m.id for m in removed if m.cached_audio is not None),
    )


def delete_with_cascade(session: Session, message_id: str) -> MutationResult:
    """Remove the message and every message created after it."""
    index = _require_index(session, message_id)
    removed = session.messages[index:]
    session.messages = session.messages[:index]
    return _removal(removed)


def truncate_after(session: Session, message_id: str) -> MutationResult:
    index = _require_index(session, message_id)
    removed = session.messages[index + 1 :]
    session.messages = session.messages[: index + 1]
    return _removal(removed)


def delete_exact(session: Session, message_ids: Iterable[str]) -> MutationResult:
    targets = set(message_ids)
    removed = [m for m in session.messages if m.id in targets]
    session.messages = [m for m in session.messages if m.id not in targets]
    return _removal(removed)


def replace_content(session: Session, message_id: str, content: str) -> MutationResult:
    message = session.messages[_require_index(session, message_id)]
    if message.content == content:
        return MutationResult.unchanged()
    had_audio = message.replace_content(content)
    return MutationResult(audio_invalidated_ids=(message.id,) if had_audio else ())


def clear_audio(session: Session, message_ids: Iterable[str]) -> MutationResult:
    targets = set(message_ids)
    cleared: list[str] = []
    for message in session.messages:
        if message.id in targets and message.cached_audio is not None:
            message.cached_audio = None
            cleared.append(message.id)
    if not cleared:
        return MutationResult.unchanged()
    return MutationResult(audio_invalidated_ids=tuple(cleared))


def insert_empty_after(
    session: Session,
    message_id: str,
    role: MessageRole,
    character_name: str | None = None,
) -> tuple[Message, MutationResult]:
    index = _require_index(session, message_id)
    message = Message(role=role, content="", character_name=character_name)
    session.messages.insert(index + 1, message)
    return message, MutationResult()


class TranscriptService:
    """Store-backed wrappers for the transcript mutations."""

    def __init__(self, sessions: SessionStore):
        self._sessions = sessions

    def delete_message_and_subsequent(self, session_id: str, message_id: str) -> MutationResult:
        result = self._apply(session_id, lambda s: delete_with_cascade(s, message_id))
        logger.info(f"Deleted {len(result.removed_ids)} message(s) from {message_id} onward in {session_id}")
        return result

    def delete_single_message(self, session_id: str, message_id: str) -> MutationResult:
        return self._apply(session_id, lambda s: delete_exact(s, [message_id]))

    def delete_messages(self, session_id: str, message_ids: Iterable[str]) -> MutationResult:
        ids = list(message_ids)
        return self._apply(session_id, lambda s: delete_exact(s, ids))

    def update_content(self, session_id: str, message_id: str, content: str) -> MutationResult:
        return self._apply(session_id, lambda s: replace_content(s, message_id, content))

    def insert_empty_message_after(self, session_id: str, message_id: str, role: MessageRole) -> Message:
        """Inject an empty message for the user to fill in through an edit.

        In character mode an injected model message speaks as the first character.
        """
        inserted: list[Message] = []

        def apply(session: Session) -> Session:
            speaker = None
            if role is MessageRole.MODEL and session.is_character_mode and session.characters:
                speaker = session.characters[0].name
            message, _ = insert_empty_after(session, message_id, role, speaker)
            inserted.append(message)
            return session

        self._sessions.update_session(session_id, apply)
        return inserted[0]

    def _apply(self, session_id: str, mutation) -> MutationResult:
        outcome: list[MutationResult] = []

        def apply(session: Session) -> Session | None:
            result = mutation(session)
            outcome.append(result)
            return session if result.changed else None

        self._sessions.update_session(session_id, apply)
        result = outcome[0]
        if result.removed_ids:
            self._sessions.drop_generation_times(result.removed_ids)
        return result
