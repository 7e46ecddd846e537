from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from persona_chat.errors import BusyError, MessageNotFoundError
from persona_chat.generation_engine import GenerationEngine, GenerationOutcome
from persona_chat.memory.models import MessageRole, MutationResult, Session
from persona_chat.memory.session_store import SessionStore
from persona_chat.transcript import TranscriptService, replace_content, truncate_after


class EditAction(str, Enum):
    CANCEL = "cancel"
    SAVE_LOCALLY = "save_locally"
    SAVE_AND_SUBMIT = "save_and_submit"
    CONTINUE_PREFIX = "continue_prefix"


@dataclass(frozen=True)
class EditSession:
    session_id: str
    message_id: str
    role: MessageRole
    original_content: str


@dataclass
class EditOutcome:
    action: EditAction
    applied: bool
    reason: str = ""
    mutation: MutationResult = field(default_factory=MutationResult.unchanged)
    generation: GenerationOutcome | None = None


def can_submit(text: str) -> bool:
    return bool(text.strip())


class EditResolutionEngine:
    """Resolves the single open message edit into a transcript change."""

    def __init__(self, sessions: SessionStore, engine: GenerationEngine):
        self._sessions = sessions
        self._engine = engine
        self._transcript = TranscriptService(sessions)
        self._current: EditSession | None = None

    @property
    def current(self) -> EditSession | None:
        return self._current

    def open(self, session_id: str, message_id: str) -> EditSession:
        session = self._sessions.require(session_id)
        message = session.find_message(message_id)
        if message is None:
            raise MessageNotFoundError(session_id, message_id)
        if self._current is not None:
            logger.debug(f"Replacing open edit of {self._current.message_id} with {message_id}")
        self._current = EditSession(session_id, message_id, message.role, message.content)
        return self._current

    def close(self) -> None:
        self._current = None

    async def resolve(self, action: EditAction, edited_text: str = "") -> EditOutcome:
        edit = self._current
        if edit is None:
            return EditOutcome(action, applied=False, reason="no open edit")

        if action in (EditAction.SAVE_AND_SUBMIT, EditAction.CONTINUE_PREFIX) and not can_submit(edited_text):
            # Stays open; the action is simply disabled.
            return EditOutcome(action, applied=False, reason="empty")

        if action is EditAction.CANCEL:
            self.close()
            if self._engine.is_generating_message(edit.session_id, edit.message_id):
                await self._engine.cancel(edit.session_id)
            return EditOutcome(action, applied=True)

        if action is EditAction.CONTINUE_PREFIX and edit.role is not MessageRole.MODEL:
            return EditOutcome(action, applied=False, reason="only generated messages can be continued")

        self.close()
        if action is EditAction.SAVE_LOCALLY:
            return self._save_locally(edit, edited_text)
        if action is EditAction.SAVE_AND_SUBMIT:
            if edit.role is MessageRole.USER:
                return await self._resubmit_user(edit, edited_text)
            return self._finalize_generated(edit, edited_text)
        generation = await self._engine.continue_prefix(edit.session_id, edit.message_id, edited_text)
        return EditOutcome(action, applied=generation.status != "failed", generation=generation)

    def _save_locally(self, edit: EditSession, text: str) -> EditOutcome:
        if text == edit.original_content:
            return EditOutcome(EditAction.SAVE_LOCALLY, applied=False, reason="unchanged")
        mutation = self._transcript.update_content(edit.session_id, edit.message_id, text)
        if edit.role.is_generated:
            # The recorded duration no longer describes this text.
            self._sessions.drop_generation_times([edit.message_id])
        return EditOutcome(EditAction.SAVE_LOCALLY, applied=True, mutation=mutation)

    async def _resubmit_user(self, edit: EditSession, text: str) -> EditOutcome:
        if not self._engine.status.is_idle:
            raise BusyError(self._engine.status.session_id)
        mutation = self._replace_and_truncate(edit, text)
        session = self._sessions.require(edit.session_id)
        index = session.index_of(edit.message_id)
        message = session.messages[index]
        # The edited message already sits at the end, so the prompt is not appended again.
        generation = await self._engine.send(
            edit.session_id,
            text,
            attachments=message.attachments,
            history_override=session.messages[:index],
            ephemeral=True,
        )
        return EditOutcome(EditAction.SAVE_AND_SUBMIT, applied=True, mutation=mutation, generation=generation)

    def _finalize_generated(self, edit: EditSession, text: str) -> EditOutcome:
        mutation = self._replace_and_truncate(edit, text)
        self._sessions.drop_generation_times([edit.message_id])
        return EditOutcome(EditAction.SAVE_AND_SUBMIT, applied=True, mutation=mutation)

    def _replace_and_truncate(self, edit: EditSession, text: str) -> MutationResult:
        outcome: list[MutationResult] = []

        def apply(session: Session) -> Session:
            replaced = replace_content(session, edit.message_id, text)
            truncated = truncate_after(session, edit.message_id)
            outcome.append(replaced.merge(truncated))
            return session

        self._sessions.update_session(edit.session_id, apply)
        result = outcome[0]
        if result.removed_ids:
            self._sessions.drop_generation_times(result.removed_ids)
        return result
