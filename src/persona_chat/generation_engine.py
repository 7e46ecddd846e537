from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger
from tenacity import AsyncRetrying

from persona_chat.context import build_character_history, build_history, build_mimic_history
from persona_chat.credentials import CredentialRotator
from persona_chat.errors import CredentialRejectedError, GenerationError, MessageNotFoundError
from persona_chat.generation_status import GenerationStatus, GenerationTicket
from persona_chat.memory.models import (
    DEFAULT_SESSION_TITLE,
    TITLE_PREVIEW_CHARS,
    Attachment,
    Character,
    Message,
    MessageRole,
    RequestType,
    Session,
    new_id,
)
from persona_chat.memory.request_log import RequestLogger, mask_secret
from persona_chat.memory.session_store import SessionStore
from persona_chat.notifications import NewMessageNotifier, ToastChannel
from persona_chat.provider import GenerationProvider, GenerationRequest, GenerationResult, HistoryEntry
from persona_chat.providers.common import credential_failover_kwargs, describe_request


@dataclass
class GenerationOutcome:
    status: str  # completed | cancelled | failed | skipped
    message_id: str | None = None
    text: str = ""
    error: GenerationError | None = None
    duration_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class CancellationHandle:
    def __init__(self) -> None:
        self._cancelled = False
        self._task: asyncio.Future | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Future) -> None:
        self._task = task

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


@dataclass
class _InFlight:
    ticket: GenerationTicket
    session_id: str
    message_id: str
    handle: CancellationHandle
    done: asyncio.Future


@dataclass
class _Plan:
    """One generation: the request plus how it lands in the transcript."""

    request: GenerationRequest
    request_type: RequestType = RequestType.MESSAGE_SEND
    prepare: Callable[[Session], None] | None = None
    reply_role: MessageRole = MessageRole.MODEL
    character_name: str | None = None
    target_message_id: str | None = None
    prefix: str | None = None
    restore_on_empty_cancel: bool = False
    removed_ids: list[str] = field(default_factory=list)
    added_ids: list[str] = field(default_factory=list)
    title: str | None = None


def title_from_prompt(prompt: str) -> str:
    text = " ".join(prompt.split())
    if len(text) > TITLE_PREVIEW_CHARS:
        return text[:TITLE_PREVIEW_CHARS] + "..."
    return text


class GenerationEngine:
    def __init__(
        self,
        *,
        provider: GenerationProvider,
        sessions: SessionStore,
        credentials: CredentialRotator,
        status: GenerationStatus,
        request_log: RequestLogger,
        notifier: NewMessageNotifier,
        toasts: ToastChannel,
        on_stream: Callable[[str, str], None] | None = None,
    ) -> None:
        self._provider = provider
        self._sessions = sessions
        self._credentials = credentials
        self._status = status
        self._request_log = request_log
        self._notifier = notifier
        self._toasts = toasts
        self._on_stream = on_stream
        self._in_flight: _InFlight | None = None

    @property
    def status(self) -> GenerationStatus:
        return self._status

    def is_generating_message(self, session_id: str, message_id: str) -> bool:
        in_flight = self._in_flight
        return in_flight is not None and in_flight.session_id == session_id and in_flight.message_id == message_id

    async def send(
        self,
        session_id: str,
        prompt: str,
        attachments: list[Attachment] | None = None,
        history_override: list[Message] | None = None,
        character_id: str | None = None,
        ephemeral: bool = False,
    ) -> GenerationOutcome:
        session = self._sessions.require(session_id)
        attachments = list(attachments or [])
        character = self._resolve_character(session, character_id)

        prompt_text = prompt
        if not prompt.strip() and not attachments and history_override is None:
            if character is None:
                logger.debug(f"Ignoring empty send for session {session_id}")
                return GenerationOutcome(status="skipped")
            if character.contextual_info.strip():
                prompt_text = character.contextual_info

        base = history_override if history_override is not None else session.messages
        history, system_instruction = self._history_for(session, base, character)
        append_user = not ephemeral and (bool(prompt_text.strip()) or bool(attachments))
        user_id = new_id()
        title = title_from_prompt(prompt_text) if append_user and prompt_text.strip() else None

        def prepare(draft: Session) -> None:
            if not append_user:
                return
            draft.messages.append(
                Message(role=MessageRole.USER, content=prompt_text, attachments=attachments, id=user_id)
            )
            if title is not None and draft.title == DEFAULT_SESSION_TITLE:
                draft.title = title

        plan = _Plan(
            request=self._request(session, system_instruction, history, prompt=prompt_text, attachments=attachments),
            prepare=prepare,
            character_name=character.name if character else None,
            added_ids=[user_id] if append_user else [],
            title=title if session.title == DEFAULT_SESSION_TITLE else None,
        )
        ticket = self._status.try_begin(session_id)
        return await self._run(ticket, session, plan)

    async def continue_(self, session_id: str) -> GenerationOutcome:
        """Generate the next turn over the existing transcript without a new user message."""
        session = self._sessions.require(session_id)
        if session.is_character_mode:
            self._toasts.show("Continue is not available in character mode.", "error")
            return GenerationOutcome(status="skipped")
        if not session.messages:
            self._toasts.show("Nothing to continue yet.", "error")
            return GenerationOutcome(status="skipped")

        ticket = self._status.try_begin(session_id)
        settings = session.settings
        if session.messages[-1].role is MessageRole.USER:
            plan = _Plan(
                request=self._request(session, settings.system_instruction, build_history(session.messages, settings)),
            )
        else:
            # The model already spoke last: write the user's next turn instead.
            plan = _Plan(
                request=self._request(
                    session,
                    settings.user_persona_instruction,
                    build_mimic_history(session.messages, settings),
                ),
                request_type=RequestType.OTHER,
                reply_role=MessageRole.USER,
            )
        return await self._run(ticket, session, plan)

    async def regenerate(self, session_id: str, message_id: str) -> GenerationOutcome:
        session = self._sessions.require(session_id)
        index = session.index_of(message_id)
        if index < 0:
            raise MessageNotFoundError(session_id, message_id)
        target = session.messages[index]

        if target.role is MessageRole.USER:
            if index + 1 < len(session.messages):
                following = session.messages[index + 1]
                if following.is_generated:
                    return await self.regenerate(session_id, following.id)
                self._toasts.show("No generated reply follows this message.", "error")
                return GenerationOutcome(status="skipped")
            ticket = self._status.try_begin(session_id)
            history = build_history(session.messages, session.settings)
            plan = _Plan(request=self._request(session, session.settings.system_instruction, history))
            return await self._run(ticket, session, plan)

        ticket = self._status.try_begin(session_id)
        character = self._character_named(session, target.character_name)
        history, system_instruction = self._history_for(session, session.messages[:index], character)
        removed = [m.id for m in session.messages[index:]]

        def prepare(draft: Session) -> None:
            draft.messages = draft.messages[:index]

        plan = _Plan(
            request=self._request(session, system_instruction, history),
            prepare=prepare,
            character_name=target.character_name,
            restore_on_empty_cancel=True,
            removed_ids=removed,
        )
        return await self._run(ticket, session, plan)

    async def continue_prefix(self, session_id: str, message_id: str, prefix: str) -> GenerationOutcome:
        """Ask the model to extend ``prefix``; the message becomes prefix + continuation."""
        session = self._sessions.require(session_id)
        index = session.index_of(message_id)
        if index < 0:
            raise MessageNotFoundError(session_id, message_id)
        target = session.messages[index]
        if target.role is not MessageRole.MODEL:
            raise ValueError("Only generated messages can be continued from a prefix")

        ticket = self._status.try_begin(session_id)
        character = self._character_named(session, target.character_name)
        history, system_instruction = self._history_for(session, session.messages[:index], character)
        request = self._request(session, system_instruction, history)
        request.prefix = prefix
        plan = _Plan(
            request=request,
            character_name=target.character_name,
            target_message_id=message_id,
            prefix=prefix,
            restore_on_empty_cancel=True,
        )
        return await self._run(ticket, session, plan)

    async def cancel(self, session_id: str) -> bool:
        in_flight = self._in_flight
        if in_flight is None or in_flight.session_id != session_id:
            return False
        if not self._status.cancel():
            await asyncio.shield(in_flight.done)
            return False
        logger.info(f"Cancelling generation #{in_flight.ticket.number} for session {session_id}")
        in_flight.handle.cancel()
        await asyncio.shield(in_flight.done)
        return True

    async def _run(self, ticket: GenerationTicket, snapshot: Session, plan: _Plan) -> GenerationOutcome:
        session_id = snapshot.id
        message_id = plan.target_message_id or new_id()
        handle = CancellationHandle()
        done = asyncio.get_running_loop().create_future()
        accumulated: list[str] = []
        started = time.monotonic()

        try:
            self._sessions.update_session(session_id, lambda s: self._apply_pending(s, plan, message_id))
            self._in_flight = _InFlight(ticket, session_id, message_id, handle, done)
            self._log_request(session_id, plan)

            def on_delta(chunk: str) -> None:
                if handle.cancelled or not self._status.is_current(ticket):
                    return
                accumulated.append(chunk)
                text = self._compose(plan, "".join(accumulated))
                self._update(
                    session_id,
                    lambda s: self._set_streamed_text(s, message_id, text),
                    persist=False,
                )
                if self._on_stream is not None:
                    self._on_stream(message_id, chunk)

            task = asyncio.ensure_future(self._call_with_failover(plan.request, on_delta, accumulated.clear))
            handle.bind(task)
            try:
                result = await task
            except asyncio.CancelledError:
                if not handle.cancelled:
                    # The caller itself was cancelled; settle like a user cancel.
                    task.cancel()
                    self._finish_cancelled(snapshot, plan, message_id, "".join(accumulated))
                    raise
                return self._finish_cancelled(snapshot, plan, message_id, "".join(accumulated))
            except GenerationError as ex:
                return self._finish_failed(snapshot, plan, message_id, ex)
            except Exception:
                self._roll_back(snapshot, plan, message_id)
                raise

            if handle.cancelled:
                logger.debug(f"Dropping late result for cancelled generation #{ticket.number}")
                return self._finish_cancelled(snapshot, plan, message_id, "".join(accumulated))
            return self._finish_completed(snapshot, plan, message_id, result, time.monotonic() - started)
        finally:
            self._in_flight = None
            self._status.complete(ticket)
            if not done.done():
                done.set_result(None)

    async def _call_with_failover(
        self,
        request: GenerationRequest,
        on_delta: Callable[[str], None],
        on_attempt: Callable[[], None],
    ) -> GenerationResult:
        result: GenerationResult | None = None
        retrying = AsyncRetrying(
            **credential_failover_kwargs(can_rotate=self._credentials.can_rotate, rotate=self._credentials.rotate)
        )
        async for attempt in retrying:
            with attempt:
                on_attempt()
                credential = self._credentials.active_credential()
                if credential is None:
                    raise CredentialRejectedError("No API key configured")
                result = await self._provider.generate(request, credential.value, on_delta=on_delta)
        assert result is not None
        return result

    def _apply_pending(self, session: Session, plan: _Plan, message_id: str) -> Session:
        if plan.prepare is not None:
            plan.prepare(session)
        if plan.target_message_id is None:
            session.messages.append(
                Message(
                    role=plan.reply_role,
                    content="",
                    id=message_id,
                    character_name=plan.character_name,
                    is_streaming=True,
                )
            )
            return session
        message = session.find_message(message_id)
        if message is None:
            raise MessageNotFoundError(session.id, message_id)
        message.replace_content(plan.prefix or "")
        message.generation_seconds = None
        message.is_streaming = True
        return session

    def _set_streamed_text(self, session: Session, message_id: str, text: str) -> Session | None:
        message = session.find_message(message_id)
        if message is None:
            return None
        message.replace_content(text)
        return session

    def _compose(self, plan: _Plan, text: str) -> str:
        if plan.prefix is None:
            return text
        return plan.prefix + text

    def _finish_completed(
        self,
        snapshot: Session,
        plan: _Plan,
        message_id: str,
        result: GenerationResult,
        duration: float,
    ) -> GenerationOutcome:
        text = self._compose(plan, result.text)
        finalized: list[Message] = []

        def apply(session: Session) -> Session | None:
            message = session.find_message(message_id)
            if message is None:
                return None
            message.replace_content(text)
            message.is_streaming = False
            message.generation_seconds = round(duration, 3)
            finalized.append(message)
            return session

        self._update(snapshot.id, apply)
        if plan.removed_ids:
            self._sessions.drop_generation_times(plan.removed_ids)
        if not finalized:
            logger.warning(f"Generated message {message_id} vanished before it could be finalized")
            return GenerationOutcome(status="cancelled", message_id=message_id, text=text)

        self._sessions.set_generation_time(message_id, duration)
        logger.info(
            f"Generation finished for session {snapshot.id}: message={message_id}, "
            f"chars={len(text)}, duration={duration:.2f}s"
        )
        self._notifier.notify(finalized[0])
        return GenerationOutcome(status="completed", message_id=message_id, text=text, duration_seconds=duration)

    def _finish_cancelled(self, snapshot: Session, plan: _Plan, message_id: str, partial: str) -> GenerationOutcome:
        if not partial:
            if plan.restore_on_empty_cancel:
                self._roll_back(snapshot, plan, message_id)
            else:
                self._update(snapshot.id, lambda s: self._drop_message(s, message_id))
            logger.info(f"Generation cancelled before any output (session={snapshot.id})")
            return GenerationOutcome(status="cancelled")

        text = self._compose(plan, partial)

        def apply(session: Session) -> Session | None:
            message = session.find_message(message_id)
            if message is None:
                return None
            message.replace_content(text)
            message.is_streaming = False
            return session

        self._update(snapshot.id, apply)
        if plan.removed_ids:
            self._sessions.drop_generation_times(plan.removed_ids)
        logger.info(f"Generation cancelled; kept {len(partial)} streamed chars in {message_id}")
        return GenerationOutcome(status="cancelled", message_id=message_id, text=text)

    def _finish_failed(
        self,
        snapshot: Session,
        plan: _Plan,
        message_id: str,
        error: GenerationError,
    ) -> GenerationOutcome:
        self._roll_back(snapshot, plan, message_id)
        logger.error(f"Generation failed for session {snapshot.id}: {error.kind}: {error.message}")
        self._toasts.show(error.user_message, "error")
        return GenerationOutcome(status="failed", error=error)

    def _roll_back(self, snapshot: Session, plan: _Plan, message_id: str) -> None:
        """Undo this generation's own transcript changes.

        Messages are matched by id, so edits made to other messages while the
        request was in flight survive. Request logs written meanwhile stay.
        """
        originals = {m.id: m for m in snapshot.messages}

        def apply(session: Session) -> Session:
            index = session.index_of(message_id)
            if plan.target_message_id is not None:
                if index >= 0 and message_id in originals:
                    session.messages[index] = originals[message_id]
            else:
                if index >= 0:
                    del session.messages[index]
                else:
                    index = len(session.messages)
                restored = [originals[i] for i in plan.removed_ids if i in originals and session.index_of(i) < 0]
                session.messages[index:index] = restored
                if plan.added_ids:
                    session.messages = [m for m in session.messages if m.id not in plan.added_ids]
            if plan.title is not None and session.title == plan.title:
                session.title = snapshot.title
            return session

        self._update(snapshot.id, apply)

    def _update(self, session_id: str, updater: Callable[[Session], Session | None], *, persist: bool = True) -> None:
        # The session may be deleted while its generation is still settling.
        if self._sessions.get(session_id) is None:
            logger.debug(f"Session {session_id} is gone; dropping generation update")
            return
        self._sessions.update_session(session_id, updater, persist=persist)

    def _drop_message(self, session: Session, message_id: str) -> Session | None:
        remaining = [m for m in session.messages if m.id != message_id]
        if len(remaining) == len(session.messages):
            return None
        session.messages = remaining
        return session

    def _log_request(self, session_id: str, plan: _Plan) -> None:
        credential = self._credentials.active_credential()
        payload = describe_request(plan.request)
        payload["api_key_used"] = mask_secret(credential.value) if credential else ""
        self._request_log.log(
            session_id,
            RequestType.SESSION_CREATE,
            {k: payload[k] for k in ("model", "config", "history", "api_key_used")},
            character_name=plan.character_name,
        )
        self._request_log.log(
            session_id,
            plan.request_type,
            {k: payload[k] for k in ("prompt", "attachments", "prefix")},
            character_name=plan.character_name,
        )
        for attachment in plan.request.attachments:
            entry = {"name": attachment.name, "mime_type": attachment.mime_type, "size": attachment.size}
            # Files the provider already holds are referenced by URI, inline data is uploaded.
            if attachment.file_uri:
                request_type = RequestType.ATTACHMENT_FETCH
                entry["file_uri"] = attachment.file_uri
            else:
                request_type = RequestType.ATTACHMENT_UPLOAD
            self._request_log.log(session_id, request_type, entry, character_name=plan.character_name)

    def _request(
        self,
        session: Session,
        system_instruction: str,
        history: list[HistoryEntry],
        *,
        prompt: str = "",
        attachments: list[Attachment] | None = None,
    ) -> GenerationRequest:
        settings = session.settings
        return GenerationRequest(
            model=settings.model,
            system_instruction=system_instruction,
            history=history,
            prompt=prompt,
            attachments=list(attachments or []),
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            top_p=settings.top_p,
            top_k=settings.top_k,
        )

    def _history_for(
        self,
        session: Session,
        messages: list[Message],
        character: Character | None,
    ) -> tuple[list[HistoryEntry], str]:
        settings = session.settings
        if character is None:
            return build_history(messages, settings), settings.system_instruction
        instruction = character.system_instruction or settings.system_instruction
        return build_character_history(messages, character, settings), instruction

    def _resolve_character(self, session: Session, character_id: str | None) -> Character | None:
        if character_id is None:
            return None
        character = session.find_character(character_id)
        if character is None:
            raise ValueError(f"Character not found: {character_id}")
        return character

    def _character_named(self, session: Session, name: str | None) -> Character | None:
        if not session.is_character_mode or not name:
            return None
        return next((c for c in session.characters if c.name == name), None)
