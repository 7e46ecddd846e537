from __future__ import annotations

import asyncio
from collections.abc import Awaitable

from loguru import logger

from persona_chat.audio_cache import AudioCacheLifecycle
from persona_chat.auto_converse import AutoConverseLoop
from persona_chat.characters import CharacterRoster
from persona_chat.client_config import ChatClientConfig
from persona_chat.commands.auto_command import parse_auto_start_options, parse_command, split_pipe
from persona_chat.commands.router import CommandRouter
from persona_chat.edit_resolution import EditAction, EditResolutionEngine
from persona_chat.errors import ChatError
from persona_chat.generation_engine import GenerationEngine, GenerationOutcome
from persona_chat.generation_status import GenerationState, GenerationStatus
from persona_chat.memory.models import Message, MessageRole, Session
from persona_chat.memory.request_log import RequestLogger
from persona_chat.notifications import NewMessageNotifier
from persona_chat.selection import SelectionCoordinator
from persona_chat.services.session_controller import SessionController
from persona_chat.transcript import TranscriptService


class ChatClient:
    _LINE_PREFIX = "assistant> "
    _USER_PROMPT = "you> "

    _EDIT_ACTIONS = {
        "save": EditAction.SAVE_LOCALLY,
        "submit": EditAction.SAVE_AND_SUBMIT,
        "prefix": EditAction.CONTINUE_PREFIX,
        "cancel": EditAction.CANCEL,
    }

    def __init__(self, config: ChatClientConfig):
        self._sessions = config.sessions
        self._credentials = config.credentials
        self._display = config.display
        self._toasts = config.toasts
        self._status = GenerationStatus()
        self._request_log = RequestLogger(self._sessions)
        self._notifier = NewMessageNotifier(self._on_new_message)
        self._streaming_message_id: str | None = None
        self._foreground_tasks: set[asyncio.Task] = set()
        self._generation_started = asyncio.Event()
        self._status.add_listener(self._on_status_changed)

        self._engine = GenerationEngine(
            provider=config.provider,
            sessions=self._sessions,
            credentials=self._credentials,
            status=self._status,
            request_log=self._request_log,
            notifier=self._notifier,
            toasts=self._toasts,
            on_stream=self._on_stream,
        )
        self._edits = EditResolutionEngine(self._sessions, self._engine)
        self._auto = AutoConverseLoop(
            engine=self._engine,
            sessions=self._sessions,
            status=self._status,
            toasts=self._toasts,
            turn_delay_seconds=config.auto_turn_delay_seconds,
            error_retry_delay_seconds=config.auto_error_retry_seconds,
        )
        self._roster = CharacterRoster(self._sessions)
        self._transcript = TranscriptService(self._sessions)
        self._audio = AudioCacheLifecycle(self._sessions)
        self._selection = SelectionCoordinator(self._sessions, self._transcript, self._audio)
        self._session_controller = SessionController(line_prefix=self._LINE_PREFIX)
        self._sessions.on_session_deleted(self._display.reset)

        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_chat=self._handle_chat_command,
            on_continue=self._handle_continue_command,
            on_regen=self._handle_regen_command,
            on_edit=self._handle_edit_command,
            on_delete=self._handle_delete_command,
            on_insert=self._handle_insert_command,
            on_more=self._handle_more_command,
            on_select=self._handle_select_command,
            on_audio=self._handle_audio_command,
            on_auto=self._handle_auto_command,
            on_char=self._handle_char_command,
            on_keys=self._handle_keys_command,
            on_cancel=self._handle_cancel_command,
            on_log=self._handle_log_command,
            on_unknown=self._on_unknown_command,
        )

    @property
    def engine(self) -> GenerationEngine:
        return self._engine

    @property
    def auto(self) -> AutoConverseLoop:
        return self._auto

    @property
    def active_session_id(self) -> str | None:
        return self._sessions.active_session_id

    async def run(self, user_message: str) -> None:
        if await self._command_router.try_handle(user_message):
            return
        session = self._current_session()
        if session.is_character_mode:
            print(f"{self._LINE_PREFIX}Character mode is on: use /char say <name> [message]")
            return
        await self._generate(self._engine.send(session.id, user_message))

    async def submit(self, user_message: str) -> None:
        """Handle a REPL line as a background task.

        Returns when the line is done or once it has started a generation, so
        the caller can keep reading input (``/cancel``, ``/edit cancel``) while
        the reply streams.
        """
        self._generation_started = asyncio.Event()
        task = asyncio.create_task(self.run(user_message))
        self._foreground_tasks.add(task)
        task.add_done_callback(self._on_foreground_done)

        started = asyncio.ensure_future(self._generation_started.wait())
        try:
            await asyncio.wait({task, started}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            started.cancel()

    async def drain(self) -> None:
        if self._foreground_tasks:
            await asyncio.gather(*self._foreground_tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        await self._auto.stop()
        generating = self._status.session_id
        if generating is not None:
            await self._engine.cancel(generating)
        await self.drain()

    def _on_status_changed(self, state: GenerationState) -> None:
        if state is GenerationState.GENERATING:
            self._generation_started.set()

    def _on_foreground_done(self, task: asyncio.Task) -> None:
        self._foreground_tasks.discard(task)
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logger.error(f"Unhandled error: {ex}")

    # Streaming output

    def _on_stream(self, message_id: str, chunk: str) -> None:
        if self._streaming_message_id != message_id:
            self._streaming_message_id = message_id
            print(f"\n{self._LINE_PREFIX}{self._speaker_label(message_id)}: ", end="", flush=True)
        print(chunk, end="", flush=True)

    def _on_new_message(self, message: Message) -> None:
        self._streaming_message_id = None
        if message.generation_seconds is not None:
            print(f"\n{self._LINE_PREFIX}({message.generation_seconds:.1f}s)")

    def _speaker_label(self, message_id: str) -> str:
        session = self._sessions.active_session
        message = session.find_message(message_id) if session else None
        if message is None:
            return "model"
        return message.character_name or message.role.value

    async def _generate(self, pending: Awaitable[GenerationOutcome]) -> GenerationOutcome | None:
        try:
            outcome = await pending
        except ChatError as ex:
            print(f"{self._LINE_PREFIX}{ex.user_message}")
            return None
        finally:
            self._streaming_message_id = None
        if outcome.status == "cancelled":
            kept = " (partial reply kept)" if outcome.message_id else ""
            print(f"\n{self._LINE_PREFIX}Generation cancelled{kept}")
        return outcome

    # Commands

    async def _on_help(self) -> None:
        self._print_help()

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")

    def _print_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /chat | /chat list | /chat new [title] | /chat switch <n-or-id>")
        print(f"{self._LINE_PREFIX}- /chat rename <title> | /chat delete [n-or-id] | /chat duplicate [n-or-id]")
        print(f"{self._LINE_PREFIX}- /continue")
        print(f"{self._LINE_PREFIX}- /regen [message]")
        print(f"{self._LINE_PREFIX}- /edit <message> | /edit save|submit|prefix <text> | /edit cancel")
        print(f"{self._LINE_PREFIX}- /delete <message> | /delete only <message>")
        print(f"{self._LINE_PREFIX}- /insert <message> user|model")
        print(f"{self._LINE_PREFIX}- /more [n] | /all")
        print(f"{self._LINE_PREFIX}- /select | /select <message>... | /select all|clear|delete|audio")
        print(f"{self._LINE_PREFIX}- /audio reset <message>")
        print(f"{self._LINE_PREFIX}- /auto start [--turns <n>] [prompt] | /auto stop | /auto status")
        print(f"{self._LINE_PREFIX}- /char | /char add|edit <name> | <instruction> | /char del|up|down <name>")
        print(f"{self._LINE_PREFIX}- /char info <name> | <text> | /char mode | /char say <name> [message]")
        print(f"{self._LINE_PREFIX}- /keys | /keys add <name> <secret> | /keys del|up|down|top|bottom <n> | /keys rotate")
        print(f"{self._LINE_PREFIX}- /cancel")
        print(f"{self._LINE_PREFIX}- /log | /log on|off | /log clear")
        print(f"{self._LINE_PREFIX}Messages are referenced by their #number or an id prefix; default is the last one.")

    async def _handle_chat_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) == 1:
            session = self._current_session()
            print(
                f"{self._LINE_PREFIX}Current chat: {session.title} "
                f"[{self._session_controller.short_id(session.id)}] (id={session.id})"
            )
            self._print_transcript(session)
            return

        action = parts[1]
        if action == "list":
            sessions = self._sessions.sessions
            if not sessions:
                print(f"{self._LINE_PREFIX}No chats found.")
                return
            print(f"{self._LINE_PREFIX}Chats:")
            for session in sessions:
                print(
                    self._session_controller.format_session_list_entry(
                        session, active_session_id=self._sessions.active_session_id
                    )
                )
            return

        if action == "new":
            title = command.split(maxsplit=2)[2].strip() if len(parts) > 2 else None
            session = self._sessions.create_session(title=title)
            self._display.reset(session.id)
            print(
                f"{self._LINE_PREFIX}Started new chat: {session.title} "
                f"[{self._session_controller.short_id(session.id)}]"
            )
            return

        if action == "duplicate":
            source = self._resolve_session(parts[2]) if len(parts) >= 3 else self._current_session()
            if source is None:
                print(f"{self._LINE_PREFIX}Chat not found: {parts[2]}")
                return
            duplicate = self._sessions.duplicate_session(source.id)
            print(
                f"{self._LINE_PREFIX}Duplicated chat as {duplicate.title} "
                f"[{self._session_controller.short_id(duplicate.id)}]"
            )
            return

        if action == "switch" and len(parts) == 3:
            target = self._resolve_session(parts[2])
            if target is None:
                print(f"{self._LINE_PREFIX}Chat not found: {parts[2]}")
                return
            self._sessions.select_session(target.id)
            print(f"{self._LINE_PREFIX}Switched to {target.title} [{self._session_controller.short_id(target.id)}]")
            self._print_transcript(target)
            return

        if action == "rename" and len(parts) >= 3:
            title = command.split(maxsplit=2)[2]
            self._sessions.rename_session(self._current_session().id, title)
            print(f"{self._LINE_PREFIX}Chat renamed: {title.strip()}")
            return

        if action == "delete":
            target = self._resolve_session(parts[2]) if len(parts) >= 3 else self._sessions.active_session
            if target is None:
                print(f"{self._LINE_PREFIX}Chat not found")
                return
            if self._status.session_id == target.id:
                print(f"{self._LINE_PREFIX}Cannot delete a chat while it is generating")
                return
            self._sessions.delete_session(target.id)
            print(f"{self._LINE_PREFIX}Deleted chat {target.title}")
            return

        print(
            f"{self._LINE_PREFIX}Usage: /chat | /chat list | /chat new [title] | "
            "/chat switch <n-or-id> | /chat rename <title> | /chat delete [n-or-id] | /chat duplicate [n-or-id]"
        )

    async def _handle_continue_command(self, command: str) -> None:
        await self._generate(self._engine.continue_(self._current_session().id))

    async def _handle_regen_command(self, command: str) -> None:
        parts = command.split()
        session = self._current_session()
        message = self._resolve_message(session, parts[1] if len(parts) > 1 else None)
        if message is None:
            print(f"{self._LINE_PREFIX}Usage: /regen [message]")
            return
        await self._generate(self._engine.regenerate(session.id, message.id))

    async def _handle_edit_command(self, command: str) -> None:
        parts = command.split(maxsplit=2)
        if len(parts) == 1:
            print(f"{self._LINE_PREFIX}Usage: /edit <message> | /edit save|submit|prefix <text> | /edit cancel")
            return

        action = self._EDIT_ACTIONS.get(parts[1].lower())
        if action is None:
            session = self._current_session()
            message = self._resolve_message(session, parts[1])
            if message is None:
                print(f"{self._LINE_PREFIX}Message not found: {parts[1]}")
                return
            self._edits.open(session.id, message.id)
            print(f"{self._LINE_PREFIX}Editing #{session.index_of(message.id) + 1} ({message.role.value}):")
            print(message.content)
            print(f"{self._LINE_PREFIX}Finish with /edit save|submit|prefix <text> or /edit cancel")
            return

        text = parts[2] if len(parts) > 2 else ""
        try:
            outcome = await self._edits.resolve(action, text)
        except ChatError as ex:
            print(f"{self._LINE_PREFIX}{ex.user_message}")
            return
        except ValueError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return
        if not outcome.applied:
            print(f"{self._LINE_PREFIX}Edit not applied: {outcome.reason}")
            return
        if outcome.generation is not None and outcome.generation.status == "cancelled":
            print(f"\n{self._LINE_PREFIX}Generation cancelled")
        removed = len(outcome.mutation.removed_ids)
        suffix = f", removed {removed} later message(s)" if removed else ""
        print(f"{self._LINE_PREFIX}Edit {action.value} done{suffix}")

    async def _handle_delete_command(self, command: str) -> None:
        parts = command.split()
        single = len(parts) >= 2 and parts[1] == "only"
        ref = parts[2] if single and len(parts) > 2 else (parts[1] if len(parts) > 1 and not single else None)
        session = self._current_session()
        message = self._resolve_message(session, ref) if ref else None
        if message is None:
            print(f"{self._LINE_PREFIX}Usage: /delete <message> | /delete only <message>")
            return
        if self._status.session_id == session.id:
            print(f"{self._LINE_PREFIX}Cannot delete messages while generating")
            return
        if single:
            result = self._transcript.delete_single_message(session.id, message.id)
        else:
            result = self._transcript.delete_message_and_subsequent(session.id, message.id)
        print(f"{self._LINE_PREFIX}Deleted {len(result.removed_ids)} message(s)")

    async def _handle_insert_command(self, command: str) -> None:
        parts = command.split()
        roles = {"user": MessageRole.USER, "model": MessageRole.MODEL}
        if len(parts) != 3 or parts[2].lower() not in roles:
            print(f"{self._LINE_PREFIX}Usage: /insert <message> user|model")
            return
        session = self._current_session()
        anchor = self._resolve_message(session, parts[1])
        if anchor is None:
            print(f"{self._LINE_PREFIX}Message not found: {parts[1]}")
            return

        inserted = self._transcript.insert_empty_message_after(session.id, anchor.id, roles[parts[2].lower()])
        session = self._current_session()
        self._display.widen(session, 1)
        self._edits.open(session.id, inserted.id)
        self._toasts.show("Empty message inserted.")
        print(f"{self._LINE_PREFIX}Inserted #{session.index_of(inserted.id) + 1} ({inserted.role.value})")
        print(f"{self._LINE_PREFIX}Fill it with /edit save|submit|prefix <text> or /edit cancel")

    async def _handle_more_command(self, command: str) -> None:
        parts = command.split()
        session = self._current_session()
        if parts[0] == "/all":
            self._display.load_all(session)
        else:
            increment: int | None = None
            if len(parts) > 1:
                try:
                    increment = int(parts[1])
                except ValueError:
                    print(f"{self._LINE_PREFIX}Usage: /more [n]")
                    return
            self._display.load_more(session, increment)
        self._print_transcript(session)

    async def _handle_select_command(self, command: str) -> None:
        parts = command.split()
        session = self._current_session()
        if len(parts) == 1:
            enabled = self._selection.toggle_selection_mode()
            print(f"{self._LINE_PREFIX}Selection mode {'on' if enabled else 'off'}")
            return

        action = parts[1]
        if action == "all":
            self._selection.select_all_visible(m.id for m in self._display.visible_slice(session))
        elif action == "clear":
            self._selection.clear()
        elif action == "delete":
            if self._status.session_id == session.id:
                print(f"{self._LINE_PREFIX}Cannot delete messages while generating")
                return
            result = self._selection.bulk_delete()
            print(f"{self._LINE_PREFIX}Deleted {len(result.removed_ids)} message(s)")
            return
        elif action == "audio":
            result = self._selection.bulk_reset_audio()
            print(f"{self._LINE_PREFIX}Cleared audio for {len(result.audio_invalidated_ids)} message(s)")
            return
        else:
            for ref in parts[1:]:
                message = self._resolve_message(session, ref)
                if message is None:
                    print(f"{self._LINE_PREFIX}Message not found: {ref}")
                    continue
                self._selection.toggle(message.id)
        print(f"{self._LINE_PREFIX}{len(self._selection.selected_ids)} message(s) selected")

    async def _handle_audio_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) != 3 or parts[1] != "reset":
            print(f"{self._LINE_PREFIX}Usage: /audio reset <message>")
            return
        session = self._current_session()
        message = self._resolve_message(session, parts[2])
        if message is None:
            print(f"{self._LINE_PREFIX}Message not found: {parts[2]}")
            return
        result = self._audio.reset_audio_cache(session.id, message.id)
        state = "cleared" if result.audio_invalidated_ids else "was not cached"
        print(f"{self._LINE_PREFIX}Audio {state}")

    async def _handle_auto_command(self, command: str) -> None:
        try:
            parts = parse_command(command)
        except ValueError:
            print(f"{self._LINE_PREFIX}Invalid command syntax")
            return
        action = parts[1].lower() if len(parts) > 1 else ""

        if action == "start":
            opts, error = parse_auto_start_options(parts, line_prefix=self._LINE_PREFIX)
            if error:
                print(error)
                return
            assert opts is not None
            session = self._current_session()
            if await self._auto.start(session.id, opts.prompt, opts.max_turns):
                turns = opts.max_turns if opts.max_turns is not None else "unlimited"
                print(f"{self._LINE_PREFIX}Auto-converse started ({turns} turns); /auto stop to end")
            return

        if action == "stop":
            stopped = await self._auto.stop()
            print(f"{self._LINE_PREFIX}{'Auto-converse stopped' if stopped else 'Auto-converse is not running'}")
            return

        if action == "status":
            if self._auto.is_running:
                print(
                    f"{self._LINE_PREFIX}Auto-converse running in "
                    f"[{self._session_controller.short_id(self._auto.session_id or '')}] "
                    f"({self._auto.turns_completed} turn(s) done, status={self._status.state.value})"
                )
            else:
                print(f"{self._LINE_PREFIX}Auto-converse is not running")
            return

        print(f"{self._LINE_PREFIX}Usage: /auto start [--turns <n>] [prompt] | /auto stop | /auto status")

    async def _handle_char_command(self, command: str) -> None:
        session = self._current_session()
        parts = command.split(maxsplit=2)
        if len(parts) == 1:
            for line in self._session_controller.format_character_lines(
                session.characters, character_mode=session.is_character_mode
            ):
                print(line)
            return

        action = parts[1].lower()
        rest = parts[2] if len(parts) > 2 else ""

        if action == "mode":
            enabled = self._roster.toggle_character_mode(session.id)
            print(f"{self._LINE_PREFIX}Character mode {'on' if enabled else 'off'}")
            return

        if action in ("add", "edit", "info"):
            name, text = split_pipe(rest)
            if not name:
                print(f"{self._LINE_PREFIX}Usage: /char {action} <name> | <text>")
                return
            try:
                if action == "add":
                    self._roster.add(session.id, name, text)
                    print(f"{self._LINE_PREFIX}Added character {name}")
                    return
                character = self._roster.find_by_name(session.id, name)
                if character is None:
                    print(f"{self._LINE_PREFIX}Character not found: {name}")
                    return
                if action == "edit":
                    self._roster.edit(session.id, character.id, system_instruction=text)
                else:
                    self._roster.save_contextual_info(session.id, character.id, text)
            except ValueError as ex:
                print(f"{self._LINE_PREFIX}{ex}")
                return
            print(f"{self._LINE_PREFIX}Updated character {character.name}")
            return

        if action in ("del", "up", "down", "say"):
            name, _, message = rest.partition(" ") if action == "say" else (rest, "", "")
            character = self._roster.find_by_name(session.id, name)
            if character is None:
                print(f"{self._LINE_PREFIX}Character not found: {name}")
                return
            if action == "say":
                await self._generate(self._engine.send(session.id, message.strip(), character_id=character.id))
                return
            if action == "del":
                self._roster.delete(session.id, character.id)
            elif action == "up":
                self._roster.move_up(session.id, character.id)
            else:
                self._roster.move_down(session.id, character.id)
            print(f"{self._LINE_PREFIX}Characters: {', '.join(c.name for c in self._roster.list_characters(session.id))}")
            return

        print(
            f"{self._LINE_PREFIX}Usage: /char | /char add|edit <name> | <instruction> | "
            "/char del|up|down <name> | /char info <name> | <text> | /char mode | /char say <name> [message]"
        )

    async def _handle_keys_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) == 1:
            for line in self._session_controller.format_credential_lines(self._credentials.credentials):
                print(line)
            return

        action = parts[1].lower()
        if action == "add" and len(parts) == 4:
            credential = self._credentials.add(parts[2], parts[3])
            print(f"{self._LINE_PREFIX}Added API key {credential.name} {credential.masked}")
            return

        if action == "rotate":
            active = self._credentials.rotate()
            print(f"{self._LINE_PREFIX}Active API key: {active.name if active else 'none'}")
            return

        moves = {
            "del": self._credentials.delete,
            "up": self._credentials.move_up,
            "down": self._credentials.move_down,
            "top": self._credentials.move_to_top,
            "bottom": self._credentials.move_to_bottom,
        }
        if action in moves and len(parts) == 3:
            credentials = self._credentials.credentials
            try:
                rank = int(parts[2])
            except ValueError:
                rank = 0
            if not 1 <= rank <= len(credentials):
                print(f"{self._LINE_PREFIX}No API key at position {parts[2]}")
                return
            if moves[action](credentials[rank - 1].id):
                for line in self._session_controller.format_credential_lines(self._credentials.credentials):
                    print(line)
            else:
                print(f"{self._LINE_PREFIX}Nothing to do")
            return

        print(
            f"{self._LINE_PREFIX}Usage: /keys | /keys add <name> <secret> | "
            "/keys del|up|down|top|bottom <n> | /keys rotate"
        )

    async def _handle_cancel_command(self, command: str) -> None:
        generating = self._status.session_id
        if generating is None or not await self._engine.cancel(generating):
            print(f"{self._LINE_PREFIX}Nothing to cancel")

    async def _handle_log_command(self, command: str) -> None:
        parts = command.split()
        session = self._current_session()
        if len(parts) == 1:
            if not session.request_logs:
                state = "on" if session.settings.debug_api_requests else "off (/log on)"
                print(f"{self._LINE_PREFIX}No request logs. Logging is {state}")
                return
            for entry in session.request_logs:
                print(self._session_controller.format_request_log_entry(entry))
            return

        action = parts[1].lower()
        if action == "clear":
            count = self._request_log.clear(session.id)
            print(f"{self._LINE_PREFIX}Cleared {count} request log entries")
            return
        if action in ("on", "off"):
            enabled = action == "on"

            def apply(draft: Session) -> Session:
                draft.settings.debug_api_requests = enabled
                return draft

            self._sessions.update_session(session.id, apply)
            print(f"{self._LINE_PREFIX}Request logging {action}")
            return

        print(f"{self._LINE_PREFIX}Usage: /log | /log on|off | /log clear")

    # Helpers

    def _current_session(self) -> Session:
        session = self._sessions.active_session
        if session is None:
            session = self._sessions.create_session()
            logger.info(f"No active chat; created {session.id}")
        return session

    def _print_transcript(self, session: Session) -> None:
        session = self._sessions.get(session.id) or session
        for line in self._session_controller.format_transcript_lines(
            session,
            self._display.visible_slice(session),
            generation_times=self._sessions.generation_times,
            selected_ids=self._selection.selected_ids,
        ):
            print(line)

    def _resolve_session(self, ref: str) -> Session | None:
        sessions = self._sessions.sessions
        if ref.isdigit():
            number = int(ref)
            return sessions[number - 1] if 1 <= number <= len(sessions) else None
        matches = [s for s in sessions if s.id.startswith(ref)]
        return matches[0] if len(matches) == 1 else None

    def _resolve_message(self, session: Session, ref: str | None) -> Message | None:
        if not session.messages:
            return None
        if ref is None or ref == "last":
            return session.messages[-1]
        number = ref.lstrip("#")
        if number.isdigit():
            index = int(number) - 1
            return session.messages[index] if 0 <= index < len(session.messages) else None
        matches = [m for m in session.messages if m.id.startswith(ref)]
        return matches[0] if len(matches) == 1 else None
