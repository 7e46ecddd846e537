from __future__ import annotations

from persona_chat.memory.models import Character, Credential, Message, MessageRole, RequestLogEntry, Session


class SessionController:
    """Text rendering for sessions, messages and logs in the REPL."""

    _ROLE_LABELS = {
        MessageRole.USER: "you",
        MessageRole.MODEL: "model",
        MessageRole.ERROR: "error",
    }

    def __init__(self, *, line_prefix: str, short_id_len: int = 8, preview_chars: int = 200):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len
        self._preview_chars = preview_chars

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def format_session_list_entry(self, session: Session, *, active_session_id: str | None) -> str:
        marker = "*" if session.id == active_session_id else " "
        mode = ", characters" if session.is_character_mode else ""
        return (
            f"{self._line_prefix}{marker} {session.title} [{self.short_id(session.id)}] "
            f"(messages={len(session.messages)}{mode}, updated={session.updated_at})"
        )

    def format_message_line(
        self,
        number: int,
        message: Message,
        *,
        generation_seconds: float | None = None,
        selected: bool = False,
    ) -> str:
        label = message.character_name or self._ROLE_LABELS.get(message.role, message.role.value)
        content = " ".join(message.content.split())
        if len(content) > self._preview_chars:
            content = content[: self._preview_chars] + "..."
        extras: list[str] = []
        if message.attachments:
            extras.append(f"{len(message.attachments)} attachment(s)")
        if generation_seconds is not None:
            extras.append(f"{generation_seconds:.1f}s")
        if message.cached_audio:
            extras.append("audio")
        if message.is_streaming:
            extras.append("streaming")
        suffix = f" ({', '.join(extras)})" if extras else ""
        check = "[x] " if selected else ""
        return f"{self._line_prefix}{check}#{number} {label}: {content}{suffix}"

    def format_transcript_lines(
        self,
        session: Session,
        visible: list[Message],
        *,
        generation_times: dict[str, float],
        selected_ids: frozenset[str] = frozenset(),
    ) -> list[str]:
        hidden = len(session.messages) - len(visible)
        lines: list[str] = []
        if hidden > 0:
            lines.append(f"{self._line_prefix}... {hidden} earlier message(s) hidden (/more, /all)")
        for offset, message in enumerate(visible):
            lines.append(
                self.format_message_line(
                    hidden + offset + 1,
                    message,
                    generation_seconds=generation_times.get(message.id),
                    selected=message.id in selected_ids,
                )
            )
        if not session.messages:
            lines.append(f"{self._line_prefix}(no messages yet)")
        return lines

    def format_character_lines(self, characters: list[Character], *, character_mode: bool) -> list[str]:
        state = "on" if character_mode else "off"
        lines = [f"{self._line_prefix}Character mode: {state}"]
        if not characters:
            lines.append(f"{self._line_prefix}No characters defined.")
            return lines
        for rank, character in enumerate(characters, start=1):
            info = " (has contextual info)" if character.contextual_info.strip() else ""
            lines.append(f"{self._line_prefix}{rank}. {character.name}{info}")
        return lines

    def format_credential_lines(self, credentials: list[Credential]) -> list[str]:
        if not credentials:
            return [f"{self._line_prefix}No API keys configured."]
        lines = []
        for rank, credential in enumerate(credentials, start=1):
            active = " (active)" if rank == 1 else ""
            lines.append(f"{self._line_prefix}{rank}. {credential.name} {credential.masked}{active}")
        return lines

    def format_request_log_entry(self, entry: RequestLogEntry) -> str:
        who = f" [{entry.character_name}]" if entry.character_name else ""
        keys = ", ".join(sorted(entry.payload)) or "-"
        return f"{self._line_prefix}{entry.timestamp} {entry.request_type.value}{who} ({keys})"
