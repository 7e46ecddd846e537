from __future__ import annotations

from collections.abc import Awaitable, Callable

Handler = Callable[[str], Awaitable[None]]


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_chat: Handler,
        on_continue: Handler,
        on_regen: Handler,
        on_edit: Handler,
        on_delete: Handler,
        on_insert: Handler,
        on_more: Handler,
        on_select: Handler,
        on_audio: Handler,
        on_auto: Handler,
        on_char: Handler,
        on_keys: Handler,
        on_cancel: Handler,
        on_log: Handler,
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_unknown = on_unknown
        # Matched on the first token so "/chat" never captures "/character".
        self._handlers: dict[str, Handler] = {
            "/chat": on_chat,
            "/continue": on_continue,
            "/regen": on_regen,
            "/edit": on_edit,
            "/delete": on_delete,
            "/insert": on_insert,
            "/more": on_more,
            "/all": on_more,
            "/select": on_select,
            "/audio": on_audio,
            "/auto": on_auto,
            "/char": on_char,
            "/keys": on_keys,
            "/cancel": on_cancel,
            "/log": on_log,
        }

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True

        name = trimmed.split(maxsplit=1)[0].lower()
        handler = self._handlers.get(name)
        if handler is not None:
            await handler(trimmed)
            return True

        self._on_unknown(trimmed)
        return True
