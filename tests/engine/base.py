import asyncio
from collections.abc import Callable

from persona_chat.credentials import CredentialRotator
from persona_chat.generation_engine import GenerationEngine
from persona_chat.generation_status import GenerationStatus
from persona_chat.memory.models import ChatSettings, Credential, Message, MessageRole, Session
from persona_chat.memory.request_log import RequestLogger
from persona_chat.memory.session_store import SessionStore
from persona_chat.notifications import LoggingToastChannel, NewMessageNotifier
from persona_chat.provider import GenerationRequest, GenerationResult


class FakeProvider:
    """Plays back one scripted reply per call.

    A reply is a string, a list of streamed chunks, or an exception to raise.
    An exception inside a chunk list is raised when the stream reaches it.
    With ``hold_after`` set, the stream pauses after that many chunks until
    ``release`` is set, and ``streamed`` signals that the pause was reached.
    """

    def __init__(self, *replies: object, hold_after: int | None = None):
        self.replies = list(replies)
        self.calls: list[tuple[GenerationRequest, str]] = []
        self.hold_after = hold_after
        self.streamed = asyncio.Event()
        self.release = asyncio.Event()

    @property
    def requests(self) -> list[GenerationRequest]:
        return [request for request, _ in self.calls]

    @property
    def api_keys(self) -> list[str]:
        return [key for _, key in self.calls]

    async def generate(
        self,
        request: GenerationRequest,
        api_key: str,
        *,
        on_delta: Callable[[str], None] | None = None,
    ) -> GenerationResult:
        self.calls.append((request, api_key))
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, BaseException):
            raise reply
        chunks = reply if isinstance(reply, list) else [reply]
        for index, chunk in enumerate(chunks):
            if index == self.hold_after:
                await self._hold()
            if isinstance(chunk, BaseException):
                raise chunk
            if on_delta is not None:
                on_delta(chunk)
            await asyncio.sleep(0)
        if self.hold_after is not None and self.hold_after >= len(chunks):
            await self._hold()
        return GenerationResult(text="".join(chunks), stop_reason="end_turn")

    async def _hold(self) -> None:
        self.streamed.set()
        await self.release.wait()
        self.streamed.clear()
        self.release.clear()


class EngineHarness:
    def __init__(self, provider: FakeProvider, *, keys: tuple[str, ...] = ("A",), debug: bool = False):
        self.provider = provider
        self.store = SessionStore(default_settings=ChatSettings(debug_api_requests=debug))
        self.session_id = self.store.create_session().id
        self.credentials = CredentialRotator([Credential(name=k, value=f"sk-{k.lower()}-1234") for k in keys])
        self.status = GenerationStatus()
        self.toasts = LoggingToastChannel()
        self.notified: list[Message] = []
        self.request_log = RequestLogger(self.store)
        self.engine = GenerationEngine(
            provider=provider,
            sessions=self.store,
            credentials=self.credentials,
            status=self.status,
            request_log=self.request_log,
            notifier=NewMessageNotifier(self.notified.append),
            toasts=self.toasts,
        )

    @property
    def session(self) -> Session:
        return self.store.require(self.session_id)

    @property
    def messages(self) -> list[Message]:
        return self.session.messages

    def contents(self) -> list[tuple[str, str]]:
        return [(m.role.value, m.content) for m in self.messages]

    def seed(self, *contents: str, character_names: dict[int, str] | None = None) -> list[str]:
        """Append alternating user/model messages and return their ids."""
        names = character_names or {}
        messages = [
            Message(
                role=MessageRole.USER if i % 2 == 0 else MessageRole.MODEL,
                content=content,
                character_name=names.get(i),
            )
            for i, content in enumerate(contents)
        ]

        def apply(draft: Session) -> Session:
            draft.messages.extend(messages)
            return draft

        self.store.update_session(self.session_id, apply)
        return [m.id for m in messages]

    def update(self, apply: Callable[[Session], None]) -> None:
        def wrapper(draft: Session) -> Session:
            apply(draft)
            return draft

        self.store.update_session(self.session_id, wrapper)
