from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

DEFAULT_MODEL_ID = "claude-sonnet-4-5-20250929"
DEFAULT_SESSION_TITLE = "New Chat"
DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful AI assistant."
DEFAULT_USER_PERSONA_INSTRUCTION = (
    "You are now acting as the human user. Read the conversation so far and write the "
    "next message the user would plausibly send. Keep it in the user's voice and reply "
    "with that message only."
)
INITIAL_MESSAGES_COUNT = 10
LOAD_MORE_MESSAGES_COUNT = 50
TITLE_PREVIEW_CHARS = 35


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def new_id() -> str:
    return str(uuid4())


class MessageRole(str, Enum):
    USER = "user"
    MODEL = "model"
    ERROR = "error"

    @property
    def is_generated(self) -> bool:
        return self is not MessageRole.USER


class RequestType(str, Enum):
    SESSION_CREATE = "session-create"
    MESSAGE_SEND = "message-send"
    ATTACHMENT_UPLOAD = "attachment-upload"
    ATTACHMENT_FETCH = "attachment-fetch"
    OTHER = "other"


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Attachment:
    name: str
    mime_type: str
    kind: str = "file"
    base64_data: str | None = None
    file_uri: str | None = None
    size: int = 0
    id: str = field(default_factory=new_id)

    @property
    def is_image(self) -> bool:
        return self.kind == "image" or self.mime_type.startswith("image/")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(**_known_fields(cls, data))


@dataclass
class Message:
    role: MessageRole
    content: str
    id: str = field(default_factory=new_id)
    timestamp: str = field(default_factory=utc_now)
    attachments: list[Attachment] = field(default_factory=list)
    character_name: str | None = None
    cached_audio: str | None = None
    generation_seconds: float | None = None
    is_streaming: bool = False

    @property
    def is_generated(self) -> bool:
        return self.role.is_generated

    def replace_content(self, content: str) -> bool:
        """Set new content and drop cached audio. Returns True when audio was invalidated."""
        self.content = content
        had_audio = self.cached_audio is not None
        self.cached_audio = None
        return had_audio

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        values = _known_fields(cls, data)
        values["role"] = MessageRole(values.get("role", MessageRole.USER.value))
        values["attachments"] = [Attachment.from_dict(a) for a in values.get("attachments") or []]
        return cls(**values)


@dataclass
class Character:
    name: str
    system_instruction: str
    contextual_info: str = ""
    id: str = field(default_factory=new_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Character:
        return cls(**_known_fields(cls, data))


@dataclass
class RequestLogEntry:
    request_type: RequestType
    payload: dict[str, Any]
    id: str = field(default_factory=new_id)
    timestamp: str = field(default_factory=utc_now)
    api_session_id: str | None = None
    character_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["request_type"] = self.request_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestLogEntry:
        values = _known_fields(cls, data)
        values["request_type"] = RequestType(values.get("request_type", RequestType.OTHER.value))
        return cls(**values)


@dataclass
class ChatSettings:
    model: str = DEFAULT_MODEL_ID
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int | None = 64
    max_tokens: int = 8192
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    user_persona_instruction: str = DEFAULT_USER_PERSONA_INSTRUCTION
    context_window_messages: int | None = None
    ai_sees_timestamps: bool = False
    max_initial_messages_displayed: int = INITIAL_MESSAGES_COUNT
    debug_api_requests: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatSettings:
        return cls(**_known_fields(cls, data))


@dataclass
class Session:
    settings: ChatSettings = field(default_factory=ChatSettings)
    title: str = DEFAULT_SESSION_TITLE
    id: str = field(default_factory=new_id)
    messages: list[Message] = field(default_factory=list)
    characters: list[Character] = field(default_factory=list)
    request_logs: list[RequestLogEntry] = field(default_factory=list)
    is_character_mode: bool = False
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return -1

    def find_message(self, message_id: str) -> Message | None:
        index = self.index_of(message_id)
        return self.messages[index] if index >= 0 else None

    def find_character(self, character_id: str) -> Character | None:
        return next((c for c in self.characters if c.id == character_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "settings": asdict(self.settings),
            "messages": [m.to_dict() for m in self.messages],
            "characters": [asdict(c) for c in self.characters],
            "request_logs": [e.to_dict() for e in self.request_logs],
            "is_character_mode": self.is_character_mode,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            title=data.get("title", DEFAULT_SESSION_TITLE),
            settings=ChatSettings.from_dict(data.get("settings") or {}),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            characters=[Character.from_dict(c) for c in data.get("characters") or []],
            request_logs=[RequestLogEntry.from_dict(e) for e in data.get("request_logs") or []],
            is_character_mode=bool(data.get("is_character_mode", False)),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


@dataclass
class Credential:
    name: str
    value: str
    id: str = field(default_factory=new_id)

    @property
    def masked(self) -> str:
        return f"...{self.value[-4:]}" if self.value else ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class MutationResult:
    """What a transcript mutation changed."""

    removed_ids: tuple[str, ...] = ()
    audio_invalidated_ids: tuple[str, ...] = ()
    changed: bool = True

    @classmethod
    def unchanged(cls) -> MutationResult:
        return cls(changed=False)

    def merge(self, other: MutationResult) -> MutationResult:
        return MutationResult(
            removed_ids=self.removed_ids + other.removed_ids,
            audio_invalidated_ids=self.audio_invalidated_ids + other.audio_invalidated_ids,
            changed=self.changed or other.changed,
        )
