from dataclasses import dataclass

from persona_chat.credentials import CredentialRotator
from persona_chat.display_window import DisplayWindowManager
from persona_chat.memory.session_store import SessionStore
from persona_chat.notifications import ToastChannel
from persona_chat.provider import GenerationProvider


@dataclass
class ChatClientConfig:
    provider: GenerationProvider
    sessions: SessionStore
    credentials: CredentialRotator
    display: DisplayWindowManager
    toasts: ToastChannel
    auto_turn_delay_seconds: float = 1.0
    auto_error_retry_seconds: float = 30.0
