from __future__ import annotations


class ChatError(Exception):
    """Base class for failures surfaced by the conversation core."""

    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    @property
    def user_message(self) -> str:
        return self.message


class BusyError(ChatError):
    kind = "busy"

    def __init__(self, session_id: str | None = None):
        detail = f" (session={session_id})" if session_id else ""
        super().__init__(f"A generation is already in progress{detail}")
        self.session_id = session_id


class SessionNotFoundError(ChatError):
    kind = "not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class MessageNotFoundError(ChatError):
    kind = "not_found"

    def __init__(self, session_id: str, message_id: str):
        super().__init__(f"Message {message_id} not found in session {session_id}")
        self.session_id = session_id
        self.message_id = message_id


class GenerationError(ChatError):
    """A failed request against the generation API."""

    retryable = False


class TransientError(GenerationError):
    kind = "transient"
    retryable = True


class CredentialRejectedError(GenerationError):
    kind = "credential_rejected"


class QuotaExceededError(GenerationError):
    kind = "quota"

    @property
    def user_message(self) -> str:
        return f"API quota exceeded or rate limit hit: {self.message}"


class MalformedResponseError(GenerationError):
    kind = "malformed"


def classify_status_error(status_code: int | None, message: str) -> GenerationError:
    """Map an HTTP status plus provider message onto the error taxonomy."""
    lowered = message.lower()
    if status_code == 429 or "quota" in lowered:
        return QuotaExceededError(message)
    if status_code in (401, 403) or "api key" in lowered:
        return CredentialRejectedError(message)
    if status_code is not None and 400 <= status_code < 500 and status_code not in (408, 409):
        return MalformedResponseError(message)
    return TransientError(message)
