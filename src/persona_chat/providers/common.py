from __future__ import annotations

from collections.abc import Callable

from loguru import logger
from tenacity import RetryCallState, retry_if_exception_type, wait_none

from persona_chat.errors import CredentialRejectedError
from persona_chat.memory.models import Attachment
from persona_chat.provider import GenerationRequest

CONTINUE_NUDGE = "Continue."
PREFIX_CONTINUE_INSTRUCTION = (
    "Continue your previous message exactly from where it stopped. "
    "Do not repeat any of it and do not add commentary."
)


def build_turns(request: GenerationRequest) -> list[dict]:
    """Flatten history plus prompt into alternating user/model turns.

    Each turn is ``{"role", "text", "attachments"}``. Consecutive turns with the
    same role are merged and the list starts and ends with a user turn. A
    prefix, when present, is appended by the provider after these turns.
    """
    turns: list[dict] = []

    def push(role: str, text: str, attachments: list[Attachment]) -> None:
        if not text.strip() and not attachments:
            return
        if turns and turns[-1]["role"] == role:
            previous = turns[-1]
            previous["text"] = "\n\n".join(t for t in (previous["text"], text) if t)
            previous["attachments"] = previous["attachments"] + list(attachments)
            return
        turns.append({"role": role, "text": text, "attachments": list(attachments)})

    for entry in request.history:
        push(entry.role, entry.text, entry.attachments)
    push("user", request.prompt, request.attachments)

    if not turns or turns[0]["role"] != "user":
        turns.insert(0, {"role": "user", "text": CONTINUE_NUDGE, "attachments": []})
    if turns[-1]["role"] != "user":
        turns.append({"role": "user", "text": CONTINUE_NUDGE, "attachments": []})
    return turns


def describe_request(request: GenerationRequest) -> dict:
    """A loggable summary of a request, without attachment payloads."""
    return {
        "model": request.model,
        "config": {
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "top_k": request.top_k,
            "system_instruction": request.system_instruction,
        },
        "history": [
            {"role": e.role, "text": e.text, "attachments": [a.name for a in e.attachments]}
            for e in request.history
        ],
        "prompt": request.prompt,
        "attachments": [a.name for a in request.attachments],
        "prefix": request.prefix,
    }


def _log_failover(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying with next API key (attempt {retry_state.attempt_number}/2)...")


def credential_failover_kwargs(
    *,
    can_rotate: Callable[[], bool],
    rotate: Callable[[], object],
) -> dict:
    """tenacity settings: on a rejected key, rotate once and retry with the new one."""

    def stop(retry_state: RetryCallState) -> bool:
        return retry_state.attempt_number >= 2 or not can_rotate()

    def before_sleep(retry_state: RetryCallState) -> None:
        _log_failover(retry_state)
        rotate()

    return {
        "retry": retry_if_exception_type(CredentialRejectedError),
        "wait": wait_none(),
        "stop": stop,
        "before_sleep": before_sleep,
        "reraise": True,
    }
