from __future__ import annotations

from persona_chat.memory.models import ChatSettings, Character, Message, MessageRole
from persona_chat.provider import HistoryEntry


def _eligible(messages: list[Message], settings: ChatSettings) -> list[Message]:
    eligible = [
        m for m in messages
        if m.role in (MessageRole.USER, MessageRole.MODEL) and not m.is_streaming
    ]
    limit = settings.context_window_messages
    if limit is not None and limit > 0 and len(eligible) > limit:
        eligible = eligible[-limit:]
    return eligible


def _stamp(label: str, message: Message, settings: ChatSettings, text: str) -> str:
    if not settings.ai_sees_timestamps:
        return text
    return f"[{label} at {message.timestamp}] {text}"


def build_history(messages: list[Message], settings: ChatSettings) -> list[HistoryEntry]:
    """Plain history: user turns stay user, generated turns become model."""
    history: list[HistoryEntry] = []
    for message in _eligible(messages, settings):
        role = "user" if message.role is MessageRole.USER else "model"
        label = "USER" if role == "user" else "AI"
        history.append(HistoryEntry(role, _stamp(label, message, settings, message.content), list(message.attachments)))
    return history


def build_character_history(
    messages: list[Message],
    character: Character,
    settings: ChatSettings,
) -> list[HistoryEntry]:
    """History seen by one character.

    Only the character's own lines are model turns. Everyone else, including
    other characters, speaks as the user, with other characters' lines
    prefixed by their upper-cased name.
    """
    history: list[HistoryEntry] = []
    for message in _eligible(messages, settings):
        own = message.role is MessageRole.MODEL and message.character_name == character.name
        if own:
            text = _stamp("SELF", message, settings, message.content)
            history.append(HistoryEntry("model", text, list(message.attachments)))
            continue
        text = _stamp(message.character_name or "USER", message, settings, message.content)
        if message.role is MessageRole.MODEL and message.character_name:
            text = f"{message.character_name.upper()}: {text}"
        history.append(HistoryEntry("user", text, list(message.attachments)))
    return history


def build_mimic_history(messages: list[Message], settings: ChatSettings) -> list[HistoryEntry]:
    """Roles swapped, so the model writes the next human turn."""
    history: list[HistoryEntry] = []
    for entry in build_history(messages, settings):
        flipped = "model" if entry.role == "user" else "user"
        history.append(HistoryEntry(flipped, entry.text, entry.attachments))
    return history
