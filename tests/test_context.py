import unittest

from persona_chat.context import build_character_history, build_history, build_mimic_history
from persona_chat.memory.models import ChatSettings, Character, Message, MessageRole


def _messages() -> list[Message]:
    return [
        Message(role=MessageRole.USER, content="hello", timestamp="2026-01-01T00:00:00+00:00"),
        Message(role=MessageRole.MODEL, content="hi from alice", character_name="Alice"),
        Message(role=MessageRole.ERROR, content="boom"),
        Message(role=MessageRole.MODEL, content="hi from bob", character_name="Bob"),
        Message(role=MessageRole.MODEL, content="", is_streaming=True),
    ]


class ContextBuilderTests(unittest.TestCase):
    def test_plain_history_skips_errors_and_streaming(self) -> None:
        history = build_history(_messages(), ChatSettings())
        self.assertEqual(
            [("user", "hello"), ("model", "hi from alice"), ("model", "hi from bob")],
            [(h.role, h.text) for h in history],
        )

    def test_context_window_keeps_trailing_messages(self) -> None:
        history = build_history(_messages(), ChatSettings(context_window_messages=2))
        self.assertEqual(["hi from alice", "hi from bob"], [h.text for h in history])

    def test_timestamps_are_prefixed_when_enabled(self) -> None:
        history = build_history(_messages()[:1], ChatSettings(ai_sees_timestamps=True))
        self.assertEqual("[USER at 2026-01-01T00:00:00+00:00] hello", history[0].text)

    def test_character_history_is_from_the_characters_point_of_view(self) -> None:
        bob = Character(name="Bob", system_instruction="You are Bob.")
        history = build_character_history(_messages(), bob, ChatSettings())
        self.assertEqual(
            [("user", "hello"), ("user", "ALICE: hi from alice"), ("model", "hi from bob")],
            [(h.role, h.text) for h in history],
        )

    def test_mimic_history_flips_roles(self) -> None:
        history = build_mimic_history(_messages(), ChatSettings())
        self.assertEqual(["model", "user", "user"], [h.role for h in history])


if __name__ == "__main__":
    unittest.main()
