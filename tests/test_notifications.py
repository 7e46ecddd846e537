import unittest

from persona_chat.memory.models import Message, MessageRole
from persona_chat.notifications import LoggingToastChannel, NewMessageNotifier


def _reply(text: str) -> Message:
    return Message(role=MessageRole.MODEL, content=text)


class NewMessageNotifierTests(unittest.TestCase):
    def test_each_message_is_delivered_once(self) -> None:
        delivered: list[str] = []
        notifier = NewMessageNotifier(lambda m: delivered.append(m.content))
        reply = _reply("hi")

        self.assertTrue(notifier.notify(reply))
        self.assertFalse(notifier.notify(reply))
        self.assertEqual(["hi"], delivered)

    def test_only_recent_ids_are_remembered(self) -> None:
        delivered: list[str] = []
        notifier = NewMessageNotifier(lambda m: delivered.append(m.content), max_tracked=2)
        first, second, third = _reply("a"), _reply("b"), _reply("c")

        for message in (first, second, third):
            notifier.notify(message)

        self.assertEqual(2, len(notifier._notified))
        self.assertFalse(notifier.notify(third))
        self.assertTrue(notifier.notify(first))
        self.assertEqual(["a", "b", "c", "a"], delivered)

    def test_without_sink_nothing_is_recorded(self) -> None:
        notifier = NewMessageNotifier()
        reply = _reply("x")
        self.assertFalse(notifier.notify(reply))

        delivered: list[Message] = []
        notifier.set_sink(delivered.append)
        self.assertTrue(notifier.notify(reply))
        self.assertEqual([reply], delivered)

    def test_failing_sink_still_counts_as_delivered(self) -> None:
        def sink(message: Message) -> None:
            raise RuntimeError("speaker unplugged")

        notifier = NewMessageNotifier(sink)
        reply = _reply("x")
        self.assertTrue(notifier.notify(reply))
        self.assertFalse(notifier.notify(reply))


class LoggingToastChannelTests(unittest.TestCase):
    def test_latest_toast_replaces_the_current_one(self) -> None:
        toasts = LoggingToastChannel()
        toasts.show("Saved")
        toasts.show("Failed", kind="error", duration_seconds=10)

        self.assertEqual("Failed", toasts.current.message)
        self.assertEqual(["Saved", "Failed"], [t.message for t in toasts.history])

    def test_expired_toast_is_cleared(self) -> None:
        toasts = LoggingToastChannel(default_duration_seconds=0)
        toasts.show("gone")
        self.assertIsNone(toasts.current)


if __name__ == "__main__":
    unittest.main()
