import unittest

from persona_chat.audio_cache import AudioCacheLifecycle
from persona_chat.errors import MessageNotFoundError
from persona_chat.memory.models import Message, MessageRole, Session
from persona_chat.memory.session_store import SessionStore
from persona_chat.transcript import TranscriptService


class AudioCacheLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SessionStore()
        self.session_id = self.store.create_session().id

        def seed(draft: Session) -> Session:
            draft.messages = [
                Message(role=MessageRole.USER, content="hi", id="u1"),
                Message(role=MessageRole.MODEL, content="hello", id="g1"),
                Message(role=MessageRole.MODEL, content="again", id="g2"),
            ]
            return draft

        self.store.update_session(self.session_id, seed)
        self.audio = AudioCacheLifecycle(self.store)

    def test_store_and_reset_single(self) -> None:
        self.audio.store_audio(self.session_id, "g1", "blob:1")
        self.assertTrue(self.audio.has_cached_audio(self.session_id, "g1"))

        result = self.audio.reset_audio_cache(self.session_id, "g1")

        self.assertEqual(("g1",), result.audio_invalidated_ids)
        self.assertFalse(self.audio.has_cached_audio(self.session_id, "g1"))

    def test_reset_without_audio_is_unchanged(self) -> None:
        self.assertFalse(self.audio.reset_audio_cache(self.session_id, "g1").changed)

    def test_reset_unknown_message_raises(self) -> None:
        with self.assertRaises(MessageNotFoundError):
            self.audio.reset_audio_cache(self.session_id, "nope")
        with self.assertRaises(MessageNotFoundError):
            self.audio.store_audio(self.session_id, "nope", "blob")

    def test_bulk_reset_clears_only_cached_targets(self) -> None:
        self.audio.store_audio(self.session_id, "g1", "blob:1")
        self.audio.store_audio(self.session_id, "g2", "blob:2")

        result = self.audio.bulk_reset(self.session_id, ["g1", "u1"])

        self.assertEqual(("g1",), result.audio_invalidated_ids)
        self.assertTrue(self.audio.has_cached_audio(self.session_id, "g2"))

    def test_content_edit_invalidates_audio(self) -> None:
        self.audio.store_audio(self.session_id, "g2", "blob:2")
        TranscriptService(self.store).update_content(self.session_id, "g2", "edited")
        self.assertFalse(self.audio.has_cached_audio(self.session_id, "g2"))


if __name__ == "__main__":
    unittest.main()
