import asyncio
import unittest

from persona_chat.errors import SessionNotFoundError
from persona_chat.memory.models import Attachment, Character, ChatSettings, Message, MessageRole, Session
from persona_chat.memory.session_store import (
    ACTIVE_SESSION_KEY,
    GENERATION_TIMES_KEY,
    SESSIONS_KEY,
    SessionStore,
)
from persona_chat.memory.write_sink import AsyncWriteSink
from tests.memory.base import KeyValueStoreTestCase


class SessionStoreTests(unittest.TestCase):
    def test_new_session_is_titled_and_selected(self) -> None:
        store = SessionStore(default_settings=ChatSettings(model="m-1"))
        session = store.create_session()

        self.assertEqual("New Chat", session.title)
        self.assertEqual("m-1", session.settings.model)
        self.assertEqual(session.id, store.active_session_id)

    def test_reads_return_copies(self) -> None:
        store = SessionStore()
        session = store.create_session()
        copy = store.get(session.id)
        copy.messages.append(Message(role=MessageRole.USER, content="leak"))

        self.assertEqual([], store.get(session.id).messages)

    def test_update_session_swaps_in_draft(self) -> None:
        store = SessionStore()
        session = store.create_session()

        def apply(draft: Session) -> Session:
            draft.messages.append(Message(role=MessageRole.USER, content="hi"))
            return draft

        updated = store.update_session(session.id, apply)
        self.assertEqual(["hi"], [m.content for m in updated.messages])
        self.assertEqual(["hi"], [m.content for m in store.get(session.id).messages])

    def test_update_session_aborts_on_none(self) -> None:
        store = SessionStore()
        session = store.create_session()

        def apply(draft: Session) -> None:
            draft.title = "changed"
            return None

        self.assertIsNone(store.update_session(session.id, apply))
        self.assertEqual("New Chat", store.get(session.id).title)

    def test_update_session_raising_leaves_state_untouched(self) -> None:
        store = SessionStore()
        session = store.create_session()

        def apply(draft: Session) -> Session:
            draft.title = "half"
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            store.update_session(session.id, apply)
        self.assertEqual("New Chat", store.get(session.id).title)

    def test_unknown_session_raises(self) -> None:
        store = SessionStore()
        with self.assertRaises(SessionNotFoundError):
            store.update_session("missing", lambda s: s)
        with self.assertRaises(SessionNotFoundError):
            store.require("missing")

    def test_select_and_delete_notify_listeners(self) -> None:
        store = SessionStore()
        first = store.create_session(title="first")
        second = store.create_session(title="second")
        changes: list[tuple] = []
        deleted: list[str] = []
        store.on_active_session_changed(lambda prev, cur: changes.append((prev, cur)))
        store.on_session_deleted(deleted.append)

        store.select_session(first.id)
        store.select_session(first.id)
        store.delete_session(first.id)

        self.assertEqual([(second.id, first.id), (first.id, second.id)], changes)
        self.assertEqual([first.id], deleted)
        self.assertEqual(second.id, store.active_session_id)

    def test_deleting_last_session_clears_active(self) -> None:
        store = SessionStore()
        only = store.create_session()
        store.delete_session(only.id)
        self.assertIsNone(store.active_session_id)
        self.assertEqual([], store.sessions)

    def test_rename_ignores_blank_title(self) -> None:
        store = SessionStore()
        session = store.create_session()
        self.assertIsNone(store.rename_session(session.id, "   "))
        store.rename_session(session.id, " Trip plans ")
        self.assertEqual("Trip plans", store.get(session.id).title)

    def test_generation_times(self) -> None:
        store = SessionStore()
        store.set_generation_time("m1", 1.23456)
        store.set_generation_time("m2", 2.0)
        store.drop_generation_times(["m1", "unknown"])

        self.assertIsNone(store.generation_time("m1"))
        self.assertEqual({"m2": 2.0}, store.generation_times)

    def test_deleting_session_drops_its_generation_times(self) -> None:
        store = SessionStore()
        session = store.create_session()
        message = Message(role=MessageRole.MODEL, content="x")

        def apply(draft: Session) -> Session:
            draft.messages.append(message)
            return draft

        store.update_session(session.id, apply)
        store.set_generation_time(message.id, 0.5)
        store.delete_session(session.id)
        self.assertEqual({}, store.generation_times)

    def test_duplicate_copies_under_fresh_ids(self) -> None:
        store = SessionStore()
        session = store.create_session(title="Trip")
        reply = Message(role=MessageRole.MODEL, content="Sure", cached_audio="audio-1")

        def apply(draft: Session) -> Session:
            draft.messages = [
                Message(
                    role=MessageRole.USER,
                    content="Plan it",
                    attachments=[Attachment(name="map.png", mime_type="image/png")],
                ),
                reply,
            ]
            draft.characters = [Character("Guide", "You are a guide.")]
            draft.is_character_mode = True
            return draft

        store.update_session(session.id, apply)
        store.set_generation_time(reply.id, 1.5)
        original = store.get(session.id)

        duplicate = store.duplicate_session(session.id)

        self.assertEqual("Trip (Copy)", duplicate.title)
        self.assertEqual(duplicate.id, store.active_session_id)
        self.assertNotEqual(session.id, duplicate.id)
        self.assertEqual(["Plan it", "Sure"], [m.content for m in duplicate.messages])
        self.assertTrue({m.id for m in original.messages}.isdisjoint(m.id for m in duplicate.messages))
        self.assertNotEqual(original.messages[0].attachments[0].id, duplicate.messages[0].attachments[0].id)
        self.assertNotEqual(original.characters[0].id, duplicate.characters[0].id)
        self.assertTrue(duplicate.is_character_mode)
        self.assertIsNone(duplicate.messages[1].cached_audio)
        self.assertEqual("audio-1", store.get(session.id).messages[1].cached_audio)
        self.assertEqual(1.5, store.generation_time(duplicate.messages[1].id))
        self.assertEqual(2, len(store.sessions))


class SessionStorePersistenceTests(KeyValueStoreTestCase):
    def test_state_survives_flush_and_reload(self) -> None:
        async def scenario() -> SessionStore:
            sink = AsyncWriteSink(self._store)
            store = SessionStore(sink)
            older = store.create_session(title="older")
            store.create_session(title="newer")
            store.select_session(older.id)

            def apply(draft: Session) -> Session:
                draft.messages.append(Message(role=MessageRole.USER, content="hello"))
                return draft

            store.update_session(older.id, apply)
            store.set_generation_time("g1", 1.5)
            await sink.close()

            reloaded = SessionStore()
            await reloaded.load(self.reopen())
            return reloaded

        reloaded = asyncio.run(scenario())
        active = reloaded.active_session
        self.assertEqual("older", active.title)
        self.assertEqual(["hello"], [m.content for m in active.messages])
        self.assertEqual(MessageRole.USER, active.messages[0].role)
        self.assertEqual(1.5, reloaded.generation_time("g1"))

    def test_load_skips_unreadable_sessions_and_stale_active_id(self) -> None:
        good = Session(title="good")

        async def scenario() -> SessionStore:
            await self._store.set(SESSIONS_KEY, [{"title": "no id"}, good.to_dict()])
            await self._store.set(ACTIVE_SESSION_KEY, "gone")
            await self._store.set(GENERATION_TIMES_KEY, {"m": 2})
            store = SessionStore()
            await store.load(self._store)
            return store

        store = asyncio.run(scenario())
        self.assertEqual([good.id], [s.id for s in store.sessions])
        self.assertEqual(good.id, store.active_session_id)
        self.assertEqual(2.0, store.generation_time("m"))


if __name__ == "__main__":
    unittest.main()
