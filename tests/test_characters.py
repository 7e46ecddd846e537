import unittest

from persona_chat.characters import CharacterRoster
from persona_chat.memory.models import Message, MessageRole, Session
from persona_chat.memory.session_store import SessionStore


class CharacterRosterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SessionStore()
        self.session_id = self.store.create_session().id
        self.roster = CharacterRoster(self.store)

    def _names(self) -> list[str]:
        return [c.name for c in self.roster.list_characters(self.session_id)]

    def test_add_rejects_blank_and_duplicate_names(self) -> None:
        self.roster.add(self.session_id, "Alice", "You are Alice.")
        with self.assertRaises(ValueError):
            self.roster.add(self.session_id, "  ", "x")
        with self.assertRaises(ValueError):
            self.roster.add(self.session_id, "alice", "x")
        self.assertEqual(["Alice"], self._names())

    def test_reorder_with_boundary_noops(self) -> None:
        alice = self.roster.add(self.session_id, "Alice", "a")
        bob = self.roster.add(self.session_id, "Bob", "b")

        self.assertFalse(self.roster.move_up(self.session_id, alice.id))
        self.assertFalse(self.roster.move_down(self.session_id, bob.id))
        self.assertTrue(self.roster.move_down(self.session_id, alice.id))
        self.assertEqual(["Bob", "Alice"], self._names())

    def test_edit_and_contextual_info(self) -> None:
        alice = self.roster.add(self.session_id, "Alice", "a")
        self.roster.add(self.session_id, "Bob", "b")

        with self.assertRaises(ValueError):
            self.roster.edit(self.session_id, alice.id, name="Bob")
        edited = self.roster.edit(self.session_id, alice.id, name="Alicia", system_instruction=" new ")
        self.assertTrue(self.roster.save_contextual_info(self.session_id, alice.id, "At a party."))

        self.assertEqual("Alicia", edited.name)
        stored = self.roster.find_by_name(self.session_id, "alicia")
        self.assertEqual("new", stored.system_instruction)
        self.assertEqual("At a party.", stored.contextual_info)

    def test_delete_keeps_past_attributions(self) -> None:
        alice = self.roster.add(self.session_id, "Alice", "a")

        def seed(draft: Session) -> Session:
            draft.messages.append(Message(role=MessageRole.MODEL, content="hi", character_name="Alice"))
            return draft

        self.store.update_session(self.session_id, seed)
        self.assertTrue(self.roster.delete(self.session_id, alice.id))
        self.assertFalse(self.roster.delete(self.session_id, alice.id))
        self.assertEqual("Alice", self.store.get(self.session_id).messages[0].character_name)

    def test_toggle_character_mode_keeps_characters(self) -> None:
        self.roster.add(self.session_id, "Alice", "a")
        self.assertTrue(self.roster.toggle_character_mode(self.session_id))
        self.assertFalse(self.roster.toggle_character_mode(self.session_id))
        self.assertEqual(["Alice"], self._names())


if __name__ == "__main__":
    unittest.main()
