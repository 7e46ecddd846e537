from __future__ import annotations

from loguru import logger

from persona_chat.memory.models import Character, Session
from persona_chat.memory.session_store import SessionStore


class CharacterRoster:
    def __init__(self, sessions: SessionStore):
        self._sessions = sessions

    def list_characters(self, session_id: str) -> list[Character]:
        return self._sessions.require(session_id).characters

    def find_by_name(self, session_id: str, name: str) -> Character | None:
        lowered = name.strip().lower()
        return next((c for c in self.list_characters(session_id) if c.name.lower() == lowered), None)

    def add(self, session_id: str, name: str, system_instruction: str, contextual_info: str = "") -> Character:
        name = name.strip()
        if not name:
            raise ValueError("Character name is required")
        if self.find_by_name(session_id, name) is not None:
            raise ValueError(f"Character already exists: {name}")
        character = Character(name=name, system_instruction=system_instruction.strip(), contextual_info=contextual_info)

        def apply(session: Session) -> Session:
            session.characters.append(character)
            return session

        self._sessions.update_session(session_id, apply)
        logger.info(f"Added character {name!r} to {session_id}")
        return character

    def edit(
        self,
        session_id: str,
        character_id: str,
        *,
        name: str | None = None,
        system_instruction: str | None = None,
    ) -> Character | None:
        if name is not None:
            clash = self.find_by_name(session_id, name)
            if clash is not None and clash.id != character_id:
                raise ValueError(f"Character already exists: {name}")
        edited: list[Character] = []

        def apply(session: Session) -> Session | None:
            character = session.find_character(character_id)
            if character is None:
                return None
            if name is not None and name.strip():
                character.name = name.strip()
            if system_instruction is not None:
                character.system_instruction = system_instruction.strip()
            edited.append(character)
            return session

        self._sessions.update_session(session_id, apply)
        return edited[0] if edited else None

    def delete(self, session_id: str, character_id: str) -> bool:
        # Past messages keep their character attribution.
        def apply(session: Session) -> Session | None:
            remaining = [c for c in session.characters if c.id != character_id]
            if len(remaining) == len(session.characters):
                return None
            session.characters = remaining
            return session

        return self._sessions.update_session(session_id, apply) is not None

    def move_up(self, session_id: str, character_id: str) -> bool:
        return self._move(session_id, character_id, -1)

    def move_down(self, session_id: str, character_id: str) -> bool:
        return self._move(session_id, character_id, 1)

    def save_contextual_info(self, session_id: str, character_id: str, text: str) -> bool:
        def apply(session: Session) -> Session | None:
            character = session.find_character(character_id)
            if character is None:
                return None
            character.contextual_info = text
            return session

        return self._sessions.update_session(session_id, apply) is not None

    def toggle_character_mode(self, session_id: str) -> bool:
        def apply(session: Session) -> Session:
            session.is_character_mode = not session.is_character_mode
            return session

        updated = self._sessions.update_session(session_id, apply)
        assert updated is not None
        logger.info(f"Character mode {'on' if updated.is_character_mode else 'off'} for {session_id}")
        return updated.is_character_mode

    def _move(self, session_id: str, character_id: str, offset: int) -> bool:
        def apply(session: Session) -> Session | None:
            index = next((i for i, c in enumerate(session.characters) if c.id == character_id), -1)
            target = index + offset
            if index < 0 or target < 0 or target >= len(session.characters):
                return None
            characters = session.characters
            characters[index], characters[target] = characters[target], characters[index]
            return session

        return self._sessions.update_session(session_id, apply) is not None
