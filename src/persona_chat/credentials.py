from __future__ import annotations

import copy
from dataclasses import asdict

from loguru import logger

from persona_chat.memory.models import Credential
from persona_chat.memory.store import KeyValueStore
from persona_chat.memory.write_sink import AsyncWriteSink

CREDENTIALS_KEY = "api_keys"


class CredentialRotator:
    """Ordered API keys; index 0 is the active one."""

    def __init__(self, credentials: list[Credential] | None = None, *, sink: AsyncWriteSink | None = None):
        self._credentials: list[Credential] = list(credentials or [])
        self._sink = sink

    async def load(self, store: KeyValueStore) -> None:
        raw = await store.get(CREDENTIALS_KEY, []) or []
        self._credentials = [Credential.from_dict(item) for item in raw]
        logger.info(f"Loaded {len(self._credentials)} API key(s)")

    @property
    def credentials(self) -> list[Credential]:
        return copy.deepcopy(self._credentials)

    def __len__(self) -> int:
        return len(self._credentials)

    def active_credential(self) -> Credential | None:
        return copy.copy(self._credentials[0]) if self._credentials else None

    def can_rotate(self) -> bool:
        return len(self._credentials) >= 2

    def rotate(self) -> Credential | None:
        if not self.can_rotate():
            logger.warning("Credential rotation skipped: fewer than two API keys configured")
            return self.active_credential()
        self._credentials = self._credentials[1:] + self._credentials[:1]
        self._persist()
        active = self._credentials[0]
        logger.info(f"Rotated to API key '{active.name}' ({active.masked})")
        return copy.copy(active)

    def add(self, name: str, value: str) -> Credential:
        credential = Credential(name=name.strip() or f"Key {len(self._credentials) + 1}", value=value.strip())
        self._credentials.append(credential)
        self._persist()
        return copy.copy(credential)

    def update(self, credential_id: str, *, name: str | None = None, value: str | None = None) -> bool:
        index = self._index(credential_id)
        if index < 0:
            return False
        if name is not None:
            self._credentials[index].name = name
        if value is not None:
            self._credentials[index].value = value
        self._persist()
        return True

    def delete(self, credential_id: str) -> bool:
        index = self._index(credential_id)
        if index < 0:
            return False
        # Removing index 0 promotes the next key.
        del self._credentials[index]
        self._persist()
        return True

    def move_up(self, credential_id: str) -> bool:
        index = self._index(credential_id)
        if index <= 0:
            return False
        return self._swap(index, index - 1)

    def move_down(self, credential_id: str) -> bool:
        index = self._index(credential_id)
        if index < 0 or index >= len(self._credentials) - 1:
            return False
        return self._swap(index, index + 1)

    def move_to_top(self, credential_id: str) -> bool:
        index = self._index(credential_id)
        if index <= 0:
            return False
        self._credentials.insert(0, self._credentials.pop(index))
        self._persist()
        return True

    def move_to_bottom(self, credential_id: str) -> bool:
        index = self._index(credential_id)
        if index < 0 or index == len(self._credentials) - 1:
            return False
        self._credentials.append(self._credentials.pop(index))
        self._persist()
        return True

    def _swap(self, a: int, b: int) -> bool:
        self._credentials[a], self._credentials[b] = self._credentials[b], self._credentials[a]
        self._persist()
        return True

    def _index(self, credential_id: str) -> int:
        for i, credential in enumerate(self._credentials):
            if credential.id == credential_id:
                return i
        return -1

    def _persist(self) -> None:
        if self._sink is not None:
            self._sink.schedule(CREDENTIALS_KEY, [asdict(c) for c in self._credentials])
