import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from persona_chat.memory import SqliteKeyValueStore


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class KeyValueStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = str(self._tmp_dir / "store.db")
        self._store = SqliteKeyValueStore(self._db_path)

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def reopen(self) -> SqliteKeyValueStore:
        self._store.close()
        self._store = SqliteKeyValueStore(self._db_path)
        return self._store
