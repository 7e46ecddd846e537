from persona_chat.memory.request_log import RequestLogger
from persona_chat.memory.session_store import SessionStore
from persona_chat.memory.store import KeyValueStore, SqliteKeyValueStore
from persona_chat.memory.write_sink import AsyncWriteSink

__all__ = [
    "AsyncWriteSink",
    "KeyValueStore",
    "RequestLogger",
    "SessionStore",
    "SqliteKeyValueStore",
]
