from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger

from persona_chat.memory.store import KeyValueStore


class AsyncWriteSink:
    """Fire-and-forget persistence: coalesces writes per key and flushes on an interval."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        on_error: Callable[[str, Exception], None] | None = None,
        flush_interval_seconds: float = 0.5,
    ):
        self._store = store
        self._on_error = on_error
        self._flush_interval_seconds = max(0.05, flush_interval_seconds)
        self._pending: dict[str, Any] = {}
        self._task: asyncio.Task | None = None
        self._closed = False
        self.failed_keys: list[str] = []

    @property
    def pending_keys(self) -> list[str]:
        return list(self._pending)

    def set_error_handler(self, on_error: Callable[[str, Exception], None] | None) -> None:
        self._on_error = on_error

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def schedule(self, key: str, value: Any) -> None:
        if self._closed:
            logger.debug(f"Write sink closed; dropping write for {key}")
            return
        # Later writes for the same key replace earlier ones.
        self._pending.pop(key, None)
        self._pending[key] = value

    async def flush(self) -> None:
        while self._pending:
            key, value = next(iter(self._pending.items()))
            del self._pending[key]
            try:
                await self._store.set(key, value)
            except Exception as ex:
                self.failed_keys.append(key)
                logger.error(f"Failed to persist {key}: {ex}")
                if self._on_error is not None:
                    self._on_error(key, ex)

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_seconds)
            await self.flush()
