from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger

from persona_chat.memory.models import Message

DEFAULT_TOAST_SECONDS = 3.0
MAX_TRACKED_NOTIFICATIONS = 512


@dataclass(frozen=True)
class Toast:
    message: str
    kind: str
    duration_seconds: float
    shown_at: float

    @property
    def expired(self) -> bool:
        return time.monotonic() - self.shown_at >= self.duration_seconds


@runtime_checkable
class ToastChannel(Protocol):
    def show(self, message: str, kind: str = "success", duration_seconds: float | None = None) -> None: ...


class LoggingToastChannel:
    """Keeps the single current toast and mirrors it to the log."""

    def __init__(self, *, default_duration_seconds: float = DEFAULT_TOAST_SECONDS):
        self._default_duration_seconds = default_duration_seconds
        self._current: Toast | None = None
        self.history: list[Toast] = []

    @property
    def current(self) -> Toast | None:
        if self._current is not None and self._current.expired:
            self._current = None
        return self._current

    def show(self, message: str, kind: str = "success", duration_seconds: float | None = None) -> None:
        toast = Toast(
            message=message,
            kind=kind,
            duration_seconds=duration_seconds if duration_seconds is not None else self._default_duration_seconds,
            shown_at=time.monotonic(),
        )
        self._current = toast
        self.history.append(toast)
        if kind == "error":
            logger.warning(f"Toast: {message}")
        else:
            logger.info(f"Toast: {message}")


class ConsoleToastChannel(LoggingToastChannel):
    def __init__(self, *, line_prefix: str, default_duration_seconds: float = DEFAULT_TOAST_SECONDS):
        super().__init__(default_duration_seconds=default_duration_seconds)
        self._line_prefix = line_prefix

    def show(self, message: str, kind: str = "success", duration_seconds: float | None = None) -> None:
        super().show(message, kind, duration_seconds)
        marker = "!" if kind == "error" else "*"
        print(f"\n{self._line_prefix}[{marker}] {message}")


class NewMessageNotifier:
    """Invokes the sink at most once per finalized generated message.

    Only the most recent ``max_tracked`` message ids are remembered, which is
    enough to absorb repeated finalization of the same reply.
    """

    def __init__(
        self,
        sink: Callable[[Message], None] | None = None,
        *,
        max_tracked: int = MAX_TRACKED_NOTIFICATIONS,
    ):
        self._sink = sink
        self._max_tracked = max(1, max_tracked)
        self._notified: OrderedDict[str, None] = OrderedDict()

    def set_sink(self, sink: Callable[[Message], None] | None) -> None:
        self._sink = sink

    def notify(self, message: Message) -> bool:
        if self._sink is None or message.id in self._notified:
            return False
        self._notified[message.id] = None
        while len(self._notified) > self._max_tracked:
            self._notified.popitem(last=False)
        try:
            self._sink(message)
        except Exception as ex:
            logger.warning(f"New-message sink failed for {message.id}: {ex}")
        return True
