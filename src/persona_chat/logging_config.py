import re
import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_LOG_FILE = "persona_chat.log"

# Anthropic / OpenAI style keys; SDK error text sometimes echoes them back.
_SECRET_PATTERN = re.compile(r"\bsk-[A-Za-z0-9_-]{4,}")


def redact_secrets(text: str) -> str:
    return _SECRET_PATTERN.sub(lambda m: f"...{m.group(0)[-4:]}", text)


def _redact_record(record: dict) -> None:
    record["message"] = redact_secrets(record["message"])


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    """stderr, so log lines stay apart from streamed replies on stdout."""

    def __init__(self, colorize: bool | None = None):
        self._colorize = colorize

    def register(self, level: str) -> int:
        return logger.add(
            sys.stderr,
            level=level,
            colorize=self._colorize,
            format="<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = DEFAULT_LOG_FILE,
        rotation: str = "5 MB",
        retention: int = 5,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            # Generations stream from background tasks; keep file writes off the loop.
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._serialize else "text"
        return f"file ({self._path}, {level}, {kind}, rotation {self._rotation})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# Console stays quiet by default; the REPL prints toasts itself.
_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file", "path": DEFAULT_LOG_FILE},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    Each consumer entry is ``{"type": ..., "level": ...}`` plus keyword
    arguments for the consumer class. Entries with an unknown type or bad
    arguments are skipped with a warning. API keys in messages are masked
    before any sink sees them. Returns one description per registered
    consumer.
    """
    logger.remove()
    logger.configure(patcher=_redact_record)

    descriptions: list[str] = []
    for entry in _DEFAULT_CONSUMERS if consumers is None else consumers:
        sink_type = entry.get("type", "")
        consumer_cls = _CONSUMER_TYPES.get(sink_type)
        if consumer_cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = str(entry.get("level", level)).upper()
        options = {k: v for k, v in entry.items() if k not in ("type", "level")}
        try:
            consumer = consumer_cls(**options)
        except TypeError as ex:
            logger.warning(f"Invalid options for {sink_type} log consumer: {ex}")
            continue

        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
