from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from persona_chat.memory.models import Attachment


@dataclass
class HistoryEntry:
    role: str  # "user" or "model"
    text: str
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class GenerationRequest:
    model: str
    system_instruction: str
    history: list[HistoryEntry]
    prompt: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    prefix: str | None = None
    max_tokens: int = 8192
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None


@dataclass
class GenerationResult:
    text: str
    stop_reason: str | None = None


@runtime_checkable
class GenerationProvider(Protocol):
    async def generate(
        self,
        request: GenerationRequest,
        api_key: str,
        *,
        on_delta: Callable[[str], None] | None = None,
    ) -> GenerationResult:
        """Run one generation, reporting streamed text through ``on_delta``.

        Raises a ``GenerationError`` subclass on failure. When ``request.prefix``
        is set, the returned text is only the continuation of that prefix.
        """
        ...


def create_provider(provider_name: str) -> GenerationProvider:
    """Factory: create a GenerationProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from persona_chat.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider()
    if name == "openai":
        from persona_chat.providers.openai_provider import OpenAIProvider
        return OpenAIProvider()
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
