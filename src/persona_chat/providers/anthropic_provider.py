from collections.abc import Callable

import anthropic
from loguru import logger

from persona_chat.errors import (
    CredentialRejectedError,
    GenerationError,
    MalformedResponseError,
    QuotaExceededError,
    TransientError,
    classify_status_error,
)
from persona_chat.provider import GenerationRequest, GenerationResult
from persona_chat.providers.common import build_turns


def _to_anthropic_messages(request: GenerationRequest) -> list[dict]:
    messages: list[dict] = []
    for turn in build_turns(request):
        role = "assistant" if turn["role"] == "model" else "user"
        blocks: list[dict] = []
        for attachment in turn["attachments"]:
            if attachment.is_image and attachment.base64_data:
                blocks.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": attachment.mime_type,
                        "data": attachment.base64_data,
                    },
                })
            else:
                blocks.append({"type": "text", "text": f"[Attached file: {attachment.name} ({attachment.mime_type})]"})
        if turn["text"]:
            blocks.append({"type": "text", "text": turn["text"]})
        messages.append({"role": role, "content": blocks})

    if request.prefix:
        # Assistant prefill; the API rejects a final assistant turn ending in whitespace.
        messages.append({"role": "assistant", "content": request.prefix.rstrip()})
    return messages


class _PrefillWhitespace:
    """Drops the whitespace the prefill trimmed when the model emits it again.

    The caller appends the continuation to the untrimmed prefix, so a leading
    space the model repeats would otherwise be doubled.
    """

    def __init__(self, prefix: str | None):
        self._pending = prefix[len(prefix.rstrip()) :] if prefix else ""

    def feed(self, text: str) -> str:
        while self._pending and text:
            if text[0] != self._pending[0]:
                self._pending = ""
                break
            text = text[1:]
            self._pending = self._pending[1:]
        return text


def _map_error(ex: Exception) -> GenerationError:
    if isinstance(ex, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return CredentialRejectedError(str(ex))
    if isinstance(ex, anthropic.RateLimitError):
        return QuotaExceededError(str(ex))
    if isinstance(ex, (anthropic.APIConnectionError, anthropic.InternalServerError)):
        return TransientError(str(ex))
    if isinstance(ex, anthropic.APIStatusError):
        return classify_status_error(ex.status_code, str(ex))
    return TransientError(str(ex))


class AnthropicProvider:
    def __init__(self) -> None:
        self._clients: dict[str, anthropic.AsyncAnthropic] = {}

    def _client_for(self, api_key: str) -> anthropic.AsyncAnthropic:
        client = self._clients.get(api_key)
        if client is None:
            client = anthropic.AsyncAnthropic(api_key=api_key)
            self._clients[api_key] = client
        return client

    async def generate(
        self,
        request: GenerationRequest,
        api_key: str,
        *,
        on_delta: Callable[[str], None] | None = None,
    ) -> GenerationResult:
        """Stream a Messages API response, forwarding text deltas as they arrive."""
        messages = _to_anthropic_messages(request)
        kwargs: dict = dict(
            model=request.model,
            max_tokens=request.max_tokens,
            system=request.system_instruction,
            messages=messages,
        )
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        elif request.top_p is not None:
            kwargs["top_p"] = request.top_p
        if request.top_k is not None:
            kwargs["top_k"] = request.top_k

        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_tokens}, "
            f"messages={len(messages)}, prefix={request.prefix is not None}"
        )
        streamed = _PrefillWhitespace(request.prefix)
        try:
            async with self._client_for(api_key).messages.stream(**kwargs) as stream:
                async for event in stream:
                    if event.type == "content_block_delta" and event.delta.type == "text_delta":
                        chunk = streamed.feed(event.delta.text)
                        if chunk and on_delta is not None:
                            on_delta(chunk)
                response = await stream.get_final_message()
        except anthropic.APIError as ex:
            raise _map_error(ex) from ex

        content = getattr(response, "content", None)
        if content is None:
            raise MalformedResponseError("Response carried no content")
        text = "".join(block.text for block in content if getattr(block, "type", "") == "text")
        text = _PrefillWhitespace(request.prefix).feed(text)
        if not text and request.prefix is None:
            raise MalformedResponseError(f"Empty response (stop_reason={response.stop_reason})")

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        return GenerationResult(text=text, stop_reason=response.stop_reason)
