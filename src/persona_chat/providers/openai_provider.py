from collections.abc import Callable

import openai
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
from persona_chat.providers.common import PREFIX_CONTINUE_INSTRUCTION, build_turns


def _to_openai_messages(request: GenerationRequest) -> list[dict]:
    """Convert a generation request to OpenAI chat format."""
    out: list[dict] = []

    if request.system_instruction:
        out.append({"role": "system", "content": request.system_instruction})

    for turn in build_turns(request):
        if turn["role"] == "model":
            out.append({"role": "assistant", "content": turn["text"]})
            continue

        images = [a for a in turn["attachments"] if a.is_image and a.base64_data]
        notes = [
            f"[Attached file: {a.name} ({a.mime_type})]"
            for a in turn["attachments"]
            if not (a.is_image and a.base64_data)
        ]
        text = "\n".join([*notes, turn["text"]]) if notes else turn["text"]
        if not images:
            out.append({"role": "user", "content": text})
            continue

        parts: list[dict] = [
            {"type": "image_url", "image_url": {"url": f"data:{a.mime_type};base64,{a.base64_data}"}}
            for a in images
        ]
        if text:
            parts.append({"type": "text", "text": text})
        out.append({"role": "user", "content": parts})

    if request.prefix:
        # No assistant prefill in chat completions; ask for the continuation instead.
        out.append({"role": "assistant", "content": request.prefix})
        out.append({"role": "user", "content": PREFIX_CONTINUE_INSTRUCTION})
    return out


def _map_error(ex: Exception) -> GenerationError:
    if isinstance(ex, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return CredentialRejectedError(str(ex))
    if isinstance(ex, openai.RateLimitError):
        return QuotaExceededError(str(ex))
    if isinstance(ex, (openai.APIConnectionError, openai.InternalServerError)):
        return TransientError(str(ex))
    if isinstance(ex, openai.APIStatusError):
        return classify_status_error(ex.status_code, str(ex))
    return TransientError(str(ex))


class OpenAIProvider:
    def __init__(self) -> None:
        self._clients: dict[str, openai.AsyncOpenAI] = {}

    def _client_for(self, api_key: str) -> openai.AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = openai.AsyncOpenAI(api_key=api_key)
            self._clients[api_key] = client
        return client

    async def generate(
        self,
        request: GenerationRequest,
        api_key: str,
        *,
        on_delta: Callable[[str], None] | None = None,
    ) -> GenerationResult:
        oai_messages = _to_openai_messages(request)
        kwargs: dict = dict(
            model=request.model,
            max_tokens=request.max_tokens,
            messages=oai_messages,
            stream=True,
        )
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.top_p is not None:
            kwargs["top_p"] = request.top_p

        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_tokens}, "
            f"messages={len(oai_messages)}, prefix={request.prefix is not None}"
        )

        text_content = ""
        finish_reason: str | None = None
        saw_choice = False
        try:
            stream = await self._client_for(api_key).chat.completions.create(**kwargs)
            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                if choice is None:
                    continue
                saw_choice = True
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = choice.delta
                if delta is not None and delta.content:
                    text_content += delta.content
                    if on_delta is not None:
                        on_delta(delta.content)
        except openai.APIError as ex:
            raise _map_error(ex) from ex

        if not saw_choice:
            raise MalformedResponseError("Stream ended without any choices")
        if not text_content and request.prefix is None:
            raise MalformedResponseError(f"Empty response (finish_reason={finish_reason})")

        logger.debug(f"API response: finish_reason={finish_reason}, text_len={len(text_content)}")
        return GenerationResult(text=text_content, stop_reason=finish_reason)
