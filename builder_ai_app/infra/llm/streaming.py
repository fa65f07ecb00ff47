# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/llm/streaming.py
"""
Model stream clients.

Both adapters expose the same capability,
    create_streaming_completion(messages, tools=..., tool_choice="auto"|"none", max_tokens=..., temperature=0.0)
and yield canonical ModelDelta objects. Provider chunk shapes (string content,
array-of-blocks content, tool_calls, legacy function_call, Anthropic content blocks)
are flattened here and nowhere else.
"""
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Union

import anthropic
import openai
from openai import AsyncOpenAI

from builder_ai_app.config import Settings, get_settings
from builder_ai_app.infra.llm.llm_data_model import AIProviderName, ChatMessage, ModelDelta, ToolSchema
from builder_ai_app.infra.service_hub.errors import ServiceException, mk_llm_error

logger = logging.getLogger(__name__)

MessageLike = Union[ChatMessage, Dict[str, Any]]

_RETRYABLE_STATUS = {408, 409, 429, 529}


class ModelStreamClient(Protocol):
    provider: str
    model: str

    def create_streaming_completion(
            self,
            messages: Sequence[MessageLike],
            *,
            tools: Optional[Sequence[ToolSchema]] = None,
            tool_choice: str = "none",
            max_tokens: int = 4000,
            temperature: float = 0.0,
    ) -> AsyncIterator[ModelDelta]:
        ...


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _as_dict(m: MessageLike) -> Dict[str, str]:
    if isinstance(m, ChatMessage):
        return {"role": m.role, "content": m.content}
    return {"role": m["role"], "content": m["content"]}


def _content_text(content: Any) -> Optional[str]:
    """String content, or the joined text of an array of content blocks."""
    if content is None:
        return None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            else:
                text = _get(block, "text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts) or None
    return None


def is_retryable_error(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status in _RETRYABLE_STATUS or status >= 500):
        return True
    return isinstance(exc, (
        openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError,
        anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError,
    ))


def _wrap(exc: BaseException, stage: str, service_name: str, provider: str, model: str) -> ServiceException:
    status = getattr(exc, "status_code", None)
    err = mk_llm_error(
        exc,
        stage=stage,
        service_name=service_name,
        provider=provider,
        model_name=model,
        http_status=status if isinstance(status, int) else None,
        retryable=is_retryable_error(exc),
    )
    return ServiceException(err)


# ---------------- OpenAI ----------------

def openai_chunk_to_deltas(chunk: Any) -> List[ModelDelta]:
    """
    Normalize one chat.completions stream chunk (SDK object or plain dict).
    Only the first tool call (index 0) is tracked; legacy `function_call` is honoured.
    """
    choices = _get(chunk, "choices") or []
    if not choices:
        return []
    delta = _get(choices[0], "delta")
    if delta is None:
        return []

    out: List[ModelDelta] = []
    text = _content_text(_get(delta, "content"))
    if text:
        out.append(ModelDelta(text=text))

    for tc in _get(delta, "tool_calls") or []:
        index = _get(tc, "index", 0)
        if index not in (0, None):
            continue
        fn = _get(tc, "function")
        name = _get(fn, "name")
        args = _get(fn, "arguments")
        if name or args:
            out.append(ModelDelta(tool_name=name or None, tool_args=args or None))

    fc = _get(delta, "function_call")
    if fc is not None:
        name = _get(fc, "name")
        args = _get(fc, "arguments")
        if name or args:
            out.append(ModelDelta(tool_name=name or None, tool_args=args or None))
    return out


class OpenAIStreamClient:
    provider = AIProviderName.open_ai.value

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4.1-2025-04-14", client: Any = None):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def create_streaming_completion(
            self,
            messages: Sequence[MessageLike],
            *,
            tools: Optional[Sequence[ToolSchema]] = None,
            tool_choice: str = "none",
            max_tokens: int = 4000,
            temperature: float = 0.0,
    ) -> AsyncIterator[ModelDelta]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [_as_dict(m) for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
        }
        if tools and tool_choice != "none":
            kwargs["tools"] = [t.to_openai() for t in tools]
            kwargs["tool_choice"] = tool_choice

        stage = "stream_open"
        try:
            stream = await self.client.chat.completions.create(**kwargs)
            stage = "stream_loop"
            async for chunk in stream:
                for delta in openai_chunk_to_deltas(chunk):
                    yield delta
        except openai.APIError as e:
            logger.error(f"[OpenAIStreamClient] {stage} failed: {e}")
            raise _wrap(e, stage, "OpenAIStreamClient", self.provider, self.model) from e


# ---------------- Anthropic ----------------

class AnthropicEventNormalizer:
    """
    Per-stream state for Anthropic message events.
    The first tool_use block supplies the tool name and its input_json deltas supply args;
    text_delta events supply text. Helper events ("text", "input_json") are ignored.
    """

    def __init__(self):
        self.tool_block_index: Optional[int] = None

    def feed(self, event: Any) -> Optional[ModelDelta]:
        etype = _get(event, "type")
        if etype == "content_block_start":
            block = _get(event, "content_block")
            if _get(block, "type") == "tool_use" and self.tool_block_index is None:
                self.tool_block_index = _get(event, "index", 0)
                return ModelDelta(tool_name=_get(block, "name") or None)
            return None
        if etype == "content_block_delta":
            delta = _get(event, "delta")
            dtype = _get(delta, "type")
            if dtype == "text_delta":
                text = _get(delta, "text")
                return ModelDelta(text=text) if text else None
            if dtype == "input_json_delta" and _get(event, "index", 0) == self.tool_block_index:
                partial = _get(delta, "partial_json")
                return ModelDelta(tool_args=partial) if partial else None
        return None


class AnthropicStreamClient:
    provider = AIProviderName.anthropic.value

    def __init__(self, api_key: Optional[str] = None, model: str = "claude-sonnet-4-5-20250929", client: Any = None):
        self.model = model
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def create_streaming_completion(
            self,
            messages: Sequence[MessageLike],
            *,
            tools: Optional[Sequence[ToolSchema]] = None,
            tool_choice: str = "none",
            max_tokens: int = 4000,
            temperature: float = 0.0,
    ) -> AsyncIterator[ModelDelta]:
        plain = [_as_dict(m) for m in messages]
        system = "\n\n".join(m["content"] for m in plain if m["role"] == "system")
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [m for m in plain if m["role"] != "system"],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        if tools and tool_choice != "none":
            kwargs["tools"] = [t.to_anthropic() for t in tools]
            kwargs["tool_choice"] = {"type": "auto"}

        normalizer = AnthropicEventNormalizer()
        stage = "stream_open"
        try:
            async with self.client.messages.stream(**kwargs) as stream:
                stage = "stream_loop"
                async for event in stream:
                    delta = normalizer.feed(event)
                    if delta is not None:
                        yield delta
        except anthropic.APIError as e:
            logger.error(f"[AnthropicStreamClient] {stage} failed: {e}")
            raise _wrap(e, stage, "AnthropicStreamClient", self.provider, self.model) from e


def create_stream_client(settings: Optional[Settings] = None) -> ModelStreamClient:
    settings = settings or get_settings()
    provider = AIProviderName((settings.LLM_PROVIDER or "").lower())
    if provider == AIProviderName.anthropic:
        return AnthropicStreamClient(api_key=settings.ANTHROPIC_API_KEY, model=settings.ANTHROPIC_MODEL)
    elif provider == AIProviderName.open_ai:
        return OpenAIStreamClient(api_key=settings.OPENAI_API_KEY, model=settings.OPENAI_MODEL)
    raise ValueError(f"Unsupported AI provider: {settings.LLM_PROVIDER}")
