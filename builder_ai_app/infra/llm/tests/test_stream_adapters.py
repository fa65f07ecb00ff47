# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

import httpx
import openai
import pytest

from builder_ai_app.infra.llm.llm_data_model import ChatMessage, ModelDelta
from builder_ai_app.infra.llm.streaming import (
    AnthropicEventNormalizer, AnthropicStreamClient, OpenAIStreamClient, openai_chunk_to_deltas,
)
from builder_ai_app.infra.llm.tools import PROJECT_TOOLS
from builder_ai_app.infra.service_hub.errors import ServiceException


def _chunk(**delta):
    return {"choices": [{"delta": delta}]}


def test_openai_chunk_shapes():
    assert openai_chunk_to_deltas(_chunk(content="hi")) == [ModelDelta(text="hi")]
    assert openai_chunk_to_deltas(_chunk(content=[{"type": "text", "text": "a"}, {"type": "text", "text": "b"}])) == [
        ModelDelta(text="ab")
    ]
    tool = _chunk(tool_calls=[{"index": 0, "function": {"name": "emitFiles", "arguments": '{"op'}}])
    assert openai_chunk_to_deltas(tool) == [ModelDelta(tool_name="emitFiles", tool_args='{"op')]
    # second parallel tool call is ignored
    assert openai_chunk_to_deltas(_chunk(tool_calls=[{"index": 1, "function": {"arguments": "x"}}])) == []
    legacy = _chunk(function_call={"arguments": "[]"})
    assert openai_chunk_to_deltas(legacy) == [ModelDelta(tool_args="[]")]
    assert openai_chunk_to_deltas({"choices": []}) == []


def test_anthropic_normalizer():
    n = AnthropicEventNormalizer()
    events = [
        {"type": "message_start"},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Sure. "}},
        {"type": "text", "text": "Sure. "},
        {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "name": "emitFiles"}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"operations"'}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ": []}"}},
        {"type": "content_block_start", "index": 2, "content_block": {"type": "tool_use", "name": "other"}},
        {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": "{}"}},
    ]
    deltas = [d for d in (n.feed(e) for e in events) if d is not None]
    assert deltas == [
        ModelDelta(text="Sure. "),
        ModelDelta(tool_name="emitFiles"),
        ModelDelta(tool_args='{"operations"'),
        ModelDelta(tool_args=": []}"),
    ]


class _FakeAsyncIter:
    def __init__(self, items):
        self._items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        return self._items.pop(0)


class _FakeCompletions:
    def __init__(self, chunks=None, error=None):
        self.chunks = chunks or []
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return _FakeAsyncIter(self.chunks)


class _FakeOpenAI:
    def __init__(self, completions):
        self.chat = type("Chat", (), {"completions": completions})()


@pytest.mark.asyncio
async def test_openai_client_text_only_and_tools_modes():
    completions = _FakeCompletions(chunks=[_chunk(content="ok")])
    client = OpenAIStreamClient(model="m", client=_FakeOpenAI(completions))
    msgs = [ChatMessage.system("s"), ChatMessage.user("u")]

    out = [d async for d in client.create_streaming_completion(msgs, tools=PROJECT_TOOLS, tool_choice="none", max_tokens=10)]
    assert out == [ModelDelta(text="ok")]
    assert "tools" not in completions.calls[0]
    assert completions.calls[0]["messages"] == [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}]
    assert completions.calls[0]["temperature"] == 0.0

    completions.chunks = [_chunk(content="ok")]
    _ = [d async for d in client.create_streaming_completion(msgs, tools=PROJECT_TOOLS, tool_choice="auto")]
    assert completions.calls[1]["tool_choice"] == "auto"
    assert [t["function"]["name"] for t in completions.calls[1]["tools"]] == [t.name for t in PROJECT_TOOLS]


@pytest.mark.asyncio
async def test_openai_client_wraps_transport_errors():
    err = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    client = OpenAIStreamClient(model="m", client=_FakeOpenAI(_FakeCompletions(error=err)))
    with pytest.raises(ServiceException) as ei:
        async for _ in client.create_streaming_completion([ChatMessage.user("u")]):
            pass
    assert ei.value.err.stage == "stream_open"
    assert ei.value.err.provider == "openai"
    assert ei.value.retryable


class _FakeStreamCtx:
    def __init__(self, events):
        self._events = events

    async def __aenter__(self):
        return _FakeAsyncIter(self._events)

    async def __aexit__(self, *exc):
        return False


class _FakeMessages:
    def __init__(self, events):
        self.events = events
        self.calls = []

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return _FakeStreamCtx(self.events)


@pytest.mark.asyncio
async def test_anthropic_client_moves_system_messages():
    messages_api = _FakeMessages([
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Understood."}},
    ])
    fake = type("Anthropic", (), {"messages": messages_api})()
    client = AnthropicStreamClient(model="c", client=fake)
    msgs = [ChatMessage.system("a"), ChatMessage.system("b"), ChatMessage.user("u")]

    out = [d async for d in client.create_streaming_completion(msgs, tools=PROJECT_TOOLS, tool_choice="auto", max_tokens=5)]
    assert out == [ModelDelta(text="Understood.")]
    call = messages_api.calls[0]
    assert call["system"] == "a\n\nb"
    assert call["messages"] == [{"role": "user", "content": "u"}]
    assert call["tool_choice"] == {"type": "auto"}
    assert call["tools"][0]["input_schema"]
