# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/llm/tool_call_driver.py
"""
Chunked streaming tool-call driver.

One invocation = N text-only "chunk" calls followed by one tools-enabled "final" call:

    Idle -> ChunkSending(0..n-1) -> FinalSending -> Done

Chunk call i sees exactly   system ++ expanded[0..i]
Final call sees             system ++ expanded ++ [END_OF_CHUNKS user message]

Progress is emitted as "<prefix>:chunk|ack|warning|tool_name|tool_args|done" to the
session through a StreamEventSink. Model misbehaviour (no ack, no tool call,
empty or broken args) never raises: it is repaired and reported as a warning.
Transport failures (ServiceException) propagate to the caller.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from builder_ai_app.config import Settings, get_settings
from builder_ai_app.infra.llm.llm_data_model import (
    ChatMessage, ModelDelta, ToolSchema,
    StreamEvent, StreamEventSink,
    TextChunkEvent, AcknowledgmentEvent, WarningEvent,
    ToolNameEvent, ToolArgsChunkEvent, DoneEvent,
)
from builder_ai_app.infra.llm.streaming import ModelStreamClient
from builder_ai_app.infra.llm.tools import (
    PROJECT_TOOLS, UNKNOWN_TOOL,
    default_tool_args, extract_json_from_text, infer_tool_name,
    is_file_emission_tool, is_valid_json, parse_tool_args, tool_call_from_parsed,
)
from builder_ai_app.infra.service_hub.errors import ServiceException, mk_llm_error
from builder_ai_app.utils.text import chunk_tag, split_preserve_words

logger = logging.getLogger(__name__)

ACK_PATTERN = re.compile(
    r"\b(?:understand|understood|acknowledge|acknowledged|got it|i understand"
    r"|ready to proceed|ready to continue|will proceed|proceeding)\b",
    re.IGNORECASE,
)

FINAL_INSTRUCTION = (
    "END_OF_CHUNKS: You have now received all chunks. Please perform the requested "
    "action and produce the function call with valid JSON arguments."
)


class DriverState(str, Enum):
    idle = "idle"
    chunk_sending = "chunk_sending"
    final_sending = "final_sending"
    done = "done"


@dataclass
class DriverConfig:
    max_tokens: int = 4000
    # cap for chunk-phase (acknowledgment) calls
    chunk_max_tokens: int = 2048
    chunk_size: int = 3000
    chunking_enabled: bool = True
    require_ack: bool = True
    event_prefix: str = "ai"
    # per model call; None disables
    call_timeout_s: Optional[float] = 300.0
    # extra system message for chunk calls only
    ack_instruction: Optional[str] = None
    temperature: float = 0.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "DriverConfig":
        s = settings or get_settings()
        cfg = cls(
            max_tokens=s.DRIVER_MAX_TOKENS,
            chunk_max_tokens=s.DRIVER_CHUNK_MAX_TOKENS,
            chunk_size=s.DRIVER_CHUNK_SIZE,
            chunking_enabled=s.DRIVER_CHUNKING_ENABLED,
            require_ack=s.DRIVER_REQUIRE_ACK,
            event_prefix=s.DRIVER_EVENT_PREFIX,
            call_timeout_s=s.DRIVER_CALL_TIMEOUT_S,
        )
        return cfg.merged(**overrides)

    def merged(self, **overrides) -> "DriverConfig":
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass
class DriverResult:
    full_text: str
    tool_call_name: str
    tool_call_args_json: str
    acknowledged: bool

    def args(self) -> Dict[str, Any]:
        return parse_tool_args(self.tool_call_args_json)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fullText": self.full_text,
            "toolCallName": self.tool_call_name,
            "toolCallArgsJson": self.tool_call_args_json,
            "acknowledged": self.acknowledged,
        }


MessageInput = Union[ChatMessage, Dict[str, Any]]


def partition_messages(messages: Sequence[MessageInput]):
    """(system, other) with relative order kept inside each group."""
    normalized = [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in messages]
    system = [m for m in normalized if m.role == "system"]
    other = [m for m in normalized if m.role != "system"]
    return system, other


def expand_messages(messages: Sequence[ChatMessage], chunk_size: int, chunking_enabled: bool = True) -> List[ChatMessage]:
    """Split oversized messages into '[CHUNK i/n] '-tagged sub-messages of the same role."""
    expanded: List[ChatMessage] = []
    for m in messages:
        if chunking_enabled and len(m.content) > chunk_size:
            parts = split_preserve_words(m.content, chunk_size)
            for i, part in enumerate(parts):
                expanded.append(ChatMessage(role=m.role, content=chunk_tag(i + 1, len(parts)) + part))
        else:
            expanded.append(m)
    return expanded


class ChunkedToolCallDriver:
    """
    Stateless entry point; every run() builds a fresh _DriverRun.
    """

    def __init__(self,
                 client: ModelStreamClient,
                 emitter: Optional[StreamEventSink] = None,
                 config: Optional[DriverConfig] = None):
        self.client = client
        self.emitter = emitter
        self.config = config or DriverConfig()

    async def run(self,
                  messages: Sequence[MessageInput],
                  tool_schemas: Optional[Sequence[ToolSchema]] = None,
                  session_id: Optional[str] = None,
                  config: Optional[DriverConfig] = None) -> DriverResult:
        run = _DriverRun(
            client=self.client,
            emitter=self.emitter,
            config=config or self.config,
            tools=list(tool_schemas) if tool_schemas else list(PROJECT_TOOLS),
            session_id=session_id,
        )
        return await run.execute(messages)


@dataclass
class _DriverRun:
    client: ModelStreamClient
    emitter: Optional[StreamEventSink]
    config: DriverConfig
    tools: List[ToolSchema]
    session_id: Optional[str]

    state: DriverState = DriverState.idle
    acknowledged: bool = False
    full_text: str = ""
    tool_name: str = ""
    args_parts: List[str] = field(default_factory=list)

    # ---------- emission ----------

    async def _emit(self, event: StreamEvent):
        if self.emitter is None or not self.session_id:
            return
        name = f"{self.config.event_prefix}:{event.kind}"
        try:
            await self.emitter.emit(name, event.payload(), self.session_id)
        except Exception as e:
            logger.error(f"[ChunkedToolCallDriver] emit '{name}' to {self.session_id} failed: {e}")

    async def _warn(self, message: str):
        logger.warning(f"[ChunkedToolCallDriver] {message}")
        await self._emit(WarningEvent(message=message))

    # ---------- model calls ----------

    async def _stream(self, phase: str, payload: List[ChatMessage], on_delta, **kwargs):
        async def _drain():
            async for delta in self.client.create_streaming_completion(payload, **kwargs):
                await on_delta(delta)

        timeout = self.config.call_timeout_s
        if not timeout:
            await _drain()
            return
        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
        except asyncio.TimeoutError as e:
            err = mk_llm_error(
                TimeoutError(f"{phase} call exceeded {timeout}s"),
                stage="timeout",
                service_name="ChunkedToolCallDriver",
                provider=getattr(self.client, "provider", None),
                model_name=getattr(self.client, "model", None),
                retryable=True,
                context={"phase": phase, "session_id": self.session_id},
            )
            logger.error(f"[ChunkedToolCallDriver] {phase} call timed out after {timeout}s")
            raise ServiceException(err) from e

    # ---------- phases ----------

    async def execute(self, messages: Sequence[MessageInput]) -> DriverResult:
        system, other = partition_messages(messages)
        expanded = expand_messages(other, self.config.chunk_size, self.config.chunking_enabled)
        logger.info(f"[ChunkedToolCallDriver] session={self.session_id} "
                    f"system={len(system)} expanded={len(expanded)} require_ack={self.config.require_ack}")

        self.state = DriverState.chunk_sending
        chunk_system = list(system)
        if self.config.ack_instruction:
            chunk_system.append(ChatMessage.system(self.config.ack_instruction))
        total = len(expanded)
        for i in range(total):
            await self._chunk_call(i, total, chunk_system + expanded[:i + 1])

        self.state = DriverState.final_sending
        await self._final_call(system + expanded + [ChatMessage.user(FINAL_INSTRUCTION)])

        result = await self._synthesize()
        self.state = DriverState.done
        await self._emit(DoneEvent(
            toolCallName=result.tool_call_name,
            toolCallArgs=result.tool_call_args_json,
            fullText=result.full_text,
            acknowledged=result.acknowledged,
        ))
        return result

    async def _chunk_call(self, index: int, total: int, payload: List[ChatMessage]):
        running = []

        async def on_delta(delta: ModelDelta):
            if not delta.text:
                return
            running.append(delta.text)
            await self._emit(TextChunkEvent(text=delta.text, index=index, total=total))
            if not self.acknowledged:
                m = ACK_PATTERN.search("".join(running))
                if m:
                    self.acknowledged = True
                    logger.info(f"[ChunkedToolCallDriver] acknowledged at chunk {index + 1}/{total}: '{m.group(0)}'")
                    await self._emit(AcknowledgmentEvent(index=index, total=total, matchedText=m.group(0)))

        await self._stream(
            f"chunk {index + 1}/{total}", payload, on_delta,
            tools=None,
            tool_choice="none",
            max_tokens=min(self.config.chunk_max_tokens, self.config.max_tokens),
            temperature=self.config.temperature,
        )
        if self.config.require_ack and not self.acknowledged:
            await self._warn(f"No acknowledgement for chunk {index + 1}/{total}. Proceeding to next chunk anyway.")

    async def _final_call(self, payload: List[ChatMessage]):
        async def on_delta(delta: ModelDelta):
            if delta.text:
                self.full_text += delta.text
                await self._emit(TextChunkEvent(text=delta.text, final=True))
            if delta.tool_name and not self.tool_name:
                self.tool_name = delta.tool_name
                await self._emit(ToolNameEvent(name=self.tool_name))
            if delta.tool_args:
                self.args_parts.append(delta.tool_args)
                await self._emit(ToolArgsChunkEvent(text=delta.tool_args))

        await self._stream(
            "final", payload, on_delta,
            tools=self.tools,
            tool_choice="auto",
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

    # ---------- fallback synthesis ----------

    async def _default_args(self, name: str, reason: str) -> str:
        family = "empty operations" if is_file_emission_tool(name) else "fallback module tree"
        await self._warn(f"No args detected; defaulting to {family}.")
        return default_tool_args(name, reason)

    async def _synthesize(self) -> DriverResult:
        name = self.tool_name
        args = "".join(self.args_parts)

        if not name and not args.strip():
            recovered = tool_call_from_parsed(extract_json_from_text(self.full_text))
            if recovered is not None:
                name, args = recovered
                await self._emit(ToolNameEvent(name=name))
                await self._emit(ToolArgsChunkEvent(text=args))
                await self._warn(f"Tool call '{name}' recovered from message text.")

        if not name:
            name = infer_tool_name(self.full_text, [t.name for t in self.tools]) or UNKNOWN_TOOL
            await self._warn(f"No explicit tool call detected; inferred '{name}'")

        if self.config.require_ack and not self.acknowledged:
            if args.strip():
                await self._warn("No acknowledgement detected before final tool args; accepting buffered args anyway.")
            else:
                args = await self._default_args(name, "no output from model")

        if not args.strip():
            args = await self._default_args(name, "empty buffer")

        if not is_valid_json(args):
            repaired = extract_json_from_text(args)
            if repaired is not None:
                args = json.dumps(repaired)
                await self._warn("Tool args were not valid JSON; using the JSON object found inside them.")
            else:
                await self._warn("Tool args were not valid JSON; replacing them with the default payload.")
                args = default_tool_args(name, "invalid arguments")

        return DriverResult(
            full_text=self.full_text,
            tool_call_name=name,
            tool_call_args_json=args,
            acknowledged=self.acknowledged,
        )
