# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/llm/llm_data_model.py

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Any, Dict, Literal, ClassVar, Protocol
from pydantic import BaseModel, Field


class AIProviderName(str, Enum):
    open_ai = "openai"
    anthropic = "anthropic"


class ChatMessage(BaseModel):
    """
    One conversation message.
      {
        role: "system" | "user" | "assistant";
        content: string;
      }
    """
    role: Literal["system", "user", "assistant"]
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role="assistant", content=content)


class ToolSchema(BaseModel):
    """Provider-neutral function/tool definition (JSON-schema parameters)."""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass
class ModelDelta:
    """
    Canonical streaming delta. Provider adapters normalize their chunks/events
    into this shape; the driver never sees provider-specific structures.
    """
    text: Optional[str] = None
    tool_name: Optional[str] = None
    tool_args: Optional[str] = None


#
# Stream events (emitted as "<prefix>:<kind>")
#
class StreamEvent(BaseModel):
    kind: ClassVar[str] = ""

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TextChunkEvent(StreamEvent):
    """Incremental text. Chunk-phase pieces carry index/total; final-phase pieces carry final=True."""
    kind: ClassVar[str] = "chunk"
    text: str
    index: Optional[int] = None
    total: Optional[int] = None
    final: bool = False


class AcknowledgmentEvent(StreamEvent):
    kind: ClassVar[str] = "ack"
    index: int
    total: int
    matchedText: str


class WarningEvent(StreamEvent):
    kind: ClassVar[str] = "warning"
    message: str


class ToolNameEvent(StreamEvent):
    kind: ClassVar[str] = "tool_name"
    name: str


class ToolArgsChunkEvent(StreamEvent):
    kind: ClassVar[str] = "tool_args"
    text: str


class DoneEvent(StreamEvent):
    kind: ClassVar[str] = "done"
    toolCallName: str
    toolCallArgs: str
    fullText: str
    acknowledged: bool


class StreamEventSink(Protocol):
    """Anything that can deliver a named event with a payload to one session."""

    async def emit(self, event: str, payload: Dict[str, Any], session_id: str) -> None:
        ...
