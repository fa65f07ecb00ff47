# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# chat/protocol.py
"""
Wire records carried over broker topics between the Socket.IO layer and
server-side producers (driver emitters, build orchestrator).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class _ProtoBase(BaseModel):
    """Base that exposes `.dump_model()` (alias of model_dump)."""
    def dump_model(self) -> Dict[str, Any]:
        return self.model_dump()


class ClientEventPayload(_ProtoBase):
    """What a browser sends with `event_to_server`."""
    model_config = ConfigDict(extra="ignore")

    event: str
    payload: Any = None
    room: Optional[str] = None


class ClientEventRecord(_ProtoBase):
    """Client-originated event republished onto '<prefix>.<event>'."""
    event: str
    payload: Any = None
    sessionId: str
    room: Optional[str] = None
    timestamp: str = Field(default_factory=_iso_now)


class OutboundEvent(_ProtoBase):
    """
    Server -> client delivery request. Routing: socketId, else room, else broadcast.
    """
    event: str
    payload: Any = None
    room: Optional[str] = None
    socketId: Optional[str] = None
    timestamp: str = Field(default_factory=_iso_now)
