# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# chat/emitters.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from builder_ai_app.apps.chat.api.socketio.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class SessionEmitter:
    """
    StreamEventSink that emits straight to one live Socket.IO session in this process.
    """

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def emit(self, event: str, payload: Dict[str, Any], session_id: str) -> None:
        await self.connections.emit_to_session(session_id, event, payload)


class BrokerRelayEmitter:
    """
    StreamEventSink that publishes each event onto a broker topic with `socketId`,
    so whichever process has the topic bound (and holds the socket) delivers it.
    """

    def __init__(self, connections: ConnectionManager, *, topic: Optional[str] = None):
        self.connections = connections
        self.topic = topic or connections.outbound_topic

    async def emit(self, event: str, payload: Dict[str, Any], session_id: str) -> None:
        await self.connections.publish_event(event, payload, session_id=session_id, topic=self.topic)
        logger.debug(f"[BrokerRelayEmitter] '{event}' -> {self.topic} for {session_id}")
