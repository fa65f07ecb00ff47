# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# chat/api/socketio/connection_manager.py
"""
Socket.IO <-> broker bridge.

Inbound:  client `event_to_server` {event, payload, room?}
          -> publish ClientEventRecord to '<prefix>.<event with whitespace as _>'
Outbound: broker message whose value has {event, payload, socketId?, room?}
          -> emit to that sid (if connected), else to the room, else broadcast.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import socketio
from pydantic import ValidationError

from builder_ai_app.apps.chat.protocol import ClientEventPayload, ClientEventRecord, OutboundEvent
from builder_ai_app.config import get_settings
from builder_ai_app.infra.orchestration.app.communicator import BrokerClient, BrokerMessage

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


class ConnectionManager:
    """
    Owns the Socket.IO server and binds broker topics to client emissions.
    Holds no session state beyond the Socket.IO manager's own connection table.
    """

    def __init__(
        self,
        broker: BrokerClient,
        *,
        sio: Optional[socketio.AsyncServer] = None,
        allowed_origins: Any = "*",
        topic_prefix: Optional[str] = None,
        namespace: str = "/",
        redis_manager_url: Optional[str] = None,
        outbound_topic: Optional[str] = None,
    ):
        self.broker = broker
        self.allowed_origins = allowed_origins
        self.topic_prefix = topic_prefix or get_settings().BROKER_TOPIC_PREFIX
        self.namespace = namespace
        self.redis_manager_url = redis_manager_url
        # where server-side producers publish deliverable events
        self.outbound_topic = outbound_topic or next(iter(get_settings().bind_topics), None) or self.topic_for("outbound")

        self.sio = sio or self._create_socketio_server()
        self._bound_topics: List[str] = []
        self._setup_event_handlers()

    # ---------- Socket.IO core ----------

    def _create_socketio_server(self) -> socketio.AsyncServer:
        kwargs: Dict[str, Any] = dict(
            cors_allowed_origins=self.allowed_origins,
            async_mode="asgi",
            logger=False,
            engineio_logger=False,
        )
        if self.redis_manager_url:
            kwargs["client_manager"] = socketio.AsyncRedisManager(self.redis_manager_url)
        return socketio.AsyncServer(**kwargs)

    def _setup_event_handlers(self):
        ns = self.namespace

        @self.sio.on("connect", namespace=ns)
        async def _on_connect(sid, environ, auth=None):
            logger.info(f"[ConnectionManager] client connected: {sid}")

        @self.sio.on("disconnect", namespace=ns)
        async def _on_disconnect(sid, reason=None):
            logger.info(f"[ConnectionManager] client disconnected: {sid} ({reason})")

        @self.sio.on("event_to_server", namespace=ns)
        async def _on_event_to_server(sid, msg=None):
            return await self.handle_client_event(sid, msg)

        @self.sio.on("join", namespace=ns)
        async def _on_join(sid, room=None):
            await self.join_room(sid, room)

        @self.sio.on("leave", namespace=ns)
        async def _on_leave(sid, room=None):
            await self.leave_room(sid, room)

    # ---------- topics ----------

    def topic_for(self, event: str) -> str:
        return f"{self.topic_prefix}.{_WS_RE.sub('_', event.strip())}"

    @property
    def bound_topics(self) -> List[str]:
        return list(self._bound_topics)

    # ---------- inbound: client -> broker ----------

    async def handle_client_event(self, sid: str, msg: Any) -> Optional[str]:
        """Validate and republish a client event. Returns the topic, or None when dropped."""
        try:
            if isinstance(msg, str):
                msg = json.loads(msg)
            data = ClientEventPayload.model_validate(msg)
        except (ValueError, ValidationError) as e:
            logger.warning(f"[ConnectionManager] invalid event_to_server payload from {sid}: {e}")
            return None
        if not data.event.strip():
            logger.warning(f"[ConnectionManager] event_to_server without event name from {sid}")
            return None

        topic = self.topic_for(data.event)
        record = ClientEventRecord(event=data.event, payload=data.payload, sessionId=sid, room=data.room)
        try:
            await self.broker.publish(topic, record.dump_model(), key=sid)
        except Exception as e:
            logger.error(f"[ConnectionManager] publish to '{topic}' failed: {e}")
            return None
        return topic

    async def publish_event(self, event: str, payload: Any = None, *,
                            room: Optional[str] = None,
                            session_id: Optional[str] = None,
                            topic: Optional[str] = None) -> str:
        """Server-side publish of a deliverable event; raises on broker failure."""
        topic = topic or self.topic_for(event)
        out = OutboundEvent(event=event, payload=payload, room=room, socketId=session_id)
        await self.broker.publish(topic, out.dump_model(), key=session_id or room)
        return topic

    # ---------- outbound: broker -> client ----------

    async def route_message(self, message: BrokerMessage) -> bool:
        """Broker handler: deliver a message to its target. Returns False when dropped."""
        value = message.value
        if value is None or value == "":
            return False
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                logger.warning(f"[ConnectionManager] non-JSON value on '{message.topic}', dropped")
                return False
        if not isinstance(value, dict) or not value.get("event"):
            logger.warning(f"[ConnectionManager] message on '{message.topic}' missing `event` field, dropped: {value!r}")
            return False
        return await self.emit_by_message(value)

    async def emit_by_message(self, message: Dict[str, Any]) -> bool:
        event = message["event"]
        payload = message.get("payload")
        socket_id = message.get("socketId")
        room = message.get("room")

        if socket_id:
            if not self.is_connected(socket_id):
                logger.warning(f"[ConnectionManager] socket {socket_id} not connected; '{event}' dropped")
                return False
            await self.sio.emit(event, payload, to=socket_id, namespace=self.namespace)
            return True
        if room:
            await self.sio.emit(event, payload, room=room, namespace=self.namespace)
            return True
        await self.sio.emit(event, payload, namespace=self.namespace)
        return True

    def is_connected(self, sid: str) -> bool:
        try:
            return bool(self.sio.manager.is_connected(sid, self.namespace))
        except Exception as e:
            logger.warning(f"[ConnectionManager] connection lookup for {sid} failed: {e}")
            return False

    async def bind_topic(self, topic: str):
        await self.broker.subscribe(topic, self.route_message)
        self._bound_topics.append(topic)
        logger.info(f"[ConnectionManager] bound topic '{topic}' to sockets")

    async def bind_topics(self, topics: Iterable[str]):
        for topic in topics:
            try:
                await self.bind_topic(topic)
            except Exception as e:
                logger.error(f"[ConnectionManager] failed to bind topic '{topic}': {e}")

    # ---------- direct emission ----------

    async def emit_to_session(self, session_id: str, event: str, payload: Any = None) -> bool:
        return await self.emit_by_message({"event": event, "payload": payload, "socketId": session_id})

    async def emit_to_room(self, room: str, event: str, payload: Any = None):
        await self.sio.emit(event, payload, room=room, namespace=self.namespace)

    async def broadcast(self, event: str, payload: Any = None):
        await self.sio.emit(event, payload, namespace=self.namespace)

    # ---------- rooms ----------

    async def join_room(self, sid: str, room: Optional[str]) -> bool:
        if not room:
            logger.warning(f"[ConnectionManager] join without room from {sid}")
            return False
        try:
            await self.sio.enter_room(sid, room, namespace=self.namespace)
            logger.info(f"[ConnectionManager] {sid} joined '{room}'")
            return True
        except Exception as e:
            logger.warning(f"[ConnectionManager] join room error ({sid} -> '{room}'): {e}")
            return False

    async def leave_room(self, sid: str, room: Optional[str]) -> bool:
        if not room:
            logger.warning(f"[ConnectionManager] leave without room from {sid}")
            return False
        try:
            await self.sio.leave_room(sid, room, namespace=self.namespace)
            logger.info(f"[ConnectionManager] {sid} left '{room}'")
            return True
        except Exception as e:
            logger.warning(f"[ConnectionManager] leave room error ({sid} -> '{room}'): {e}")
            return False

    # ---------- lifecycle ----------

    async def close(self):
        try:
            await self.sio.shutdown()
        except Exception as e:
            logger.warning(f"[ConnectionManager] close error: {e}")

    # ---------- ASGI app ----------

    def get_asgi_app(self):
        return socketio.ASGIApp(self.sio)
