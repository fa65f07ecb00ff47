# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# builder_ai_app/infra/orchestration/app/communicator.py
import asyncio
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import redis.asyncio as aioredis

from builder_ai_app.config import get_settings

# Logging
logger = logging.getLogger("BrokerClient")


@dataclass
class BrokerMessage:
    """
    Normalized inbound message. Owned by the broker for the duration of dispatch;
    handlers must not keep it after they return.
    """
    topic: str
    # Redis has no partitions: the channel name as received
    partition_key: str
    key: Optional[str]
    value: Any
    headers: Dict[str, str] = field(default_factory=dict)


Handler = Callable[[BrokerMessage], Union[Awaitable[None], None]]

_ENVELOPE_KEYS = {"key", "headers", "value"}


def _to_text(data: Any) -> Any:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8", errors="replace")
    return data


def parse_value(value: Any) -> Any:
    """JSON-decode strings; anything unparseable stays the raw string."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def encode_envelope(value: Any, key: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> str:
    """
    Wire format (JSON):
        {"key": str|null, "headers": {str: str}, "value": str}
    `value` is JSON-encoded unless it already is a string.
    """
    if not isinstance(value, str):
        value = json.dumps(value, default=str)
    return json.dumps({
        "key": key,
        "headers": {str(k): str(v) for k, v in (headers or {}).items()},
        "value": value,
    })


def decode_message(channel: Any, data: Any) -> BrokerMessage:
    topic = str(_to_text(channel))
    raw = _to_text(data)
    key, headers, value = None, {}, raw

    envelope = None
    if isinstance(raw, str):
        try:
            envelope = json.loads(raw)
        except ValueError:
            envelope = None
    elif isinstance(raw, dict):
        envelope = raw

    if isinstance(envelope, dict) and "value" in envelope and set(envelope) <= _ENVELOPE_KEYS:
        key = envelope.get("key")
        headers = {str(k): str(v) for k, v in (envelope.get("headers") or {}).items()}
        value = envelope.get("value")

    return BrokerMessage(
        topic=topic,
        partition_key=topic,
        key=str(key) if key is not None else None,
        value=parse_value(value),
        headers=headers,
    )


class BrokerClient:
    """
    Topic publish/subscribe over Redis pub/sub.

    - publish() is a thin producer call; failures raise to the caller.
    - subscribe() only registers a handler and tracks the topic.
    - start() connects the consumer, subscribes all tracked topics and runs the listener (idempotent).
    - subscribe() on a new topic while running schedules a debounced refresh:
      stop listener -> subscribe(all topics) -> start listener. Bursts collapse into one refresh.
    - Each inbound message is dispatched in its own task and fans out to all of the
      topic's handlers concurrently; a failing handler is logged and does not affect
      the others. Stopping the listener never cancels a dispatch already started.
    - A listener that dies on a transport error drops its pubsub and schedules a refresh.
    """

    # ---------- construction ----------

    def __init__(
            self,
            redis_url: Optional[str] = None,
            *,
            client_id: Optional[str] = None,
            restart_debounce_s: Optional[float] = None,
            redis_factory: Optional[Callable[[str], Any]] = None,
    ):
        settings = get_settings()
        self.redis_url = redis_url or settings.REDIS_URL
        self.client_id = client_id or settings.BROKER_CLIENT_ID
        self.restart_debounce_s = (settings.BROKER_RESTART_DEBOUNCE_S
                                   if restart_debounce_s is None else restart_debounce_s)
        self._redis_factory = redis_factory or (lambda url: aioredis.Redis.from_url(url))

        self._producer: Optional[aioredis.Redis] = None
        self._consumer: Optional[aioredis.Redis] = None
        self._pubsub: Optional[aioredis.client.PubSub] = None
        self._listen_task: Optional[asyncio.Task] = None
        # one task per inbound message; outlives listener restarts
        self._dispatch_tasks: Set[asyncio.Task] = set()

        # topic -> handlers (append-only); topics in registration order
        self._handlers: Dict[str, List[Handler]] = {}
        self._topics: List[str] = []

        self._running = False
        # debounce timer; cancellable until the quiet period ends
        self._restart_task: Optional[asyncio.Task] = None
        # refresh past its quiet period, awaited by disconnect()
        self._refresh_task: Optional[asyncio.Task] = None
        self._restarting = False
        self._restart_pending = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def topics(self) -> List[str]:
        return list(self._topics)

    def handlers_for(self, topic: str) -> List[Handler]:
        return list(self._handlers.get(topic, ()))

    # ---------- producer ----------

    async def connect_producer(self):
        if self._producer is not None:
            return
        producer = self._redis_factory(self.redis_url)
        await producer.ping()
        self._producer = producer
        logger.info(f"[{self.client_id}] producer connected")

    async def publish(self, topic: str, value: Any, key: Optional[str] = None,
                      headers: Optional[Dict[str, str]] = None) -> int:
        """Publish one message; returns the number of receivers Redis reports."""
        await self.connect_producer()
        payload = encode_envelope(value, key=key, headers=headers)
        receivers = await self._producer.publish(topic, payload)
        logger.debug(f"[{self.client_id}] published to '{topic}' key={key} receivers={receivers}")
        return receivers

    # ---------- consumer ----------

    async def subscribe(self, topic: str, handler: Handler):
        self._handlers.setdefault(topic, []).append(handler)
        if topic in self._topics:
            return
        self._topics.append(topic)
        logger.info(f"[{self.client_id}] tracking topic '{topic}'")
        if self._running:
            self._schedule_restart()

    async def start(self):
        if self._running:
            return
        await self._ensure_consumer()
        await self._subscribe_all()
        self._run_consumer()
        logger.info(f"[{self.client_id}] consumer started on {self._topics}")

    async def _ensure_consumer(self):
        if self._consumer is None:
            self._consumer = self._redis_factory(self.redis_url)
        if self._pubsub is None:
            self._pubsub = self._consumer.pubsub(ignore_subscribe_messages=True)

    async def _subscribe_all(self):
        if self._topics:
            await self._pubsub.subscribe(*self._topics)

    def _run_consumer(self):
        self._listen_task = asyncio.create_task(self._listen_loop(self._pubsub),
                                                name=f"{self.client_id}-listener")
        self._running = True

    async def _listen_loop(self, pubsub):
        try:
            async for msg in pubsub.listen():
                if msg.get("type") not in ("message", "pmessage"):
                    continue
                try:
                    message = decode_message(msg.get("channel"), msg.get("data"))
                except Exception as e:
                    logger.error(f"[{self.client_id}] undecodable message on {msg.get('channel')!r}: {e}")
                    continue
                self._spawn_dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.client_id}] listener error: {e}")
            if self._running and pubsub is self._pubsub:
                # rebuild the pubsub on the next refresh
                self._pubsub = None
                await self._aclose(pubsub, "pubsub")
                if self._running:
                    self._schedule_restart()

    def _spawn_dispatch(self, message: BrokerMessage):
        task = asyncio.create_task(self._dispatch(message), name=f"{self.client_id}-dispatch")
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, message: BrokerMessage):
        handlers = self.handlers_for(message.topic)
        if not handlers:
            logger.debug(f"[{self.client_id}] no handlers for '{message.topic}'")
            return
        await asyncio.gather(*(self._invoke(h, message) for h in handlers))

    async def _invoke(self, handler: Handler, message: BrokerMessage):
        try:
            res = handler(message)
            if inspect.isawaitable(res):
                await res
        except Exception:
            logger.exception(f"[{self.client_id}] handler {getattr(handler, '__name__', handler)!r} "
                             f"failed on '{message.topic}'")

    # ---------- debounced refresh ----------

    def _schedule_restart(self):
        pending = self._restart_task
        if pending is not None and not pending.done():
            pending.cancel()
        self._restart_task = asyncio.create_task(self._delayed_restart(),
                                                 name=f"{self.client_id}-refresh")

    async def _delayed_restart(self):
        await asyncio.sleep(self.restart_debounce_s)
        # past the quiet period: no longer cancellable by new subscriptions
        me = asyncio.current_task()
        if self._restart_task is me:
            self._restart_task = None
        self._refresh_task = me
        try:
            await self._restart_consumer()
        finally:
            if self._refresh_task is me:
                self._refresh_task = None

    async def _restart_consumer(self):
        if not self._running:
            return
        if self._restarting:
            self._restart_pending = True
            logger.info(f"[{self.client_id}] refresh in flight; one more queued")
            return

        self._restarting = True
        failed = False
        try:
            logger.info(f"[{self.client_id}] refreshing subscriptions: {self._topics}")
            try:
                await self._stop_listener_task()
            except Exception as e:
                logger.warning(f"[{self.client_id}] failed to stop listener, continuing: {e}")
            if not self._running:
                return
            await self._ensure_consumer()
            await self._subscribe_all()
            if not self._running:
                return
            self._run_consumer()
        except Exception as e:
            logger.error(f"[{self.client_id}] subscription refresh failed, retrying: {e}")
            failed = True
        finally:
            self._restarting = False

        if failed and self._running and self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            await self._aclose(pubsub, "pubsub")
        if (failed or self._restart_pending) and self._running:
            self._restart_pending = False
            self._schedule_restart()

    async def _stop_listener_task(self):
        task, self._listen_task = self._listen_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ---------- shutdown ----------

    async def _aclose(self, resource, what: str):
        try:
            await resource.aclose()
        except Exception as e:
            logger.warning(f"[{self.client_id}] failed to close {what}: {e}")

    async def disconnect(self):
        """
        Best-effort: every step is attempted and failures are only logged.
        A refresh past its quiet period is allowed to finish (it sees the cleared
        running flag and stops); in-flight dispatch is drained, not cancelled.
        """
        self._running = False
        try:
            task, self._restart_task = self._restart_task, None
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self._restart_pending = False

            refresh = self._refresh_task
            if refresh is not None and refresh is not asyncio.current_task() and not refresh.done():
                try:
                    await refresh
                except Exception as e:
                    logger.warning(f"[{self.client_id}] refresh failed during disconnect: {e}")

            try:
                await self._stop_listener_task()
            except Exception as e:
                logger.warning(f"[{self.client_id}] failed to stop listener: {e}")

            if self._dispatch_tasks:
                await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

            if self._pubsub is not None:
                await self._aclose(self._pubsub, "pubsub")
                self._pubsub = None
            if self._consumer is not None:
                await self._aclose(self._consumer, "consumer")
                self._consumer = None
            if self._producer is not None:
                await self._aclose(self._producer, "producer")
                self._producer = None
        finally:
            self._running = False
            logger.info(f"[{self.client_id}] disconnected")
