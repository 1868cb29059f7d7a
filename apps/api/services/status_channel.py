"""Per-owner publish/subscribe channel for processing status events.

The channel sits on top of a transport (in-process or Redis pub/sub). While the
transport is mid-handshake, new subscriptions wait in a pending queue and are
flushed the moment the transport reports ready or reconnected, so a client that
subscribes in the same tick it connects still receives the first update.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

STATUS_EVENT_NAME = "statusUpdate"
DEFAULT_CHANNEL_PREFIX = "vsp:status"

Listener = Callable[["StatusEvent"], None]
ReadyCallback = Callable[[bool], None]
MessageCallback = Callable[[str, str], None]
DisconnectCallback = Callable[[], None]


class StatusEvent(BaseModel):
    """Progress notification; serialized with camelCase wire names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    record_id: str
    state: str
    progress: int
    thumbnail_handle: Optional[str] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
    verdict: Optional[str] = None
    message: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class StatusTransport(ABC):
    """Moves serialized events between publishers and the subscribing process."""

    @abstractmethod
    async def start(
        self,
        on_ready: ReadyCallback,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> None:
        ...

    @abstractmethod
    async def publish(self, owner_id: str, payload: str) -> None:
        ...

    async def stop(self) -> None:
        return None


class InMemoryStatusTransport(StatusTransport):
    """Single-process transport. Publishes made while disconnected are dropped."""

    def __init__(self, auto_ready: bool = True):
        self.auto_ready = auto_ready
        self.connected = False
        self._has_been_ready = False
        self._on_ready: Optional[ReadyCallback] = None
        self._on_message: Optional[MessageCallback] = None
        self._on_disconnect: Optional[DisconnectCallback] = None

    async def start(self, on_ready, on_message, on_disconnect) -> None:
        self._on_ready = on_ready
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        if self.auto_ready:
            self.mark_ready()

    def mark_ready(self) -> None:
        if self._on_ready is None:
            raise RuntimeError("Transport has not been started")
        self.connected = True
        reconnected = self._has_been_ready
        self._has_been_ready = True
        self._on_ready(reconnected)

    def mark_disconnected(self) -> None:
        self.connected = False
        if self._on_disconnect is not None:
            self._on_disconnect()

    async def publish(self, owner_id: str, payload: str) -> None:
        if not self.connected or self._on_message is None:
            logger.debug("Status transport not connected; dropping event for %s", owner_id)
            return
        self._on_message(owner_id, payload)

    async def stop(self) -> None:
        self.connected = False


class RedisStatusTransport(StatusTransport):
    """Cross-process transport over Redis pub/sub with automatic reconnects."""

    def __init__(
        self,
        redis_url: str,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        reconnect_delay_seconds: float = 1.0,
        max_reconnect_delay_seconds: float = 5.0,
    ):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.max_reconnect_delay_seconds = max_reconnect_delay_seconds
        self._publisher: Optional[redis.Redis] = None
        self._listener_task: Optional[asyncio.Task] = None

    def _channel_for(self, owner_id: str) -> str:
        return f"{self.channel_prefix}:{owner_id}"

    def _owner_from_channel(self, channel: str) -> str:
        return channel[len(self.channel_prefix) + 1:]

    async def publish(self, owner_id: str, payload: str) -> None:
        if self._publisher is None:
            self._publisher = redis.from_url(self.redis_url, decode_responses=True)
        await self._publisher.publish(self._channel_for(owner_id), payload)

    async def start(self, on_ready, on_message, on_disconnect) -> None:
        self._listener_task = asyncio.create_task(self._listen_forever(on_ready, on_message, on_disconnect))

    async def _listen_forever(self, on_ready, on_message, on_disconnect) -> None:
        delay = self.reconnect_delay_seconds
        has_been_ready = False
        while True:
            client = redis.from_url(self.redis_url, decode_responses=True)
            pubsub = client.pubsub()
            try:
                await pubsub.psubscribe(f"{self.channel_prefix}:*")
                on_ready(has_been_ready)
                has_been_ready = True
                delay = self.reconnect_delay_seconds
                async for message in pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    on_message(self._owner_from_channel(str(message.get("channel", ""))), message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Status transport connection lost: %s", exc)
            finally:
                try:
                    await pubsub.aclose()
                    await client.aclose()
                except Exception:
                    logger.debug("Status transport cleanup failed", exc_info=True)
            on_disconnect()
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay_seconds)

    async def stop(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._publisher is not None:
            await self._publisher.aclose()
            self._publisher = None


@dataclass(eq=False)
class _Subscription:
    owner_id: str
    listener: Listener
    closed: bool = field(default=False)


class StatusChannel:
    """Delivers status events to the listeners registered for an owner."""

    def __init__(self, transport: StatusTransport):
        self.transport = transport
        self._lock = threading.Lock()
        self._ready = False
        self._listeners: Dict[str, List[_Subscription]] = {}
        self._pending: List[_Subscription] = []

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def listener_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(owner_id, []))

    async def start(self) -> None:
        await self.transport.start(self._on_ready, self._on_message, self._on_disconnect)

    async def stop(self) -> None:
        await self.transport.stop()
        with self._lock:
            self._ready = False

    async def publish(self, owner_id: str, event: StatusEvent) -> None:
        await self.transport.publish(owner_id, event.model_dump_json(by_alias=True, exclude_none=True))

    def subscribe(self, owner_id: str, listener: Listener) -> Callable[[], None]:
        subscription = _Subscription(owner_id=owner_id, listener=listener)
        with self._lock:
            if self._ready:
                self._listeners.setdefault(owner_id, []).append(subscription)
            else:
                self._pending.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription.closed:
                    return
                subscription.closed = True
                bucket = self._listeners.get(owner_id)
                if bucket is not None:
                    bucket[:] = [sub for sub in bucket if sub is not subscription]
                    if not bucket:
                        self._listeners.pop(owner_id, None)
                self._pending = [sub for sub in self._pending if sub is not subscription]

        return unsubscribe

    def _on_ready(self, reconnected: bool) -> None:
        with self._lock:
            self._ready = True
            flushed = self._pending
            self._pending = []
            for subscription in flushed:
                self._listeners.setdefault(subscription.owner_id, []).append(subscription)
        logger.info(
            "Status transport %s; flushed %d pending subscription(s)",
            "reconnected" if reconnected else "ready",
            len(flushed),
        )

    def _on_disconnect(self) -> None:
        with self._lock:
            self._ready = False
        logger.info("Status transport disconnected")

    def _on_message(self, owner_id: str, payload: str) -> None:
        try:
            event = StatusEvent.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Dropping malformed status event for %s: %s", owner_id, exc)
            return

        with self._lock:
            targets = list(self._listeners.get(owner_id, []))
        if not targets:
            logger.debug("No subscribers for %s; status event dropped", owner_id)
            return

        for subscription in targets:
            if subscription.closed:
                continue
            try:
                subscription.listener(event)
            except Exception:
                logger.exception("Status listener for %s failed", owner_id)
