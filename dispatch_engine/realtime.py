"""
Realtime fan-out.

Channels: `order:<order_id>` (status changes, assignments, location pings of the
leased courier) and `courier:<courier_id>` (that courier's pings). Delivery is
at-least-once; a Subscription drops events whose id it has already yielded.
Event ids are the ping id for locations and `<order>:<from>-><to>@<commit time>`
for transitions, so a redelivered commit dedupes while a repeated pair does not.

Backends: Redis Streams (XADD/XREAD, resumable via last event cursor) or an
in-process broker.
"""
import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from typing import Any

import redis.asyncio as redis
from pydantic import BaseModel, Field

from dispatch_engine.errors import ValidationError
from dispatch_engine.metrics import realtime_publish_failed_total
from dispatch_engine.models import LocationPing, Order, OrderStatus, utcnow

logger = logging.getLogger(__name__)

ORDER_SCOPE = "order"
COURIER_SCOPE = "courier"
STREAM_PREFIX = "realtime"


def order_channel(order_id: uuid.UUID) -> str:
    return f"{ORDER_SCOPE}:{order_id}"


def courier_channel(courier_id: uuid.UUID) -> str:
    return f"{COURIER_SCOPE}:{courier_id}"


def parse_channel(key: str) -> tuple[str, uuid.UUID]:
    scope, sep, raw_id = key.partition(":")
    if not sep or scope not in (ORDER_SCOPE, COURIER_SCOPE):
        raise ValidationError(f"Unknown channel {key!r}", field="channel")
    try:
        return scope, uuid.UUID(raw_id)
    except ValueError:
        raise ValidationError(f"Malformed channel id in {key!r}", field="channel") from None


class RealtimeEvent(BaseModel):
    event_id: str
    channel: str
    type: str
    resource_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=utcnow)
    cursor: str | None = None  # backend position, used for resumption


def status_event(order: Order, from_status: OrderStatus, event_type: str = "order.status_changed") -> RealtimeEvent:
    return RealtimeEvent(
        event_id=f"{order.id}:{from_status.value}->{order.status.value}@{order.updated_at.timestamp():.6f}",
        channel=order_channel(order.id),
        type=event_type,
        resource_id=str(order.id),
        payload={
            "from_status": from_status.value,
            "status": order.status.value,
            "courier_id": str(order.courier_id) if order.courier_id else None,
            "reason": order.status_reason,
        },
    )


def location_event(ping: LocationPing, channel: str) -> RealtimeEvent:
    return RealtimeEvent(
        event_id=f"ping:{ping.id}",
        channel=channel,
        type="courier.location",
        resource_id=str(ping.courier_id),
        payload=ping.model_dump(mode="json"),
        published_at=ping.created_at,
    )


class Subscription(ABC):
    """Async iterator over a channel's events, de-duplicated by event id."""

    def __init__(self, channel: str, remember: int = 1024):
        self.channel = channel
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._remember = remember
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> RealtimeEvent:
        while True:
            if self.closed:
                raise StopAsyncIteration
            event = await self._receive()
            if event is None:
                raise StopAsyncIteration
            if event.event_id in self._seen:
                logger.debug("realtime.duplicate_dropped channel=%s event_id=%s", self.channel, event.event_id)
                continue
            self._seen[event.event_id] = None
            if len(self._seen) > self._remember:
                self._seen.popitem(last=False)
            return event

    async def next_event(self, timeout: float | None = None) -> RealtimeEvent | None:
        """Next event, or None if nothing arrives within `timeout` seconds."""
        try:
            return await asyncio.wait_for(self.__anext__(), timeout)
        except (asyncio.TimeoutError, StopAsyncIteration):
            return None

    @abstractmethod
    async def _receive(self) -> RealtimeEvent | None: ...

    async def close(self) -> None:
        self.closed = True


class Broker(ABC):
    @abstractmethod
    async def publish(self, channel: str, event: RealtimeEvent) -> None: ...

    @abstractmethod
    async def open(self, channel: str, last_event_id: str | None = None) -> Subscription: ...

    async def publish_safely(self, channel: str, event: RealtimeEvent) -> None:
        """Publish, logging and swallowing failures so committed writes stay committed."""
        try:
            await self.publish(channel, event)
        except Exception:
            realtime_publish_failed_total.inc()
            logger.exception("realtime.publish_failed channel=%s event_id=%s", channel, event.event_id)


# -- in-process ------------------------------------------------------------


class _QueueSubscription(Subscription):
    def __init__(self, broker: "InMemoryBroker", channel: str):
        super().__init__(channel)
        self._broker = broker
        self.queue: asyncio.Queue[RealtimeEvent | None] = asyncio.Queue()

    async def _receive(self):
        return await self.queue.get()

    async def close(self) -> None:
        await super().close()
        self._broker._detach(self)
        self.queue.put_nowait(None)


class InMemoryBroker(Broker):
    def __init__(self) -> None:
        self._subscribers: dict[str, set[_QueueSubscription]] = {}
        self.published: list[RealtimeEvent] = []

    async def publish(self, channel, event):
        self.published.append(event)
        for sub in list(self._subscribers.get(channel, ())):
            sub.queue.put_nowait(event)

    async def open(self, channel, last_event_id=None):
        sub = _QueueSubscription(self, channel)
        self._subscribers.setdefault(channel, set()).add(sub)
        return sub

    def _detach(self, sub: _QueueSubscription) -> None:
        subs = self._subscribers.get(sub.channel)
        if subs is not None:
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.channel]


# -- Redis Streams ---------------------------------------------------------


class _StreamSubscription(Subscription):
    def __init__(self, r: redis.Redis, channel: str, stream: str, last_id: str, block_ms: int):
        super().__init__(channel)
        self._redis = r
        self._stream = stream
        self._last_id = last_id
        self._block_ms = block_ms
        self._buffer: list[RealtimeEvent] = []

    async def _receive(self):
        while not self._buffer:
            if self.closed:
                return None
            response = await self._redis.xread({self._stream: self._last_id}, count=50, block=self._block_ms)
            for _stream, entries in response or []:
                for entry_id, fields in entries:
                    self._last_id = entry_id
                    event = RealtimeEvent.model_validate_json(fields["event"])
                    event.cursor = entry_id
                    self._buffer.append(event)
        return self._buffer.pop(0)


class RedisStreamBroker(Broker):
    def __init__(self, r: redis.Redis, maxlen: int = 1000, block_ms: int = 15000):
        self._redis = r
        self._maxlen = maxlen
        self._block_ms = block_ms

    @staticmethod
    def stream_key(channel: str) -> str:
        return f"{STREAM_PREFIX}:{channel}"

    async def publish(self, channel, event):
        await self._redis.xadd(
            self.stream_key(channel),
            {"event": event.model_dump_json()},
            maxlen=self._maxlen,
            approximate=True,
        )

    async def open(self, channel, last_event_id=None):
        stream = self.stream_key(channel)
        if last_event_id is None:
            latest = await self._redis.xrevrange(stream, count=1)
            last_event_id = latest[0][0] if latest else "0-0"
        return _StreamSubscription(self._redis, channel, stream, last_event_id, self._block_ms)


def encode_sse(event: RealtimeEvent) -> str:
    data = json.dumps(event.model_dump(mode="json", exclude={"cursor"}))
    return f"id: {event.cursor or event.event_id}\nevent: {event.type}\ndata: {data}\n\n"
