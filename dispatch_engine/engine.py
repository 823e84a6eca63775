"""
DispatchEngine: the surface other components call. Wires store, broker,
notifier and rate limiter from settings and delegates to the services.
"""
import logging
import uuid
from collections.abc import Mapping

from dispatch_engine.authorization import can_subscribe_courier_channel
from dispatch_engine.config import Settings
from dispatch_engine.dispatch import DispatchService
from dispatch_engine.errors import Forbidden
from dispatch_engine.location import LocationService
from dispatch_engine.memory_store import InMemoryStore
from dispatch_engine.models import (
    ActorContext,
    Courier,
    LocationPing,
    LocationSample,
    NewOrder,
    Order,
    OrderItem,
    OrderStatus,
    ShiftStatus,
    StatusChange,
)
from dispatch_engine.notifications import Notifier, QueueNotifier, RecordingNotifier
from dispatch_engine.orders import IdempotencyKeys, InMemoryIdempotencyKeys, OrderService, RedisIdempotencyKeys
from dispatch_engine.rate_limit import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from dispatch_engine.realtime import COURIER_SCOPE, Broker, InMemoryBroker, RedisStreamBroker, Subscription, parse_channel
from dispatch_engine.store import Store

logger = logging.getLogger(__name__)


class DispatchEngine:
    def __init__(
        self,
        store: Store,
        broker: Broker,
        notifier: Notifier,
        rate_limiter: RateLimiter | None = None,
        idempotency: IdempotencyKeys | None = None,
        conceal_missing_orders: bool = True,
    ):
        self.store = store
        self.broker = broker
        self.notifier = notifier
        self.orders = OrderService(store, broker, notifier, idempotency, conceal_missing_orders)
        self.dispatch = DispatchService(self.orders)
        self.locations = LocationService(self.orders, rate_limiter)

    async def close(self) -> None:
        await self.store.close()

    # -- orders -----------------------------------------------------------

    async def create_order(self, data: NewOrder | Mapping, actor: ActorContext, idempotency_key: str | None = None) -> Order:
        return await self.orders.create_order(data, actor, idempotency_key)

    async def get_order(self, order_id: uuid.UUID, actor: ActorContext) -> tuple[Order, list[OrderItem]]:
        return await self.orders.get_order(order_id, actor)

    async def get_history(self, order_id: uuid.UUID, actor: ActorContext) -> list[StatusChange]:
        return await self.orders.get_history(order_id, actor)

    async def request_transition(
        self,
        order_id: uuid.UUID,
        requested: OrderStatus | str,
        actor: ActorContext,
        reason: str | None = None,
    ) -> Order:
        return await self.orders.request_transition(order_id, requested, actor, reason)

    # -- dispatch ---------------------------------------------------------

    async def assign_courier(self, order_id: uuid.UUID, courier_id: uuid.UUID, actor: ActorContext) -> Order:
        return await self.dispatch.assign_courier(order_id, courier_id, actor)

    async def unassign_courier(self, order_id: uuid.UUID, actor: ActorContext) -> Order:
        return await self.dispatch.unassign_courier(order_id, actor)

    async def available_couriers(self, actor: ActorContext, vendor_id: uuid.UUID | None = None, vehicle_type: str | None = None) -> list[Courier]:
        return await self.dispatch.available_couriers(actor, vendor_id, vehicle_type)

    async def set_shift_status(self, actor: ActorContext, status: ShiftStatus | str) -> Courier:
        return await self.dispatch.set_shift_status(actor, status)

    # -- locations --------------------------------------------------------

    async def ingest_location(self, courier_id: uuid.UUID, sample: LocationSample | Mapping, actor: ActorContext) -> LocationPing:
        return await self.locations.ingest(courier_id, sample, actor)

    async def latest_location(self, order_id: uuid.UUID, actor: ActorContext) -> LocationPing | None:
        return await self.locations.latest_for_order(order_id, actor)

    async def trajectory(self, order_id: uuid.UUID, actor: ActorContext, limit: int = 500) -> list[LocationPing]:
        return await self.locations.trajectory_for_order(order_id, actor, limit)

    # -- realtime ---------------------------------------------------------

    async def subscribe(self, channel_key: str, actor: ActorContext, last_event_id: str | None = None) -> Subscription:
        scope, resource_id = parse_channel(channel_key)
        if scope == COURIER_SCOPE:
            if not can_subscribe_courier_channel(actor, resource_id):
                raise Forbidden()
        else:
            await self.orders.load_authorized(resource_id, actor, "read")
        logger.info("realtime.subscribed channel=%s role=%s", channel_key, actor.role)
        return await self.broker.open(channel_key, last_event_id)


async def build_engine(settings: Settings) -> DispatchEngine:
    if settings.storage_backend == "postgres":
        from dispatch_engine.db import create_postgres_store
        store: Store = await create_postgres_store()
    else:
        store = InMemoryStore()

    per_minute = settings.location_rate_limit_per_minute
    burst = settings.location_rate_limit_burst
    if settings.broker_backend == "redis":
        from dispatch_engine.redis_client import get_redis
        r = await get_redis()
        broker: Broker = RedisStreamBroker(r, maxlen=settings.realtime_stream_maxlen)
        notifier: Notifier = QueueNotifier(r, settings.sqs_notification_queue_url)
        rate_limiter: RateLimiter = RedisRateLimiter(r, per_minute, burst)
        idempotency: IdempotencyKeys = RedisIdempotencyKeys(r)
    else:
        broker = InMemoryBroker()
        notifier = QueueNotifier(sqs_queue_url=settings.sqs_notification_queue_url) if settings.sqs_notification_queue_url else RecordingNotifier()
        rate_limiter = InMemoryRateLimiter(per_minute, burst)
        idempotency = InMemoryIdempotencyKeys()

    logger.info("Engine ready. storage=%s broker=%s", settings.storage_backend, settings.broker_backend)
    return DispatchEngine(
        store,
        broker,
        notifier,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        conceal_missing_orders=settings.conceal_missing_orders,
    )
