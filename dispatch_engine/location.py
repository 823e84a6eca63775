"""
Courier location ingestion and reads.

Order of checks for a ping: reporter must be the courier itself, rate limit
per courier, coordinate/range validation, courier lookup, courier online,
referenced order exists.
Pings are append-only; nothing here updates or deletes one.
"""
import logging
import uuid
from collections.abc import Mapping

from pydantic import ValidationError as PydanticValidationError

from dispatch_engine.errors import CourierOffline, Forbidden, InvalidCoordinates, NotFound, RateLimited
from dispatch_engine.metrics import location_pings_total, location_rate_limited_total
from dispatch_engine.models import ActorContext, LocationPing, LocationSample, Role, ShiftStatus
from dispatch_engine.orders import OrderService
from dispatch_engine.rate_limit import RateLimiter
from dispatch_engine.realtime import courier_channel, location_event, order_channel

logger = logging.getLogger(__name__)


def validate_sample(sample: LocationSample | Mapping) -> LocationSample:
    if isinstance(sample, LocationSample):
        return sample
    try:
        return LocationSample.model_validate(dict(sample))
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or None
        raise InvalidCoordinates(f"{field}: {first['msg']}" if field else first["msg"], field=field) from None


class LocationService:
    def __init__(self, orders: OrderService, rate_limiter: RateLimiter | None = None):
        self.orders = orders
        self.store = orders.store
        self.broker = orders.broker
        self.rate_limiter = rate_limiter

    async def ingest(self, courier_id: uuid.UUID, sample: LocationSample | Mapping, actor: ActorContext) -> LocationPing:
        if actor.role != Role.COURIER or actor.courier_id != courier_id:
            raise Forbidden("Couriers may only report their own location")

        if self.rate_limiter is not None:
            decision = await self.rate_limiter.hit(f"courier-location:{courier_id}")
            if not decision.allowed:
                location_rate_limited_total.inc()
                logger.warning("courier.location.rate_limited courier_id=%s retry_after=%s", courier_id, decision.retry_after)
                raise RateLimited(decision.retry_after)

        sample = validate_sample(sample)

        courier = await self.store.get_courier(courier_id)
        if courier is None:
            raise NotFound("courier", courier_id)
        if courier.shift_status != ShiftStatus.ONLINE:
            logger.info("courier.location.offline courier_id=%s", courier_id)
            raise CourierOffline(courier_id)

        order = None
        if sample.order_id is not None:
            order = await self.store.get_order(sample.order_id)
            if order is None:
                raise NotFound("order", sample.order_id)

        ping = await self.store.insert_location_ping(courier_id, sample)
        location_pings_total.inc()
        logger.info(
            "courier.location.update_success courier_id=%s ping_id=%s order_id=%s",
            courier_id, ping.id, ping.order_id,
        )

        await self.broker.publish_safely(courier_channel(courier_id), location_event(ping, courier_channel(courier_id)))
        if order is not None and order.courier_id == courier_id:
            channel = order_channel(order.id)
            await self.broker.publish_safely(channel, location_event(ping, channel))
        return ping

    async def latest_for_order(self, order_id: uuid.UUID, actor: ActorContext) -> LocationPing | None:
        order = await self.orders.load_authorized(order_id, actor, "read")
        if order.courier_id is None:
            return None
        return await self.store.latest_location(order.courier_id, order.id)

    async def trajectory_for_order(self, order_id: uuid.UUID, actor: ActorContext, limit: int = 500) -> list[LocationPing]:
        order = await self.orders.load_authorized(order_id, actor, "read")
        if order.courier_id is None:
            return []
        pings = await self.store.list_location_pings(order.courier_id, order.id, limit=limit)
        return sorted(pings, key=lambda p: (p.created_at, p.id))
