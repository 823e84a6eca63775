"""
Order creation, authorized reads and status transitions.

requestTransition: reason check -> authorization -> state machine -> conditional
write -> fan-out. Fan-out (realtime + notification) runs only after the write
committed and never raises.
"""
import logging
import uuid
from abc import ABC, abstractmethod

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from dispatch_engine import order_state
from dispatch_engine.authorization import Action, can_access, require_access
from dispatch_engine.errors import (
    CourierUnavailable,
    DispatchError,
    Forbidden,
    NotFound,
    StaleState,
    ValidationError,
)
from dispatch_engine.metrics import (
    concurrency_conflicts_total,
    order_transitions_rejected_total,
    order_transitions_total,
)
from dispatch_engine.models import (
    ActorContext,
    NewOrder,
    Order,
    OrderItem,
    OrderResource,
    OrderStatus,
    OrderType,
    Role,
    StatusChange,
    money,
)
from dispatch_engine.notifications import Notifier
from dispatch_engine.realtime import Broker, order_channel, status_event
from dispatch_engine.redis_client import claim_idempotency_key
from dispatch_engine.store import Store

logger = logging.getLogger(__name__)

RELEASES_COURIER = frozenset({
    OrderStatus.REJECTED,
    OrderStatus.CANCELED_BY_USER,
    OrderStatus.CANCELED_BY_VENDOR,
})


class IdempotencyKeys(ABC):
    @abstractmethod
    async def claim(self, key: str, value: str) -> str | None:
        """Returns None when claimed, else the value recorded by the first caller."""

    @abstractmethod
    async def release(self, key: str) -> None: ...


class RedisIdempotencyKeys(IdempotencyKeys):
    def __init__(self, r: redis.Redis, ttl_seconds: int = 86400):
        self._redis = r
        self._ttl = ttl_seconds

    async def claim(self, key, value):
        return await claim_idempotency_key(self._redis, f"idempotency:order:{key}", value, self._ttl)

    async def release(self, key):
        await self._redis.delete(f"idempotency:order:{key}")


class InMemoryIdempotencyKeys(IdempotencyKeys):
    def __init__(self) -> None:
        self._keys: dict[str, str] = {}

    async def claim(self, key, value):
        existing = self._keys.get(key)
        if existing is None:
            self._keys[key] = value
        return existing

    async def release(self, key):
        self._keys.pop(key, None)


def parse_status(value: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status {value!r}", field="status") from None


def reject(error: DispatchError) -> DispatchError:
    """Count a rejected request by code; returns the error for raising."""
    order_transitions_rejected_total.labels(code=error.code).inc()
    return error


class OrderService:
    def __init__(
        self,
        store: Store,
        broker: Broker,
        notifier: Notifier,
        idempotency: IdempotencyKeys | None = None,
        conceal_missing_orders: bool = True,
    ):
        self.store = store
        self.broker = broker
        self.notifier = notifier
        self.idempotency = idempotency
        self.conceal_missing_orders = conceal_missing_orders

    async def load_authorized(self, order_id: uuid.UUID, actor: ActorContext, action: Action) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            if self.conceal_missing_orders and actor.role != Role.ADMIN:
                raise reject(Forbidden())
            raise reject(NotFound("order", order_id))
        if not can_access(actor, order.as_resource(), action):
            logger.info("order.access_denied order_id=%s role=%s action=%s", order_id, actor.role, action)
            raise reject(Forbidden())
        return order

    # -- creation ---------------------------------------------------------

    async def create_order(self, data: NewOrder | dict, actor: ActorContext, idempotency_key: str | None = None) -> Order:
        if actor.role not in (Role.CUSTOMER, Role.ADMIN) or actor.user_id is None:
            raise Forbidden()
        require_access(actor, OrderResource(owner_customer_id=actor.user_id, vendor_id=None), "create")
        if not isinstance(data, NewOrder):
            try:
                data = NewOrder.model_validate(data)
            except PydanticValidationError as e:
                first = e.errors()[0]
                raise ValidationError(first["msg"], field=".".join(str(p) for p in first["loc"])) from None
        if data.type == OrderType.DELIVERY and not (data.address_text and data.address_text.strip()):
            raise ValidationError("Delivery orders need an address", field="address_text")
        if data.type == OrderType.PICKUP and data.delivery_fee > 0:
            raise ValidationError("Pickup orders carry no delivery fee", field="delivery_fee")

        branch = await self.store.get_branch(data.branch_id)
        if branch is None:
            raise NotFound("branch", data.branch_id)

        order_id = uuid.uuid4()
        if idempotency_key and self.idempotency is not None:
            # Keys are only unique per caller
            idempotency_key = f"{actor.user_id}:{idempotency_key}"
            existing = await self.idempotency.claim(idempotency_key, str(order_id))
            if existing is not None:
                logger.info("order.create.duplicate idempotency_key=%s order_id=%s", idempotency_key, existing)
                return await self.load_authorized(uuid.UUID(existing), actor, "read")

        items = [
            OrderItem(
                id=uuid.uuid4(),
                order_id=order_id,
                product_id=i.product_id,
                name_snapshot=i.name,
                unit_price=money(i.unit_price),
                qty=i.qty,
                line_total=money(money(i.unit_price) * i.qty),
            )
            for i in data.items
        ]
        items_total = money(sum((i.line_total for i in items), start=money(0)))
        delivery_fee = money(data.delivery_fee)
        order = Order(
            id=order_id,
            customer_id=actor.user_id,
            branch_id=branch.id,
            vendor_id=branch.vendor_id,
            type=data.type,
            status=OrderStatus.NEW,
            items_total=items_total,
            delivery_fee=delivery_fee,
            total=items_total + delivery_fee,
            payment_method=data.payment_method,
            address_text=data.address_text,
            address_lat=data.address_lat,
            address_lng=data.address_lng,
        )
        try:
            order = await self.store.create_order(order, items)
        except Exception:
            if idempotency_key and self.idempotency is not None:
                await self.idempotency.release(idempotency_key)
            raise
        logger.info("order.created order_id=%s branch_id=%s total=%s", order.id, order.branch_id, order.total)
        return order

    # -- reads ------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID, actor: ActorContext) -> tuple[Order, list[OrderItem]]:
        order = await self.load_authorized(order_id, actor, "read")
        return order, await self.store.get_order_items(order_id)

    async def get_history(self, order_id: uuid.UUID, actor: ActorContext) -> list[StatusChange]:
        await self.load_authorized(order_id, actor, "read")
        return await self.store.get_status_history(order_id)

    # -- transitions ------------------------------------------------------

    async def request_transition(
        self,
        order_id: uuid.UUID,
        requested: OrderStatus | str,
        actor: ActorContext,
        reason: str | None = None,
    ) -> Order:
        requested = parse_status(requested)
        try:
            reason = order_state.check_reason(requested, reason)
        except ValidationError as e:
            raise reject(e)

        order = await self.load_authorized(order_id, actor, "transition")
        try:
            order_state.next_status(order.status, requested, actor.role)
        except DispatchError as e:
            logger.info(
                "order.transition.invalid order_id=%s current=%s requested=%s role=%s",
                order_id, order.status.value, requested.value, actor.role,
            )
            raise reject(e)
        if requested == OrderStatus.PICKED_UP and order.type == OrderType.DELIVERY and order.courier_id is None:
            raise reject(ValidationError("Assign a courier first", field="courier_id"))

        exclusive = requested == OrderStatus.PICKED_UP
        change = StatusChange(
            order_id=order.id,
            from_status=order.status,
            to_status=requested,
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            reason=reason,
        )
        updated = await self.store.transition(
            order.id,
            order.status,
            change,
            reason=reason if requested in order_state.REASON_REQUIRED else None,
            courier_guard=actor.courier_id if actor.role == Role.COURIER else None,
            clear_courier=requested in RELEASES_COURIER,
            exclusive_courier=exclusive,
        )
        if updated is None:
            raise await self._diagnose_lost_write(order, requested, exclusive)

        order_transitions_total.labels(from_status=order.status.value, to_status=updated.status.value).inc()
        logger.info(
            "order.transition.applied order_id=%s from=%s to=%s role=%s",
            order.id, order.status.value, updated.status.value, actor.role,
        )
        await self.broker.publish_safely(order_channel(updated.id), status_event(updated, order.status))
        await self.notifier.order_status_changed(updated)
        return updated

    async def _diagnose_lost_write(self, seen: Order, requested: OrderStatus, exclusive: bool) -> DispatchError:
        """Zero rows affected: decide which concurrent change beat us."""
        current = await self.store.get_order(seen.id)
        if (
            exclusive
            and current is not None
            and current.status == seen.status
            and current.courier_id is not None
            and current.courier_id == seen.courier_id
            and await self.store.courier_has_active_delivery(current.courier_id, exclude_order_id=current.id)
        ):
            concurrency_conflicts_total.labels(kind="courier_unavailable").inc()
            logger.warning("order.transition.courier_busy order_id=%s courier_id=%s", seen.id, current.courier_id)
            return reject(CourierUnavailable(current.courier_id))
        concurrency_conflicts_total.labels(kind="stale_state").inc()
        logger.warning(
            "order.transition.stale order_id=%s expected=%s now=%s requested=%s",
            seen.id, seen.status.value, current.status.value if current else None, requested.value,
        )
        return reject(StaleState(seen.status.value, requested.value))
