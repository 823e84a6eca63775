"""
Courier assignment.

Binding a courier is one conditional write:
    UPDATE orders SET courier_id = X, status = PREPARING
    WHERE id = Y AND courier_id IS NULL AND status IN (CONFIRMED, PREPARING)
Zero rows means another assignment won; we report AlreadyAssigned and let the
caller re-fetch. Courier busyness is checked up front and, where the store
supports it, again inside the same write. Where it does not, the check is
advisory and the exclusive pickup write is what keeps a courier to one
active delivery.
"""
import logging
import uuid

from dispatch_engine.errors import (
    AlreadyAssigned,
    CourierOffline,
    CourierUnavailable,
    Forbidden,
    InvalidTransition,
    NotFound,
    StaleState,
    ValidationError,
)
from dispatch_engine.metrics import concurrency_conflicts_total, courier_assignments_total
from dispatch_engine.models import (
    ASSIGNABLE_STATUSES,
    ActorContext,
    Courier,
    Order,
    OrderStatus,
    OrderType,
    Role,
    ShiftStatus,
    StatusChange,
)
from dispatch_engine.notifications import COURIER_ASSIGNED
from dispatch_engine.orders import OrderService, reject
from dispatch_engine.realtime import order_channel, status_event

logger = logging.getLogger(__name__)

DISPATCH_ROLES = (Role.VENDOR_ADMIN, Role.ADMIN)


class DispatchService:
    def __init__(self, orders: OrderService):
        self.orders = orders
        self.store = orders.store
        self.broker = orders.broker
        self.notifier = orders.notifier

    async def _load_for_dispatch(self, order_id: uuid.UUID, actor: ActorContext) -> Order:
        if actor.role not in DISPATCH_ROLES:
            raise reject(Forbidden())
        return await self.orders.load_authorized(order_id, actor, "update")

    async def _usable_by(self, courier: Courier, order: Order) -> bool:
        if courier.vendor_id == order.vendor_id:
            return True
        if courier.vendor_id is not None:
            return False
        vendor = await self.store.get_vendor(order.vendor_id)
        return vendor is not None and not vendor.has_own_couriers

    async def assign_courier(self, order_id: uuid.UUID, courier_id: uuid.UUID, actor: ActorContext) -> Order:
        order = await self._load_for_dispatch(order_id, actor)
        if order.type != OrderType.DELIVERY:
            raise reject(ValidationError("Only delivery orders take a courier", field="type"))
        if order.status not in ASSIGNABLE_STATUSES:
            raise reject(InvalidTransition(order.status.value, OrderStatus.PREPARING.value))
        if order.courier_id is not None:
            raise reject(AlreadyAssigned(order.id))

        courier = await self.store.get_courier(courier_id)
        if courier is None or not courier.is_active or not await self._usable_by(courier, order):
            raise reject(NotFound("courier", courier_id))
        if courier.shift_status != ShiftStatus.ONLINE:
            raise reject(CourierOffline(courier_id))
        if await self.store.courier_has_active_delivery(courier_id, exclude_order_id=order.id):
            raise reject(CourierUnavailable(courier_id))

        change = StatusChange(
            order_id=order.id,
            from_status=order.status,
            to_status=OrderStatus.PREPARING,
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            reason=f"courier {courier_id} assigned",
        )
        updated = await self.store.assign_courier(order.id, courier_id, change)
        if updated is None:
            raise await self._diagnose_lost_assignment(order, courier_id)

        courier_assignments_total.inc()
        logger.info(
            "dispatch.assigned order_id=%s courier_id=%s vendor_id=%s",
            order.id, courier_id, order.vendor_id,
        )
        await self.broker.publish_safely(
            order_channel(updated.id),
            status_event(updated, order.status, event_type="order.courier_assigned"),
        )
        await self.notifier.notify(updated.customer_id, COURIER_ASSIGNED, updated)
        await self.notifier.notify(courier.user_id, COURIER_ASSIGNED, updated)
        return updated

    async def _diagnose_lost_assignment(self, seen: Order, courier_id: uuid.UUID):
        current = await self.store.get_order(seen.id)
        lost_order_race = (
            current is None
            or current.courier_id is not None
            or current.status not in ASSIGNABLE_STATUSES
        )
        if not lost_order_race and self.store.atomic_courier_recheck:
            concurrency_conflicts_total.labels(kind="courier_unavailable").inc()
            logger.warning("dispatch.courier_busy order_id=%s courier_id=%s", seen.id, courier_id)
            return reject(CourierUnavailable(courier_id))
        concurrency_conflicts_total.labels(kind="already_assigned").inc()
        logger.warning(
            "dispatch.already_assigned order_id=%s attempted_courier_id=%s winner=%s",
            seen.id, courier_id, current.courier_id if current else None,
        )
        return reject(AlreadyAssigned(seen.id))

    async def unassign_courier(self, order_id: uuid.UUID, actor: ActorContext) -> Order:
        order = await self._load_for_dispatch(order_id, actor)
        if order.courier_id is None:
            return order
        if order.status != OrderStatus.PREPARING:
            raise reject(InvalidTransition(order.status.value, OrderStatus.CONFIRMED.value))

        change = StatusChange(
            order_id=order.id,
            from_status=order.status,
            to_status=OrderStatus.CONFIRMED,
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            reason=f"courier {order.courier_id} unassigned",
        )
        updated = await self.store.unassign_courier(order.id, change)
        if updated is None:
            concurrency_conflicts_total.labels(kind="stale_state").inc()
            raise reject(StaleState(order.status.value, OrderStatus.CONFIRMED.value))

        logger.info("dispatch.unassigned order_id=%s courier_id=%s", order.id, order.courier_id)
        await self.broker.publish_safely(
            order_channel(updated.id),
            status_event(updated, order.status, event_type="order.courier_unassigned"),
        )
        return updated

    async def available_couriers(
        self,
        actor: ActorContext,
        vendor_id: uuid.UUID | None = None,
        vehicle_type: str | None = None,
    ) -> list[Courier]:
        if actor.role == Role.VENDOR_ADMIN:
            if vendor_id is None and len(actor.vendor_ids) == 1:
                vendor_id = next(iter(actor.vendor_ids))
            if vendor_id is None or vendor_id not in actor.vendor_ids:
                raise Forbidden()
        elif actor.role != Role.ADMIN:
            raise Forbidden()
        if vendor_id is None:
            raise ValidationError("vendor_id is required", field="vendor_id")

        vendor = await self.store.get_vendor(vendor_id)
        if vendor is None:
            raise NotFound("vendor", vendor_id)
        couriers = await self.store.list_available_couriers(
            vendor.id,
            include_independent=not vendor.has_own_couriers,
            vehicle_type=vehicle_type,
        )
        logger.info("dispatch.available_couriers vendor_id=%s count=%d", vendor.id, len(couriers))
        return couriers

    async def set_shift_status(self, actor: ActorContext, status: ShiftStatus | str) -> Courier:
        """A courier toggles its own shift."""
        if actor.role != Role.COURIER or actor.courier_id is None:
            raise Forbidden()
        try:
            status = ShiftStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown shift status {status!r}", field="shift_status") from None
        if status == ShiftStatus.OFFLINE and await self.store.courier_has_active_delivery(actor.courier_id):
            raise ValidationError("Finish the active delivery before going offline", field="shift_status")
        courier = await self.store.set_shift_status(actor.courier_id, status)
        if courier is None:
            raise NotFound("courier", actor.courier_id)
        logger.info("courier.shift courier_id=%s status=%s", courier.id, courier.shift_status.value)
        return courier
