"""
In-process store for local development and tests.

Each method runs to completion without yielding to the event loop, so every
conditional write is atomic with respect to other coroutines on the same loop.
Not shared across processes.
"""
import itertools
import uuid

from dispatch_engine.models import (
    ACTIVE_DELIVERY_STATUSES,
    ASSIGNABLE_STATUSES,
    Branch,
    Courier,
    LocationPing,
    LocationSample,
    Order,
    OrderItem,
    OrderStatus,
    Role,
    ShiftStatus,
    StatusChange,
    Vendor,
    utcnow,
)
from dispatch_engine.store import Store


class InMemoryStore(Store):
    atomic_courier_recheck = True

    def __init__(self) -> None:
        self.vendors: dict[uuid.UUID, Vendor] = {}
        self.branches: dict[uuid.UUID, Branch] = {}
        self.couriers: dict[uuid.UUID, Courier] = {}
        self.orders: dict[uuid.UUID, Order] = {}
        self.items: dict[uuid.UUID, list[OrderItem]] = {}
        self.history: dict[uuid.UUID, list[StatusChange]] = {}
        self.pings: list[LocationPing] = []
        self._ping_ids = itertools.count(1)

    # -- seeding (the CRUD side of the marketplace owns these in production) --

    def add_vendor(self, vendor: Vendor) -> Vendor:
        self.vendors[vendor.id] = vendor
        return vendor

    def add_branch(self, branch: Branch) -> Branch:
        self.branches[branch.id] = branch
        return branch

    def add_courier(self, courier: Courier) -> Courier:
        self.couriers[courier.id] = courier
        return courier

    # -- reference data ---------------------------------------------------

    async def get_vendor(self, vendor_id):
        return self.vendors.get(vendor_id)

    async def get_branch(self, branch_id):
        return self.branches.get(branch_id)

    # -- orders -----------------------------------------------------------

    async def create_order(self, order, items):
        self.orders[order.id] = order
        self.items[order.id] = list(items)
        self.history[order.id] = [
            StatusChange(
                order_id=order.id,
                from_status=None,
                to_status=order.status,
                actor_user_id=order.customer_id,
                actor_role=Role.CUSTOMER,
            )
        ]
        return order

    async def get_order(self, order_id):
        return self.orders.get(order_id)

    async def get_order_items(self, order_id):
        return list(self.items.get(order_id, []))

    async def get_status_history(self, order_id):
        return list(self.history.get(order_id, []))

    def _busy_elsewhere(self, courier_id: uuid.UUID, order_id: uuid.UUID | None) -> bool:
        return any(
            o.courier_id == courier_id and o.status in ACTIVE_DELIVERY_STATUSES and o.id != order_id
            for o in self.orders.values()
        )

    def _apply(self, order: Order, change: StatusChange, **fields) -> Order:
        updated = order.model_copy(update={"status": change.to_status, "updated_at": utcnow(), **fields})
        self.orders[order.id] = updated
        self.history.setdefault(order.id, []).append(change)
        return updated

    async def transition(
        self,
        order_id,
        expected,
        change,
        *,
        reason=None,
        courier_guard=None,
        clear_courier=False,
        exclusive_courier=False,
    ):
        order = self.orders.get(order_id)
        if order is None or order.status != expected:
            return None
        if courier_guard is not None and order.courier_id != courier_guard:
            return None
        if exclusive_courier and order.courier_id is not None and self._busy_elsewhere(order.courier_id, order.id):
            return None
        fields = {}
        if reason is not None:
            fields["status_reason"] = reason
        if clear_courier:
            fields["courier_id"] = None
        return self._apply(order, change, **fields)

    async def assign_courier(self, order_id, courier_id, change):
        order = self.orders.get(order_id)
        if order is None or order.courier_id is not None or order.status not in ASSIGNABLE_STATUSES:
            return None
        if self._busy_elsewhere(courier_id, order.id):
            return None
        return self._apply(order, change, courier_id=courier_id)

    async def unassign_courier(self, order_id, change):
        order = self.orders.get(order_id)
        if order is None or order.status != OrderStatus.PREPARING:
            return None
        return self._apply(order, change, courier_id=None)

    # -- couriers ---------------------------------------------------------

    async def get_courier(self, courier_id):
        return self.couriers.get(courier_id)

    async def get_courier_by_user(self, user_id):
        return next((c for c in self.couriers.values() if c.user_id == user_id), None)

    async def set_shift_status(self, courier_id, status):
        courier = self.couriers.get(courier_id)
        if courier is None:
            return None
        courier = courier.model_copy(update={"shift_status": status})
        self.couriers[courier_id] = courier
        return courier

    async def courier_has_active_delivery(self, courier_id, exclude_order_id=None):
        return self._busy_elsewhere(courier_id, exclude_order_id)

    async def list_available_couriers(self, vendor_id, include_independent, vehicle_type=None):
        result = []
        for c in self.couriers.values():
            if not c.is_active or c.shift_status != ShiftStatus.ONLINE:
                continue
            if c.vendor_id != vendor_id and not (include_independent and c.vendor_id is None):
                continue
            if vehicle_type and c.vehicle_type != vehicle_type:
                continue
            if self._busy_elsewhere(c.id, None):
                continue
            result.append(c)
        return result

    # -- locations --------------------------------------------------------

    async def insert_location_ping(self, courier_id, sample: LocationSample):
        ping = LocationPing(
            id=next(self._ping_ids),
            courier_id=courier_id,
            created_at=utcnow(),
            **sample.model_dump(),
        )
        self.pings.append(ping)
        return ping

    def _pings_for(self, courier_id, order_id):
        return [p for p in self.pings if p.courier_id == courier_id and (order_id is None or p.order_id == order_id)]

    async def latest_location(self, courier_id, order_id):
        pings = self._pings_for(courier_id, order_id)
        return max(pings, key=lambda p: (p.created_at, p.id)) if pings else None

    async def list_location_pings(self, courier_id, order_id, limit=500):
        pings = sorted(self._pings_for(courier_id, order_id), key=lambda p: (p.created_at, p.id))
        return pings[-limit:]
