"""
Relational store contract used by the engine.

Every mutation of an order is a conditional write: it applies only if the
stated predicate over the current row still holds and returns the updated
order, or None when zero rows were affected. Callers treat None as a normal
outcome (lost race) and re-fetch to decide what to report.
"""
import uuid
from abc import ABC, abstractmethod

from dispatch_engine.models import (
    Branch,
    Courier,
    LocationPing,
    LocationSample,
    Order,
    OrderItem,
    OrderStatus,
    ShiftStatus,
    StatusChange,
    Vendor,
)


class Store(ABC):
    # True when assign_courier re-checks courier busyness inside the same write
    atomic_courier_recheck: bool = False

    async def close(self) -> None:
        return None

    # -- reference data ---------------------------------------------------

    @abstractmethod
    async def get_vendor(self, vendor_id: uuid.UUID) -> Vendor | None: ...

    @abstractmethod
    async def get_branch(self, branch_id: uuid.UUID) -> Branch | None: ...

    # -- orders -----------------------------------------------------------

    @abstractmethod
    async def create_order(self, order: Order, items: list[OrderItem]) -> Order:
        """Insert order, items and the initial history row atomically."""

    @abstractmethod
    async def get_order(self, order_id: uuid.UUID) -> Order | None: ...

    @abstractmethod
    async def get_order_items(self, order_id: uuid.UUID) -> list[OrderItem]: ...

    @abstractmethod
    async def get_status_history(self, order_id: uuid.UUID) -> list[StatusChange]: ...

    @abstractmethod
    async def transition(
        self,
        order_id: uuid.UUID,
        expected: OrderStatus,
        change: StatusChange,
        *,
        reason: str | None = None,
        courier_guard: uuid.UUID | None = None,
        clear_courier: bool = False,
        exclusive_courier: bool = False,
    ) -> Order | None:
        """
        UPDATE orders SET status = change.to_status WHERE id = order_id AND status = expected
        [AND courier_id = courier_guard]
        [AND the order's courier holds no other PICKED_UP/ON_ROUTE order]   (exclusive_courier)
        Clears courier_id when clear_courier. Appends `change` to the history on success.
        """

    @abstractmethod
    async def assign_courier(self, order_id: uuid.UUID, courier_id: uuid.UUID, change: StatusChange) -> Order | None:
        """
        UPDATE orders SET courier_id = courier_id, status = PREPARING
        WHERE id = order_id AND courier_id IS NULL AND status IN (CONFIRMED, PREPARING)
        """

    @abstractmethod
    async def unassign_courier(self, order_id: uuid.UUID, change: StatusChange) -> Order | None:
        """UPDATE orders SET courier_id = NULL, status = CONFIRMED WHERE id = order_id AND status = PREPARING"""

    # -- couriers ---------------------------------------------------------

    @abstractmethod
    async def get_courier(self, courier_id: uuid.UUID) -> Courier | None: ...

    @abstractmethod
    async def get_courier_by_user(self, user_id: uuid.UUID) -> Courier | None: ...

    @abstractmethod
    async def set_shift_status(self, courier_id: uuid.UUID, status: ShiftStatus) -> Courier | None: ...

    @abstractmethod
    async def courier_has_active_delivery(self, courier_id: uuid.UUID, exclude_order_id: uuid.UUID | None = None) -> bool: ...

    @abstractmethod
    async def list_available_couriers(
        self,
        vendor_id: uuid.UUID,
        include_independent: bool,
        vehicle_type: str | None = None,
    ) -> list[Courier]:
        """Online, active couriers usable by the vendor that are not mid-delivery."""

    # -- locations --------------------------------------------------------

    @abstractmethod
    async def insert_location_ping(self, courier_id: uuid.UUID, sample: LocationSample) -> LocationPing: ...

    @abstractmethod
    async def latest_location(self, courier_id: uuid.UUID, order_id: uuid.UUID | None) -> LocationPing | None: ...

    @abstractmethod
    async def list_location_pings(self, courier_id: uuid.UUID, order_id: uuid.UUID | None, limit: int = 500) -> list[LocationPing]:
        """Pings ordered by server timestamp, oldest first."""
