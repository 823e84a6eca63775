"""
Domain models shared by the store backends, the engine and the HTTP layer.
"""
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    """Fixed-point amount with two fractional digits."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    NEW = "NEW"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    PICKED_UP = "PICKED_UP"
    ON_ROUTE = "ON_ROUTE"
    DELIVERED = "DELIVERED"
    REJECTED = "REJECTED"
    CANCELED_BY_USER = "CANCELED_BY_USER"
    CANCELED_BY_VENDOR = "CANCELED_BY_VENDOR"


class Role(str, Enum):
    CUSTOMER = "customer"
    VENDOR_ADMIN = "vendor_admin"
    COURIER = "courier"
    ADMIN = "admin"


class OrderType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD_ON_PICKUP = "card_on_pickup"


class ShiftStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


# Statuses in which a courier may hold an order
COURIER_LINKED_STATUSES = frozenset({
    OrderStatus.PREPARING,
    OrderStatus.PICKED_UP,
    OrderStatus.ON_ROUTE,
    OrderStatus.DELIVERED,
})
# A courier with an order in one of these is mid-delivery
ACTIVE_DELIVERY_STATUSES = frozenset({OrderStatus.PICKED_UP, OrderStatus.ON_ROUTE})
ASSIGNABLE_STATUSES = frozenset({OrderStatus.CONFIRMED, OrderStatus.PREPARING})


class ActorContext(BaseModel):
    """Who is calling, as vouched for by the identity provider."""
    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID | None = None
    role: Role | None = None
    vendor_ids: frozenset[uuid.UUID] = frozenset()
    courier_id: uuid.UUID | None = None


class OrderResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner_customer_id: uuid.UUID | None
    vendor_id: uuid.UUID | None
    courier_id: uuid.UUID | None = None


class Vendor(BaseModel):
    id: uuid.UUID
    has_own_couriers: bool = False


class Branch(BaseModel):
    id: uuid.UUID
    vendor_id: uuid.UUID


class Courier(BaseModel):
    id: uuid.UUID
    vendor_id: uuid.UUID | None = None
    user_id: uuid.UUID
    shift_status: ShiftStatus = ShiftStatus.OFFLINE
    vehicle_type: str | None = None
    is_active: bool = True


class Order(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    branch_id: uuid.UUID
    vendor_id: uuid.UUID
    courier_id: uuid.UUID | None = None
    type: OrderType = OrderType.DELIVERY
    status: OrderStatus = OrderStatus.NEW
    items_total: Decimal = Field(ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0.00"), ge=0)
    total: Decimal = Field(ge=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    address_text: str | None = None
    address_lat: float | None = None
    address_lng: float | None = None
    status_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def number(self) -> str:
        return self.id.hex[:8].upper()

    def as_resource(self) -> OrderResource:
        return OrderResource(
            owner_customer_id=self.customer_id,
            vendor_id=self.vendor_id,
            courier_id=self.courier_id,
        )


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    order_id: uuid.UUID
    product_id: uuid.UUID
    name_snapshot: str
    unit_price: Decimal = Field(ge=0)
    qty: int = Field(gt=0)
    line_total: Decimal = Field(ge=0)


class StatusChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: uuid.UUID
    from_status: OrderStatus | None
    to_status: OrderStatus
    actor_user_id: uuid.UUID | None = None
    actor_role: Role | None = None
    reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class LocationSample(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    order_id: uuid.UUID | None = None
    accuracy: float | None = Field(default=None, ge=0)
    heading: float | None = Field(default=None, ge=0, le=360)
    speed: float | None = Field(default=None, ge=0)
    is_manual: bool = False


class LocationPing(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    courier_id: uuid.UUID
    order_id: uuid.UUID | None = None
    lat: float
    lng: float
    accuracy: float | None = None
    heading: float | None = None
    speed: float | None = None
    is_manual: bool = False
    created_at: datetime


class NewOrderItem(BaseModel):
    product_id: uuid.UUID
    name: str = Field(min_length=1)
    unit_price: Decimal = Field(ge=0)
    qty: int = Field(gt=0)


class NewOrder(BaseModel):
    branch_id: uuid.UUID
    type: OrderType = OrderType.DELIVERY
    payment_method: PaymentMethod = PaymentMethod.CASH
    address_text: str | None = None
    address_lat: float | None = Field(default=None, ge=-90, le=90)
    address_lng: float | None = Field(default=None, ge=-180, le=180)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    items: list[NewOrderItem] = Field(min_length=1)
