"""
Authorization engine: (actor, order resource, action) -> allow/deny.

Evaluated before every transition, every read of order-scoped data (locations
included) and every realtime subscription. Pure; the caller resolves the
resource from the store.
"""
from typing import Literal

from dispatch_engine.errors import Forbidden
from dispatch_engine.models import ActorContext, OrderResource, Role

Action = Literal["create", "read", "update", "transition"]

SCOPED_ACTIONS = frozenset({"read", "update", "transition"})


def can_access(actor: ActorContext, resource: OrderResource, action: Action) -> bool:
    role = actor.role
    if role == Role.ADMIN:
        return True
    if role is None:
        return False

    if role == Role.CUSTOMER:
        if action == "create":
            return True
        if action in SCOPED_ACTIONS:
            return actor.user_id is not None and resource.owner_customer_id == actor.user_id
        return False

    if role == Role.VENDOR_ADMIN:
        if action in SCOPED_ACTIONS:
            return resource.vendor_id is not None and resource.vendor_id in actor.vendor_ids
        return False

    if role == Role.COURIER:
        if action in SCOPED_ACTIONS:
            return actor.courier_id is not None and resource.courier_id == actor.courier_id
        return False

    return False


def require_access(actor: ActorContext, resource: OrderResource, action: Action) -> None:
    if not can_access(actor, resource, action):
        raise Forbidden()


def can_subscribe_courier_channel(actor: ActorContext, courier_id) -> bool:
    """Courier channels are visible to the courier itself and to admins."""
    if actor.role == Role.ADMIN:
        return True
    return actor.role == Role.COURIER and actor.courier_id is not None and actor.courier_id == courier_id
