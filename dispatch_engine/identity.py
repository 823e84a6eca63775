"""
Actor context from the identity/session provider.

The gateway in front of this service authenticates the caller and forwards
`(user id, role, owned vendor ids | courier id)` as headers. They are trusted
as-is; no credential verification happens here. A courier sent without a
courier id is resolved from its user id.
"""
import uuid

from fastapi import Header, Request

from dispatch_engine.errors import ValidationError
from dispatch_engine.models import ActorContext, Role


def _uuid(value: str, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        raise ValidationError(f"Malformed {field}", field=field) from None


def parse_actor(
    user_id: str | None,
    role: str | None,
    vendor_ids: str | None = None,
    courier_id: str | None = None,
) -> ActorContext:
    try:
        parsed_role = Role(role) if role else None
    except ValueError:
        parsed_role = None
    return ActorContext(
        user_id=_uuid(user_id, "x-user-id") if user_id else None,
        role=parsed_role,
        vendor_ids=frozenset(_uuid(v, "x-vendor-ids") for v in (vendor_ids or "").split(",") if v.strip()),
        courier_id=_uuid(courier_id, "x-courier-id") if courier_id else None,
    )


async def get_actor(
    request: Request,
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_vendor_ids: str | None = Header(default=None),
    x_courier_id: str | None = Header(default=None),
) -> ActorContext:
    actor = parse_actor(x_user_id, x_user_role, x_vendor_ids, x_courier_id)
    if actor.role == Role.COURIER and actor.courier_id is None and actor.user_id is not None:
        # Gateway sent only the user; find the courier profile behind it
        courier = await request.app.state.engine.store.get_courier_by_user(actor.user_id)
        if courier is not None:
            actor = actor.model_copy(update={"courier_id": courier.id})
    return actor
