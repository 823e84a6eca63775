"""
Order lifecycle state machine. Pure lookup over the transition table, no I/O.
"""
from dispatch_engine.errors import InvalidTransition, ValidationError
from dispatch_engine.models import OrderStatus, Role

S = OrderStatus

TERMINAL_STATES = frozenset({
    S.DELIVERED,
    S.REJECTED,
    S.CANCELED_BY_USER,
    S.CANCELED_BY_VENDOR,
})

# Transitions that must carry a non-empty reason
REASON_REQUIRED = frozenset({S.REJECTED, S.CANCELED_BY_VENDOR})

# (current, requested) -> roles allowed to perform it
VALID_TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], frozenset[Role]] = {
    (S.NEW, S.CONFIRMED): frozenset({Role.VENDOR_ADMIN}),
    (S.NEW, S.REJECTED): frozenset({Role.VENDOR_ADMIN}),
    (S.NEW, S.CANCELED_BY_USER): frozenset({Role.CUSTOMER}),
    (S.CONFIRMED, S.PREPARING): frozenset({Role.VENDOR_ADMIN}),
    (S.PREPARING, S.PICKED_UP): frozenset({Role.VENDOR_ADMIN, Role.COURIER}),
    (S.PICKED_UP, S.ON_ROUTE): frozenset({Role.COURIER}),
    (S.ON_ROUTE, S.DELIVERED): frozenset({Role.COURIER}),
}
for _status in S:
    if _status not in TERMINAL_STATES:
        VALID_TRANSITIONS[(_status, S.CANCELED_BY_VENDOR)] = frozenset({Role.VENDOR_ADMIN})


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def is_valid_transition(current: OrderStatus, requested: OrderStatus, role: Role | None) -> bool:
    """True if `role` may move an order from `current` to `requested`. Admin may take any edge."""
    allowed = VALID_TRANSITIONS.get((current, requested))
    if not allowed or role is None:
        return False
    return role == Role.ADMIN or role in allowed


def allowed_next(current: OrderStatus, role: Role | None) -> list[OrderStatus]:
    return [to for (frm, to) in VALID_TRANSITIONS if frm == current and is_valid_transition(frm, to, role)]


def check_reason(requested: OrderStatus, reason: str | None) -> str | None:
    """Raises ValidationError if `requested` needs a reason and none was given."""
    if requested in REASON_REQUIRED:
        if reason is None or not reason.strip():
            raise ValidationError(f"A reason is required to move an order to {requested.value}", field="reason")
        return reason.strip()
    return reason.strip() if reason else None


def next_status(current: OrderStatus, requested: OrderStatus, role: Role | None) -> OrderStatus:
    if not is_valid_transition(current, requested, role):
        raise InvalidTransition(current.value, requested.value)
    return requested
