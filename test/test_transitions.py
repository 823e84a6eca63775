import asyncio
import uuid
from decimal import Decimal

import pytest
from _helper import ADMIN, Marketplace, YieldingStore, run

from dispatch_engine.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    StaleState,
    ValidationError,
)
from dispatch_engine.models import ActorContext, OrderStatus, OrderType, Role
from dispatch_engine.notifications import Notifier


def test_create_order_snapshots_items_and_totals(market):
    async def scenario():
        customer = market.customer()
        order = await market.place_order(customer)
        _, items = await market.engine.get_order(order.id, customer)
        return order, items

    order, items = run(scenario())
    assert order.status == OrderStatus.NEW
    assert order.vendor_id == market.vendor.id
    assert order.courier_id is None
    assert order.items_total == Decimal("28.99")
    assert order.delivery_fee == Decimal("5.00")
    assert order.total == order.items_total + order.delivery_fee == Decimal("33.99")
    lines = {i.name_snapshot: i for i in items}
    assert lines["Lahmacun"].line_total == Decimal("25.00")
    assert lines["Ayran"].unit_price == Decimal("3.99")


def test_create_order_validation(market):
    customer = market.customer()
    with pytest.raises(ValidationError) as exc:
        run(market.engine.create_order({"branch_id": market.branch.id, "items": []}, customer))
    assert exc.value.field == "items"

    with pytest.raises(ValidationError) as exc:
        run(market.engine.create_order(
            {"branch_id": market.branch.id, "type": "delivery", "items": [{"product_id": uuid.uuid4(), "name": "Tea", "unit_price": "1", "qty": 1}]},
            customer,
        ))
    assert exc.value.field == "address_text"


def test_create_order_unknown_branch(market):
    with pytest.raises(NotFound):
        run(market.engine.create_order(
            {"branch_id": uuid.uuid4(), "type": "pickup", "items": [{"product_id": uuid.uuid4(), "name": "Tea", "unit_price": "1", "qty": 1}]},
            market.customer(),
        ))


@pytest.mark.parametrize("role", [Role.VENDOR_ADMIN, Role.COURIER, None])
def test_only_customers_create_orders(market, role):
    actor = ActorContext(user_id=uuid.uuid4(), role=role, vendor_ids=frozenset({market.vendor.id}))
    with pytest.raises(Forbidden):
        run(market.place_order(actor))


def test_idempotency_key_returns_same_order(market):
    async def scenario():
        customer = market.customer()
        payload = {
            "branch_id": market.branch.id,
            "type": "pickup",
            "items": [{"product_id": uuid.uuid4(), "name": "Simit", "unit_price": "1.50", "qty": 4}],
        }
        first = await market.engine.create_order(payload, customer, idempotency_key="k-1")
        second = await market.engine.create_order(payload, customer, idempotency_key="k-1")
        return first, second

    first, second = run(scenario())
    assert first.id == second.id
    assert len(market.store.orders) == 1


def test_idempotency_key_is_scoped_to_customer(market):
    async def scenario():
        alice, bob = market.customer(), market.customer()
        placed = []
        for customer in (alice, bob):
            placed.append(await market.engine.create_order(
                {
                    "branch_id": market.branch.id,
                    "type": "pickup",
                    "items": [{"product_id": uuid.uuid4(), "name": "Simit", "unit_price": "1.50", "qty": 1}],
                },
                customer,
                idempotency_key="cart-1",
            ))
        return alice, bob, placed

    alice, bob, (first, second) = run(scenario())
    assert first.id != second.id
    assert first.customer_id == alice.user_id
    assert second.customer_id == bob.user_id
    assert len(market.store.orders) == 2


def test_customer_reads(market):
    async def scenario():
        owner = market.customer()
        order = await market.place_order(owner)
        own, _ = await market.engine.get_order(order.id, owner)
        with pytest.raises(Forbidden):
            await market.engine.get_order(order.id, market.customer())
        return order, own

    order, own = run(scenario())
    assert own.id == order.id


def test_vendor_from_other_vendor_is_forbidden(market):
    async def scenario():
        order = await market.place_order(market.customer())
        other_vendor, _ = market.add_vendor()
        with pytest.raises(Forbidden):
            await market.engine.get_order(order.id, market.vendor_admin(other_vendor.id))

    run(scenario())


def test_missing_order_is_indistinguishable_from_forbidden(market):
    with pytest.raises(Forbidden):
        run(market.engine.get_order(uuid.uuid4(), market.customer()))
    with pytest.raises(NotFound):
        run(market.engine.get_order(uuid.uuid4(), ADMIN))


def test_reject_requires_reason_then_is_terminal(market):
    async def scenario():
        order = await market.place_order(market.customer())
        vendor = market.vendor_admin()
        with pytest.raises(ValidationError):
            await market.engine.request_transition(order.id, "REJECTED", vendor)
        with pytest.raises(ValidationError):
            await market.engine.request_transition(order.id, "REJECTED", vendor, reason="  ")
        rejected = await market.engine.request_transition(order.id, "REJECTED", vendor, reason="out of stock")
        for status in ("CONFIRMED", "CANCELED_BY_VENDOR", "PREPARING"):
            with pytest.raises((InvalidTransition, ValidationError)):
                await market.engine.request_transition(order.id, status, vendor, reason="again")
        return rejected

    rejected = run(scenario())
    assert rejected.status == OrderStatus.REJECTED
    assert rejected.status_reason == "out of stock"


def test_reason_is_checked_before_authorization(market):
    async def scenario():
        order = await market.place_order(market.customer())
        stranger = market.vendor_admin(uuid.uuid4())
        with pytest.raises(ValidationError):
            await market.engine.request_transition(order.id, "REJECTED", stranger)
        with pytest.raises(Forbidden):
            await market.engine.request_transition(order.id, "REJECTED", stranger, reason="closed")

    run(scenario())


def test_repeating_a_transition_is_rejected(market):
    async def scenario():
        order = await market.confirmed_order()
        with pytest.raises(InvalidTransition) as exc:
            await market.engine.request_transition(order.id, "CONFIRMED", market.vendor_admin())
        return exc.value

    error = run(scenario())
    assert error.current == "CONFIRMED"
    assert error.requested == "CONFIRMED"


def test_customer_cancels_only_new_own_orders(market):
    async def scenario():
        owner = market.customer()
        order = await market.place_order(owner)
        with pytest.raises(Forbidden):
            await market.engine.request_transition(order.id, "CANCELED_BY_USER", market.customer())
        canceled = await market.engine.request_transition(order.id, "CANCELED_BY_USER", owner)
        confirmed = await market.confirmed_order(owner)
        with pytest.raises(InvalidTransition):
            await market.engine.request_transition(confirmed.id, "CANCELED_BY_USER", owner)
        return canceled

    assert run(scenario()).status == OrderStatus.CANCELED_BY_USER


def test_role_not_in_graph_is_invalid_transition(market):
    async def scenario():
        owner = market.customer()
        order = await market.place_order(owner)
        with pytest.raises(InvalidTransition):
            await market.engine.request_transition(order.id, "CONFIRMED", owner)

    run(scenario())


def test_unknown_status_is_validation_error(market):
    async def scenario():
        order = await market.place_order(market.customer())
        with pytest.raises(ValidationError):
            await market.engine.request_transition(order.id, "TELEPORTED", market.vendor_admin())

    run(scenario())


def test_vendor_cancel_releases_courier(market):
    courier, _ = market.add_courier()

    async def scenario():
        order = await market.assigned_order(courier)
        assert order.courier_id == courier.id
        return await market.engine.request_transition(order.id, "CANCELED_BY_VENDOR", market.vendor_admin(), reason="kitchen fire")

    canceled = run(scenario())
    assert canceled.status == OrderStatus.CANCELED_BY_VENDOR
    assert canceled.courier_id is None


def test_pickup_order_vendor_hands_over(market):
    async def scenario():
        vendor = market.vendor_admin()
        order = await market.place_order(market.customer(), order_type=OrderType.PICKUP)
        for status in ("CONFIRMED", "PREPARING", "PICKED_UP"):
            order = await market.engine.request_transition(order.id, status, vendor)
        return order

    order = run(scenario())
    assert order.status == OrderStatus.PICKED_UP
    assert order.courier_id is None


def test_vendor_cannot_hand_over_delivery_order_without_courier(market):
    courier, courier_actor = market.add_courier()

    async def scenario():
        vendor = market.vendor_admin()
        order = await market.confirmed_order()
        await market.engine.request_transition(order.id, "PREPARING", vendor)
        with pytest.raises(ValidationError) as exc:
            await market.engine.request_transition(order.id, "PICKED_UP", vendor)
        await market.engine.assign_courier(order.id, courier.id, vendor)
        return exc.value, await market.engine.request_transition(order.id, "PICKED_UP", courier_actor)

    error, picked = run(scenario())
    assert error.field == "courier_id"
    assert picked.status == OrderStatus.PICKED_UP
    assert picked.courier_id == courier.id


def test_concurrent_transitions_one_wins_rest_stale():
    market = Marketplace(store=YieldingStore())

    async def scenario():
        order = await market.place_order(market.customer())
        vendors = [market.vendor_admin() for _ in range(5)]
        return await asyncio.gather(
            *(market.engine.request_transition(order.id, "CONFIRMED", v) for v in vendors),
            return_exceptions=True,
        )

    results = run(scenario())
    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, StaleState) for r in results if isinstance(r, Exception))


def test_history_records_every_transition(market):
    courier, courier_actor = market.add_courier()

    async def scenario():
        customer = market.customer()
        order = await market.assigned_order(courier, customer)
        await market.engine.request_transition(order.id, "PICKED_UP", courier_actor)
        return await market.engine.get_history(order.id, customer)

    history = run(scenario())
    assert [(h.from_status, h.to_status) for h in history] == [
        (None, OrderStatus.NEW),
        (OrderStatus.NEW, OrderStatus.CONFIRMED),
        (OrderStatus.CONFIRMED, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.PICKED_UP),
    ]
    assert history[-1].actor_role == Role.COURIER


def test_notifications_follow_committed_transitions(market):
    courier, _ = market.add_courier()

    async def scenario():
        await market.assigned_order(courier)

    run(scenario())
    types = [job["notification_type"] for job in market.notifier.jobs]
    assert types == ["ORDER_CONFIRMED", "COURIER_ASSIGNED", "COURIER_ASSIGNED"]
    assert market.notifier.jobs[-1]["user_id"] == str(courier.user_id)


def test_downstream_failures_do_not_undo_transition(market):
    class BrokenBroker(type(market.broker)):
        async def publish(self, channel, event):
            raise ConnectionError("redis down")

    class BrokenNotifier(type(market.notifier)):
        async def enqueue(self, body):
            raise ConnectionError("sqs down")

    market.engine.orders.broker = BrokenBroker()
    market.engine.orders.notifier = BrokenNotifier()

    async def scenario():
        order = await market.place_order(market.customer())
        return await market.engine.request_transition(order.id, "CONFIRMED", market.vendor_admin())

    confirmed = run(scenario())
    assert confirmed.status == OrderStatus.CONFIRMED
    assert market.store.orders[confirmed.id].status == OrderStatus.CONFIRMED


def test_notifier_needs_a_transport():
    with pytest.raises(TypeError):
        Notifier()
