import uuid

import pytest
from _helper import ADMIN, run

from dispatch_engine.errors import Forbidden, ValidationError
from dispatch_engine.models import OrderStatus
from dispatch_engine.realtime import (
    RealtimeEvent,
    courier_channel,
    encode_sse,
    order_channel,
    parse_channel,
)


def test_parse_channel():
    order_id = uuid.uuid4()
    assert parse_channel(order_channel(order_id)) == ("order", order_id)
    for bad in ("order", "truck:" + str(order_id), "order:not-a-uuid"):
        with pytest.raises(ValidationError):
            parse_channel(bad)


def test_subscriber_sees_full_lifecycle_in_commit_order(market):
    courier, courier_actor = market.add_courier()
    customer = market.customer()
    vendor = market.vendor_admin()

    async def scenario():
        order = await market.place_order(customer)
        sub = await market.engine.subscribe(order_channel(order.id), customer)
        await market.engine.request_transition(order.id, "CONFIRMED", vendor)
        await market.engine.assign_courier(order.id, courier.id, vendor)
        for status in ("PICKED_UP", "ON_ROUTE", "DELIVERED"):
            await market.engine.request_transition(order.id, status, courier_actor)
        events = []
        while (event := await sub.next_event(timeout=1)) is not None:
            events.append(event)
            if len(events) == 5:
                break
        await sub.close()
        return events

    events = run(scenario())
    assert [e.payload["status"] for e in events] == [
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.PICKED_UP,
        OrderStatus.ON_ROUTE,
        OrderStatus.DELIVERED,
    ]
    assert events[1].type == "order.courier_assigned"
    assert events[1].payload["courier_id"] == str(courier.id)
    assert len({e.event_id for e in events}) == 5


def test_redelivered_event_is_dropped(market):
    async def scenario():
        order = await market.place_order(market.customer())
        channel = order_channel(order.id)
        sub = await market.engine.subscribe(channel, ADMIN)
        event = RealtimeEvent(event_id="e-1", channel=channel, type="order.status_changed", resource_id=str(order.id))
        await market.broker.publish(channel, event)
        await market.broker.publish(channel, event)
        first = await sub.next_event(timeout=1)
        second = await sub.next_event(timeout=0.05)
        await sub.close()
        return first, second

    first, second = run(scenario())
    assert first.event_id == "e-1"
    assert second is None


def test_reassignment_events_are_not_mistaken_for_duplicates(market):
    first, _ = market.add_courier()
    second, _ = market.add_courier()
    vendor = market.vendor_admin()

    async def scenario():
        order = await market.confirmed_order()
        sub = await market.engine.subscribe(order_channel(order.id), ADMIN)
        await market.engine.assign_courier(order.id, first.id, vendor)
        await market.engine.unassign_courier(order.id, vendor)
        await market.engine.assign_courier(order.id, second.id, vendor)
        events = [await sub.next_event(timeout=1) for _ in range(3)]
        await sub.close()
        return events

    events = run(scenario())
    assert [e.type for e in events] == [
        "order.courier_assigned",
        "order.courier_unassigned",
        "order.courier_assigned",
    ]
    assert events[2].payload["courier_id"] == str(second.id)


def test_order_channel_requires_read_access(market):
    async def scenario():
        order = await market.place_order(market.customer())
        other_vendor, _ = market.add_vendor()
        with pytest.raises(Forbidden):
            await market.engine.subscribe(order_channel(order.id), market.vendor_admin(other_vendor.id))
        with pytest.raises(Forbidden):
            await market.engine.subscribe(order_channel(order.id), market.customer())
        sub = await market.engine.subscribe(order_channel(order.id), market.vendor_admin())
        await sub.close()

    run(scenario())


def test_courier_channel_only_for_that_courier(market):
    courier, courier_actor = market.add_courier()
    _, other_actor = market.add_courier()

    async def scenario():
        with pytest.raises(Forbidden):
            await market.engine.subscribe(courier_channel(courier.id), other_actor)
        with pytest.raises(Forbidden):
            await market.engine.subscribe(courier_channel(courier.id), market.vendor_admin())
        sub = await market.engine.subscribe(courier_channel(courier.id), courier_actor)
        await market.engine.ingest_location(courier.id, {"lat": 40.4093, "lng": 49.8671}, courier_actor)
        event = await sub.next_event(timeout=1)
        await sub.close()
        return event

    event = run(scenario())
    assert event.type == "courier.location"
    assert event.payload["lat"] == 40.4093


def test_encode_sse_frame():
    event = RealtimeEvent(event_id="abc", channel="order:x", type="order.status_changed", resource_id="x")
    frame = encode_sse(event)
    assert frame.startswith("id: abc\nevent: order.status_changed\ndata: {")
    assert frame.endswith("\n\n")
