"""
Fire-and-forget notification jobs for the push/email transport.
Backend: Redis (LPUSH) or AWS SQS when SQS_NOTIFICATION_QUEUE_URL is set.

Failures here are logged and swallowed; they never undo the committed
transition that triggered them.
"""
import json
import logging
import uuid
from abc import ABC, abstractmethod

import redis.asyncio as redis

from dispatch_engine.metrics import notifications_failed_total
from dispatch_engine.models import Order, OrderStatus
from dispatch_engine.sqs_client import send_message

logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE_KEY = "queue:notifications"

COURIER_ASSIGNED = "COURIER_ASSIGNED"

STATUS_NOTIFICATIONS: dict[OrderStatus, str] = {
    OrderStatus.CONFIRMED: "ORDER_CONFIRMED",
    OrderStatus.PREPARING: "ORDER_PREPARING",
    OrderStatus.PICKED_UP: "ORDER_PICKED_UP",
    OrderStatus.ON_ROUTE: "ORDER_ON_ROUTE",
    OrderStatus.DELIVERED: "ORDER_DELIVERED",
    OrderStatus.REJECTED: "ORDER_CANCELED",
    OrderStatus.CANCELED_BY_USER: "ORDER_CANCELED",
    OrderStatus.CANCELED_BY_VENDOR: "ORDER_CANCELED",
}


def _make_body(user_id: uuid.UUID, notification_type: str, order: Order) -> dict:
    return {
        "job_id": uuid.uuid4().hex,
        "user_id": str(user_id),
        "notification_type": notification_type,
        "order_id": str(order.id),
        "order_number": order.number,
        "status": order.status.value,
    }


class Notifier(ABC):
    """Base notifier: subclasses implement `enqueue`."""

    @abstractmethod
    async def enqueue(self, body: dict) -> None: ...

    async def notify(self, user_id: uuid.UUID | None, notification_type: str, order: Order) -> None:
        if user_id is None:
            return
        body = _make_body(user_id, notification_type, order)
        try:
            await self.enqueue(body)
        except Exception:
            notifications_failed_total.inc()
            logger.exception(
                "notification.enqueue_failed order_id=%s user_id=%s type=%s",
                order.id,
                user_id,
                notification_type,
            )

    async def order_status_changed(self, order: Order) -> None:
        notification_type = STATUS_NOTIFICATIONS.get(order.status)
        if notification_type:
            await self.notify(order.customer_id, notification_type, order)


class QueueNotifier(Notifier):
    def __init__(self, r: redis.Redis | None = None, sqs_queue_url: str | None = None):
        self._redis = r
        self._sqs_queue_url = sqs_queue_url

    async def enqueue(self, body: dict) -> None:
        if self._sqs_queue_url:
            await send_message(self._sqs_queue_url, body, group_id=body["order_id"])
        elif self._redis is not None:
            await self._redis.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(body))
        else:
            raise RuntimeError("No notification backend configured")


class RecordingNotifier(Notifier):
    """Keeps jobs in memory; used with the in-process backends."""

    def __init__(self) -> None:
        self.jobs: list[dict] = []

    async def enqueue(self, body: dict) -> None:
        self.jobs.append(body)
        logger.info("notification.recorded type=%s order_id=%s", body["notification_type"], body["order_id"])
