"""
AWS SQS helper for notification jobs. Used when SQS_NOTIFICATION_QUEUE_URL is set.
"""
import asyncio
import json
from typing import Any

import boto3

from dispatch_engine.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(queue_url: str, body: dict, group_id: str | None = None) -> None:
    """Send message to `queue_url` (run boto3 in thread to not block)."""
    client = _get_client()
    kwargs: dict[str, Any] = {"QueueUrl": queue_url, "MessageBody": json.dumps(body)}
    if group_id and queue_url.endswith(".fifo"):
        kwargs["MessageGroupId"] = group_id
        kwargs["MessageDeduplicationId"] = body.get("job_id", "")
    await asyncio.to_thread(client.send_message, **kwargs)
