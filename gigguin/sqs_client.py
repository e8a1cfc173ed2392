"""
AWS SQS helpers for hook jobs: send, receive, delete, DLQ replay. Used when SQS_QUEUE_URL is set.
Sync helpers are called by the worker in a thread; async helpers wrap boto3 with asyncio.to_thread.
"""
import asyncio
import json
from typing import Any

import boto3

from gigguin.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


def _queue_url(dlq: bool) -> str | None:
    return settings.sqs_dlq_url if dlq else settings.sqs_queue_url


async def send_message(body: dict, dlq: bool = False) -> None:
    """Send a hook job to the main queue, or the DLQ. No-op for the DLQ if it is not configured."""
    queue_url = _queue_url(dlq)
    if dlq and not queue_url:
        return
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=queue_url,
        MessageBody=json.dumps(body),
    )


def receive_messages(max_number: int = 10, wait_seconds: int = 5, dlq: bool = False) -> list[dict]:
    """Returns list of {ReceiptHandle, Body, Attributes}. Empty when the queue is not configured."""
    queue_url = _queue_url(dlq)
    if not queue_url:
        return []
    resp = _get_client().receive_message(
        QueueUrl=queue_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        MessageAttributeNames=["All"],
        AttributeNames=["ApproximateReceiveCount"],
    )
    return resp.get("Messages") or []


def delete_message(receipt_handle: str, dlq: bool = False) -> None:
    queue_url = _queue_url(dlq)
    if not queue_url:
        return
    _get_client().delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)


def change_message_visibility(receipt_handle: str, visibility_timeout: int) -> None:
    """Delay redelivery of a failed hook job (backoff)."""
    _get_client().change_message_visibility(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=visibility_timeout,
    )


async def get_queue_depth() -> tuple[int, int]:
    """Return (ApproximateNumberOfMessages, ApproximateNumberOfMessagesNotVisible) for metrics."""
    if not settings.sqs_queue_url:
        return 0, 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    return await asyncio.to_thread(_get)


async def replay_dlq_to_main(limit: int = 100) -> int:
    """
    Read hook jobs from DLQ, re-send them to main queue with attempts reset, delete from DLQ.
    Malformed jobs are dropped. Returns number of messages taken off the DLQ.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    replayed = 0
    while replayed < limit:
        messages = await asyncio.to_thread(receive_messages, 10, 0, True)
        if not messages:
            break
        for msg in messages:
            if replayed >= limit:
                break
            receipt = msg.get("ReceiptHandle") or ""
            try:
                data = json.loads(msg.get("Body") or "{}")
            except json.JSONDecodeError:
                data = {}
            if data.get("job_id") and data.get("hook") and data.get("event_id"):
                data.pop("last_error", None)
                data.pop("failed_at", None)
                data["attempts"] = 0
                await send_message(data)
            await asyncio.to_thread(delete_message, receipt, True)
            replayed += 1
    return replayed
