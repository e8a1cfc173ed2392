"""
Push automation hook jobs to queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json
import uuid

from gigguin.config import settings
from gigguin.redis_client import get_redis
from gigguin.sqs_client import send_message

HOOK_QUEUE_KEY = "queue:pipeline_hooks"
HOOK_DLQ_KEY = "queue:pipeline_hooks:dlq"


def make_job(
    hook: str,
    event_id: str,
    org_id: str,
    stage: str,
    actor: str,
    automatic: bool = False,
    attempts: int = 0,
) -> dict:
    return {
        "job_id": uuid.uuid4().hex,
        "hook": hook,
        "event_id": event_id,
        "org_id": org_id,
        "stage": stage,
        "actor": actor,
        "automatic": automatic,
        "attempts": attempts,
    }


async def push_job(job: dict) -> None:
    if settings.sqs_queue_url:
        await send_message(job)
    else:
        r = await get_redis()
        await r.lpush(HOOK_QUEUE_KEY, json.dumps(job))


async def get_queue_length() -> int:
    r = await get_redis()
    return await r.llen(HOOK_QUEUE_KEY)


async def replay_redis_dlq(limit: int = 100) -> int:
    """Move up to limit jobs from the Redis DLQ back to the main queue with attempts reset."""
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(HOOK_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            job = json.loads(raw)
        except json.JSONDecodeError:
            continue
        job.pop("last_error", None)
        job.pop("failed_at", None)
        job["attempts"] = 0
        await r.lpush(HOOK_QUEUE_KEY, json.dumps(job))
    return replayed
