"""
Worker: pull automation hook jobs from Redis or AWS SQS and run them through the registry.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Periodic expiry sweep: cancels holds/offers whose deadline passed.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m gigguin.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis

from gigguin.automations import registry
from gigguin.config import settings
from gigguin.db import PostgresPipelineStore, close_pool, get_pool, init_schema
from gigguin.expiry import sweep_expired_stages
from gigguin.hooks import AutomationRegistry, HookContext
from gigguin.metrics import hooks_dlq_total, hooks_failed_total, hooks_processed_total
from gigguin.queue import HOOK_DLQ_KEY, HOOK_QUEUE_KEY
from gigguin.routes.deps import get_dispatcher
from gigguin.sqs_client import change_message_visibility, delete_message, receive_messages, send_message

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def parse_job(raw: str) -> tuple[dict, HookContext] | None:
    """Decode a queued job. None (and a warning) for anything that can never run."""
    try:
        job = json.loads(raw)
        return job, HookContext.from_job(job)
    except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
        logger.warning("Dropping malformed hook job: %s", e)
        return None


def _dlq_body(job: dict, attempts: int, error: Exception) -> dict:
    return {**job, "attempts": attempts, "last_error": str(error), "failed_at": time.time()}


def retry_backoff(attempts: int) -> float:
    """Seconds to wait before re-queuing a failed Redis job."""
    return 2 ** attempts


async def process_one_redis(
    r: redis.Redis,
    raw: str,
    sem: asyncio.Semaphore,
    hooks: AutomationRegistry = registry,
) -> None:
    parsed = parse_job(raw)
    if parsed is None:
        return
    job, context = parsed
    attempts = job.get("attempts", 0)

    async with sem:
        try:
            await hooks.run(context)
            hooks_processed_total.inc()
            logger.info("Ran hook=%s event_id=%s job_id=%s", context.hook.value, context.event_id, job.get("job_id"))
        except Exception as e:
            hooks_failed_total.inc()
            logger.exception(
                "Hook %s failed for event_id=%s (attempt %d): %s",
                context.hook.value, context.event_id, attempts + 1, e,
            )
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                await r.lpush(HOOK_DLQ_KEY, json.dumps(_dlq_body(job, next_attempts, e)))
                hooks_dlq_total.inc()
                logger.warning("Moved job_id=%s to DLQ after %d attempts", job.get("job_id"), next_attempts)
            else:
                backoff_sec = retry_backoff(attempts)
                logger.info(
                    "Re-queuing job_id=%s in %ss (attempt %d/%d)",
                    job.get("job_id"), backoff_sec, next_attempts, settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                await r.lpush(HOOK_QUEUE_KEY, json.dumps({**job, "attempts": next_attempts}))


async def process_one_sqs(
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
    hooks: AutomationRegistry = registry,
) -> None:
    parsed = parse_job(body)
    if parsed is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return
    job, context = parsed

    async with sem:
        try:
            await hooks.run(context)
            hooks_processed_total.inc()
            logger.info("Ran hook=%s event_id=%s job_id=%s", context.hook.value, context.event_id, job.get("job_id"))
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            hooks_failed_total.inc()
            logger.exception("Hook %s failed for event_id=%s (receive #%d): %s", context.hook.value, context.event_id, receive_count, e)
            if receive_count >= settings.worker_max_retries and settings.sqs_dlq_url:
                await send_message(_dlq_body(job, receive_count, e), dlq=True)
                await asyncio.to_thread(delete_message, receipt_handle)
                hooks_dlq_total.inc()
                return
            # Don't delete: message will reappear after visibility timeout
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def run_expiry_sweeper(shutdown_event: asyncio.Event) -> None:
    store = PostgresPipelineStore(await get_pool())
    dispatcher = get_dispatcher()
    while not shutdown_event.is_set():
        try:
            await sweep_expired_stages(store, dispatcher)
        except Exception:
            logger.exception("Expiry sweep failed; retrying in %ds", settings.expiry_sweep_interval_seconds)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=settings.expiry_sweep_interval_seconds)
        except asyncio.TimeoutError:
            pass


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        HOOK_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(HOOK_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await r.aclose()


async def run_worker_sqs(shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    await init_schema(await get_pool())
    sweeper = asyncio.create_task(run_expiry_sweeper(shutdown_event))
    try:
        if settings.sqs_queue_url:
            await run_worker_sqs(shutdown_event)
        else:
            await run_worker_redis(shutdown_event)
    finally:
        shutdown_event.set()
        await asyncio.gather(sweeper, return_exceptions=True)
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
