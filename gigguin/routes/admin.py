from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from gigguin.config import settings
from gigguin.db import PipelineStore
from gigguin.expiry import sweep_expired_stages
from gigguin.hooks import HookDispatcher
from gigguin.queue import replay_redis_dlq
from gigguin.routes.deps import get_dispatcher, get_store
from gigguin.sqs_client import replay_dlq_to_main

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay failed hook jobs from the DLQ (SQS when configured, else Redis) to the main queue.
    Returns number of messages replayed.
    """
    if settings.sqs_queue_url:
        replayed = await replay_dlq_to_main(limit=limit)
    else:
        replayed = await replay_redis_dlq(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )


@router.post("/expiry/sweep")
async def expiry_sweep(
    store: PipelineStore = Depends(get_store),
    dispatcher: HookDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """Cancel expired holds and offers now instead of waiting for the worker's next sweep."""
    summary = await sweep_expired_stages(store, dispatcher)
    return JSONResponse(status_code=200, content={"status": "ok", **summary})
