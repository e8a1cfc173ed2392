import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from gigguin.config import settings
from gigguin.db import close_pool, get_pool, init_schema
from gigguin.errors import (
    ConcurrencyConflict,
    ConditionsNotMet,
    MissingRequiredFields,
    PipelineNotFound,
    TransitionNotAllowed,
)
from gigguin.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from gigguin.redis_client import close_redis, get_redis
from gigguin.routes import admin, events, pipelines
from gigguin.sqs_client import get_queue_depth

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    await init_schema(await get_pool())
    yield
    await close_redis()
    await close_pool()


app = FastAPI(title="Gigguin Event Pipeline", lifespan=lifespan)
app.include_router(events.router)
app.include_router(pipelines.router)
app.include_router(admin.router)


@app.exception_handler(PipelineNotFound)
async def pipeline_not_found(request: Request, exc: PipelineNotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"status": "pipeline_not_found", "event_id": exc.event_id, "detail": str(exc)},
    )


@app.exception_handler(TransitionNotAllowed)
async def transition_not_allowed(request: Request, exc: TransitionNotAllowed) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "status": "transition_not_allowed",
            "current_stage": exc.current_stage.value,
            "target_stage": exc.target_stage.value,
            "detail": str(exc),
        },
    )


@app.exception_handler(ConcurrencyConflict)
async def concurrency_conflict(request: Request, exc: ConcurrencyConflict) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"status": "concurrency_conflict", "event_id": exc.event_id, "detail": str(exc)},
    )


@app.exception_handler(MissingRequiredFields)
async def missing_required_fields(request: Request, exc: MissingRequiredFields) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "status": "missing_required_fields",
            "stage": exc.stage.value,
            "fields": exc.fields,
            "detail": str(exc),
        },
    )


@app.exception_handler(ConditionsNotMet)
async def conditions_not_met(request: Request, exc: ConditionsNotMet) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "status": "conditions_not_met",
            "stage": exc.stage.value,
            "conditions": [c.value for c in exc.conditions],
            "detail": str(exc),
        },
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: pipeline transitions, hook dispatch, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception as e:
            logger.warning("Could not read SQS queue depth: %s", e)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
