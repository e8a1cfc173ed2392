from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from gigguin.db import PipelineStore
from gigguin.errors import PipelineError, PipelineNotFound
from gigguin.hooks import HookDispatcher
from gigguin.models import EventCreate, EventPipeline, PipelineUpdates
from gigguin.pipeline import create_event_with_pipeline, transition_stage
from gigguin.redis_client import check_idempotency, idempotency_key, release_idempotency
from gigguin.routes.deps import get_actor, get_dispatcher, get_org_id, get_store
from gigguin.stages import EventStage, get_stage_color, get_stage_icon, get_stage_label, get_stage_progress

router = APIRouter(prefix="/events", tags=["events"])


class TransitionBody(BaseModel):
    target_stage: EventStage = Field(..., description="Stage to move the event to")
    notes: str | None = Field(default=None, description="Free text kept in the stage history")
    updates: PipelineUpdates | None = Field(default=None, description="Stage fields to set with the transition")
    expected_version: int | None = Field(default=None, description="Pipeline version the client last saw")
    request_id: str | None = Field(default=None, description="Idempotency key for retried submissions")


def pipeline_view(pipeline: EventPipeline) -> dict:
    return {
        "pipeline": pipeline.model_dump(mode="json"),
        "display": {
            "label": get_stage_label(pipeline.stage),
            "color": get_stage_color(pipeline.stage),
            "icon": get_stage_icon(pipeline.stage),
            "progress": get_stage_progress(pipeline.stage),
        },
    }


@router.post("")
async def create_event(
    body: EventCreate,
    org_id: str = Depends(get_org_id),
    actor: str = Depends(get_actor),
    store: PipelineStore = Depends(get_store),
    dispatcher: HookDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """Create a draft event with its pipeline at hold."""
    event, pipeline = await create_event_with_pipeline(store, org_id, body, actor, dispatcher=dispatcher)
    return JSONResponse(
        status_code=201,
        content={"event": event.model_dump(mode="json"), **pipeline_view(pipeline)},
    )


@router.get("")
async def list_events(
    stage: EventStage | None = None,
    org_id: str = Depends(get_org_id),
    store: PipelineStore = Depends(get_store),
) -> JSONResponse:
    pipelines = await store.list_pipelines(org_id, stage)
    return JSONResponse(content={"pipelines": [pipeline_view(p) for p in pipelines]})


@router.get("/{event_id}/pipeline")
async def get_pipeline(
    event_id: str,
    org_id: str = Depends(get_org_id),
    store: PipelineStore = Depends(get_store),
) -> JSONResponse:
    pipeline = await store.load_pipeline(event_id)
    if pipeline is None or pipeline.org_id != org_id:
        raise PipelineNotFound(event_id)
    return JSONResponse(content=pipeline_view(pipeline))


@router.post("/{event_id}/transition")
async def transition_event(
    event_id: str,
    body: TransitionBody,
    org_id: str = Depends(get_org_id),
    actor: str = Depends(get_actor),
    store: PipelineStore = Depends(get_store),
    dispatcher: HookDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """
    Move an event to another stage. Errors map to 404/409/422 (see main.py handlers).
    Same request_id twice -> 200 already_processed; a rejected request frees its request_id.
    """
    key = idempotency_key(org_id, body.request_id) if body.request_id else None
    if key and await check_idempotency(key):
        return JSONResponse(
            status_code=200,
            content={"status": "already_processed", "request_id": body.request_id},
        )

    try:
        pipeline = await transition_stage(
            store,
            event_id,
            body.target_stage,
            actor,
            notes=body.notes,
            updates=body.updates,
            expected_version=body.expected_version,
            org_id=org_id,
            dispatcher=dispatcher,
        )
    except PipelineError:
        if key:
            await release_idempotency(key)
        raise
    return JSONResponse(status_code=200, content={"status": "ok", **pipeline_view(pipeline)})
