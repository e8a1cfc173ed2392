from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from gigguin.db import PipelineStore
from gigguin.pipeline import compute_pipeline_statistics
from gigguin.routes.deps import get_org_id, get_store
from gigguin.stages import STAGE_CONFIG, get_stage_progress

router = APIRouter(tags=["pipelines"])


@router.get("/pipelines/stats")
async def pipeline_stats(
    org_id: str = Depends(get_org_id),
    store: PipelineStore = Depends(get_store),
) -> JSONResponse:
    """Counts by stage, conversion rate (completed / non-cancelled) and average days per stage."""
    stats = compute_pipeline_statistics(await store.list_pipelines(org_id))
    return JSONResponse(content=stats.model_dump(mode="json"))


@router.get("/stages")
async def stages() -> JSONResponse:
    return JSONResponse(content={
        stage.value: {
            "label": config.label,
            "color": config.color,
            "icon": config.icon,
            "progress": get_stage_progress(stage),
            "next_stages": sorted(s.value for s in config.next_stages),
            "required_fields": list(config.required_fields),
            "on_enter": [h.value for h in config.on_enter],
            "on_exit": [h.value for h in config.on_exit],
            "conditions": [c.value for c in config.conditions],
        }
        for stage, config in STAGE_CONFIG.items()
    })
