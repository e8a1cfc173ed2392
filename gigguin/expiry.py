"""
Automatic cancellation of expired holds and offers. Run periodically by the worker
(or on demand via POST /admin/expiry/sweep).
"""
import logging
from datetime import datetime, timezone

from gigguin.db import PipelineStore
from gigguin.errors import ConcurrencyConflict, TransitionNotAllowed
from gigguin.hooks import HookDispatcher
from gigguin.metrics import pipeline_expired_total
from gigguin.pipeline import SYSTEM_ACTOR, apply_transition
from gigguin.stages import EventStage

logger = logging.getLogger(__name__)

EXPIRY_NOTES: dict[EventStage, str] = {
    EventStage.HOLD: "Hold expired automatically",
    EventStage.OFFER: "Offer expired without response",
}


async def sweep_expired_stages(
    store: PipelineStore,
    dispatcher: HookDispatcher | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Cancel every pipeline whose hold or offer deadline has passed.
    A pipeline that moved on (or was raced) since it was found is skipped, not reported as an error.
    Returns counts: {"hold": n, "offer": n, "skipped": n}.
    """
    now = now or datetime.now(timezone.utc)
    summary = {"hold": 0, "offer": 0, "skipped": 0}

    for stage, notes in EXPIRY_NOTES.items():
        for pipeline in await store.find_expired(stage, now):
            try:
                await apply_transition(
                    store,
                    pipeline,
                    EventStage.CANCELLED,
                    SYSTEM_ACTOR,
                    notes=notes,
                    automatic=True,
                    expected_stage=stage,
                    dispatcher=dispatcher,
                    now=now,
                )
            except (TransitionNotAllowed, ConcurrencyConflict) as e:
                summary["skipped"] += 1
                logger.info("Expiry skipped for event_id=%s: %s", pipeline.event_id, e)
                continue
            summary[stage.value] += 1
            pipeline_expired_total.labels(stage=stage.value).inc()

    if summary["hold"] or summary["offer"]:
        logger.info("Expiry sweep: %s", summary)
    return summary
