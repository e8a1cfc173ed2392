"""
Event pipeline transitions.

prepare_transition validates a requested stage change against a loaded snapshot and
builds the next snapshot; it never touches storage or the snapshot it was given.
apply_transition writes that snapshot with a compare-and-swap on version, so of two
requests prepared from the same snapshot only one can land. Hooks are dispatched
only after the write succeeds: current stage's on_exit, then target stage's on_enter.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from gigguin.automations import send_stage_transition_email
from gigguin.config import settings
from gigguin.db import PipelineStore
from gigguin.errors import (
    ConcurrencyConflict,
    ConditionsNotMet,
    MissingRequiredFields,
    PipelineNotFound,
    TransitionNotAllowed,
)
from gigguin.hooks import HookDispatcher
from gigguin.metrics import hooks_failed_total, pipeline_transitions_rejected_total, pipeline_transitions_total
from gigguin.models import (
    Event,
    EventCreate,
    EventPipeline,
    EventStatus,
    PipelineStatistics,
    PipelineUpdates,
    StageTransition,
)
from gigguin.stages import STAGE_CONFIG, Condition, EventStage, Hook, can_transition_to, hooks_for_transition

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

ConditionChecker = Callable[[Condition, EventPipeline], bool]

# Timestamp stamped on entry to a stage
ENTRY_TIMESTAMPS: dict[EventStage, str] = {
    EventStage.OFFER: "offer_sent_at",
    EventStage.CONFIRMED: "confirmed_at",
    EventStage.MARKETING: "marketing_started_at",
    EventStage.COMPLETED: "completed_at",
}

# Cleared on offer -> hold so a later re-offer starts clean
OFFER_FIELDS = ("offer_amount", "offer_expires_at", "offer_sent_at", "offer_terms")

EVENT_STATUS_ON_ENTRY: dict[EventStage, EventStatus] = {
    EventStage.CONFIRMED: "published",
    EventStage.MARKETING: "published",
    EventStage.CANCELLED: "cancelled",
}


@dataclass(frozen=True)
class PreparedTransition:
    before: EventPipeline
    after: EventPipeline
    transition: StageTransition
    hooks: tuple[Hook, ...]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing(value) -> bool:
    # 0 attendance or a 0 amount is a real value; False is not (contract_signed=False)
    return value is None or value is False or value == ""


def missing_required_fields(pipeline: EventPipeline, stage: EventStage) -> list[str]:
    return [f for f in STAGE_CONFIG[stage].required_fields if _is_missing(getattr(pipeline, f))]


def prepare_transition(
    pipeline: EventPipeline,
    target_stage: EventStage,
    actor: str,
    notes: str | None = None,
    automatic: bool = False,
    updates: PipelineUpdates | None = None,
    expected_stage: EventStage | None = None,
    now: datetime | None = None,
    condition_checker: ConditionChecker | None = None,
) -> PreparedTransition:
    current_stage = pipeline.stage

    if expected_stage is not None and current_stage != expected_stage:
        pipeline_transitions_rejected_total.labels(reason="stale").inc()
        raise TransitionNotAllowed(
            current_stage,
            target_stage,
            reason=f"pipeline is no longer in {expected_stage.value}",
        )

    if not can_transition_to(current_stage, target_stage):
        pipeline_transitions_rejected_total.labels(reason="not_allowed").inc()
        raise TransitionNotAllowed(current_stage, target_stage)

    now = now or _utcnow()
    changes = updates.model_dump(exclude_unset=True) if updates else {}
    if current_stage == EventStage.OFFER and target_stage == EventStage.HOLD:
        for field in OFFER_FIELDS:
            changes.setdefault(field, None)
        # A re-held event gets a fresh hold window unless the caller sets one
        changes.setdefault("hold_expires_at", now + timedelta(days=settings.hold_duration_days))

    # Validate against the merged snapshot; the original stays untouched
    candidate = pipeline.model_copy(update=changes)
    missing = missing_required_fields(candidate, target_stage)
    if missing:
        pipeline_transitions_rejected_total.labels(reason="missing_fields").inc()
        raise MissingRequiredFields(target_stage, missing)

    if condition_checker is not None:
        failed = [c for c in STAGE_CONFIG[target_stage].conditions if not condition_checker(c, candidate)]
        if failed:
            pipeline_transitions_rejected_total.labels(reason="conditions").inc()
            raise ConditionsNotMet(target_stage, failed)

    transition = StageTransition(
        from_stage=current_stage,
        to_stage=target_stage,
        transitioned_at=now,
        transitioned_by=actor,
        notes=notes,
        automatic=automatic,
    )
    stamped = {ENTRY_TIMESTAMPS[target_stage]: now} if target_stage in ENTRY_TIMESTAMPS else {}
    after = candidate.model_copy(update={
        **stamped,
        "stage": target_stage,
        "previous_stage": current_stage,
        "stage_history": [*pipeline.stage_history, transition],
        "version": pipeline.version + 1,
        "updated_at": now,
        "updated_by": actor,
    })
    return PreparedTransition(
        before=pipeline,
        after=after,
        transition=transition,
        hooks=hooks_for_transition(current_stage, target_stage),
    )


async def apply_transition(
    store: PipelineStore,
    pipeline: EventPipeline,
    target_stage: EventStage,
    actor: str,
    notes: str | None = None,
    automatic: bool = False,
    updates: PipelineUpdates | None = None,
    expected_stage: EventStage | None = None,
    dispatcher: HookDispatcher | None = None,
    condition_checker: ConditionChecker | None = None,
    now: datetime | None = None,
) -> EventPipeline:
    """
    Transition a loaded pipeline snapshot and persist it.
    Raises TransitionNotAllowed / MissingRequiredFields / ConditionsNotMet before any write,
    ConcurrencyConflict when the stored version moved since the snapshot was loaded.
    Returns the new snapshot.
    """
    prepared = prepare_transition(
        pipeline,
        target_stage,
        actor,
        notes=notes,
        automatic=automatic,
        updates=updates,
        expected_stage=expected_stage,
        now=now,
        condition_checker=condition_checker,
    )
    saved = await store.save_pipeline(
        prepared.after,
        expected_version=pipeline.version,
        event_status=EVENT_STATUS_ON_ENTRY.get(target_stage),
    )
    if not saved:
        pipeline_transitions_rejected_total.labels(reason="conflict").inc()
        raise ConcurrencyConflict(pipeline.event_id, pipeline.version)

    pipeline_transitions_total.labels(
        from_stage=pipeline.stage.value,
        to_stage=target_stage.value,
        automatic=str(automatic).lower(),
    ).inc()
    logger.info(
        "event_id=%s %s -> %s by %s (automatic=%s, version=%d)",
        pipeline.event_id,
        pipeline.stage.value,
        target_stage.value,
        actor,
        automatic,
        prepared.after.version,
    )
    # The transition is committed from here on; notification or hook failures never undo it
    try:
        await send_stage_transition_email(prepared.after, prepared.transition)
    except Exception:
        logger.exception("Stage transition email failed for event_id=%s", pipeline.event_id)
    await _dispatch_committed(dispatcher, prepared.hooks, prepared.after, actor, automatic)
    return prepared.after


async def _dispatch_committed(
    dispatcher: HookDispatcher | None,
    hooks: Sequence[Hook],
    pipeline: EventPipeline,
    actor: str,
    automatic: bool = False,
) -> None:
    if dispatcher is None:
        return
    try:
        await dispatcher.dispatch(hooks, pipeline, actor, automatic)
    except Exception:
        hooks_failed_total.inc()
        logger.exception(
            "Hook dispatch failed for event_id=%s stage=%s (hooks=%s)",
            pipeline.event_id,
            pipeline.stage.value,
            [h.value for h in hooks],
        )


async def transition_stage(
    store: PipelineStore,
    event_id: str,
    target_stage: EventStage,
    actor: str,
    notes: str | None = None,
    automatic: bool = False,
    updates: PipelineUpdates | None = None,
    expected_stage: EventStage | None = None,
    expected_version: int | None = None,
    org_id: str | None = None,
    dispatcher: HookDispatcher | None = None,
    condition_checker: ConditionChecker | None = None,
) -> EventPipeline:
    """
    Load the pipeline for event_id and transition it. expected_version, when given, pins the
    request to the snapshot the caller saw (e.g. the version shown in a browser tab).
    org_id, when given, hides pipelines of other organizations (PipelineNotFound).
    """
    pipeline = await store.load_pipeline(event_id)
    if pipeline is None or (org_id is not None and pipeline.org_id != org_id):
        raise PipelineNotFound(event_id)
    if expected_version is not None and pipeline.version != expected_version:
        pipeline_transitions_rejected_total.labels(reason="conflict").inc()
        raise ConcurrencyConflict(event_id, expected_version)
    return await apply_transition(
        store,
        pipeline,
        target_stage,
        actor,
        notes=notes,
        automatic=automatic,
        updates=updates,
        expected_stage=expected_stage,
        dispatcher=dispatcher,
        condition_checker=condition_checker,
    )


def new_pipeline(
    event_id: str,
    org_id: str,
    actor: str,
    hold_expires_at: datetime,
    now: datetime | None = None,
) -> EventPipeline:
    """A fresh pipeline at hold with an empty history."""
    now = now or _utcnow()
    return EventPipeline(
        event_id=event_id,
        org_id=org_id,
        stage=EventStage.HOLD,
        hold_expires_at=hold_expires_at,
        created_at=now,
        updated_at=now,
        created_by=actor,
        updated_by=actor,
    )


async def create_event_with_pipeline(
    store: PipelineStore,
    org_id: str,
    data: EventCreate,
    actor: str,
    dispatcher: HookDispatcher | None = None,
    hold_duration: timedelta | None = None,
    now: datetime | None = None,
) -> tuple[Event, EventPipeline]:
    """Create a draft event and its pipeline at hold, then run the hold on_enter hooks."""
    now = now or _utcnow()
    hold_duration = hold_duration or timedelta(days=settings.hold_duration_days)
    event = Event(
        **data.model_dump(),
        id=uuid.uuid4().hex,
        org_id=org_id,
        status="draft",
        created_at=now,
        updated_at=now,
        created_by=actor,
    )
    pipeline = new_pipeline(event.id, org_id, actor, hold_expires_at=now + hold_duration, now=now)
    await store.create_event_with_pipeline(event, pipeline)
    logger.info("Created event_id=%s org_id=%s at hold (expires %s)", event.id, org_id, pipeline.hold_expires_at)
    await _dispatch_committed(dispatcher, STAGE_CONFIG[EventStage.HOLD].on_enter, pipeline, actor)
    return event, pipeline


def compute_pipeline_statistics(pipelines: list[EventPipeline]) -> PipelineStatistics:
    by_stage = {stage: 0 for stage in EventStage}
    durations: dict[EventStage, list[float]] = {stage: [] for stage in EventStage}

    for pipeline in pipelines:
        by_stage[pipeline.stage] += 1
        history = pipeline.stage_history
        if not history:
            continue
        # Each stay ends at the next transition; the first stay (at hold) starts at creation
        entered_at = pipeline.created_at
        for entry in history:
            durations[entry.from_stage].append((entry.transitioned_at - entered_at).total_seconds())
            entered_at = entry.transitioned_at

    total = len(pipelines)
    non_cancelled = total - by_stage[EventStage.CANCELLED]
    conversion_rate = by_stage[EventStage.COMPLETED] / non_cancelled * 100 if non_cancelled else 0.0
    average_days = {
        stage: (sum(times) / len(times) / 86400 if times else 0.0)
        for stage, times in durations.items()
    }
    return PipelineStatistics(
        total=total,
        by_stage=by_stage,
        conversion_rate=conversion_rate,
        average_days_in_stage=average_days,
    )
