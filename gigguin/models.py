"""
Event and pipeline documents. Pipelines change only through gigguin.pipeline.
"""
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from gigguin.stages import EventStage

EventStatus = Literal["draft", "published", "cancelled"]


class StageTransition(BaseModel):
    """One entry of a pipeline's stage history. Never edited once appended."""

    model_config = ConfigDict(frozen=True)

    from_stage: EventStage
    to_stage: EventStage
    transitioned_at: datetime
    transitioned_by: str
    notes: str | None = None
    automatic: bool = False


class PipelineUpdates(BaseModel):
    """Stage fields a caller may set together with a transition."""

    model_config = ConfigDict(extra="forbid")

    hold_expires_at: datetime | None = None
    hold_notes: str | None = None
    offer_expires_at: datetime | None = None
    offer_amount: float | None = None
    offer_terms: str | None = None
    contract_signed: bool | None = None
    deposit_received: bool | None = None
    flyer_generated: bool | None = None
    social_media_scheduled: bool | None = None
    ticket_link_active: bool | None = None
    final_attendance: int | None = None
    final_revenue: float | None = None
    settlement_complete: bool | None = None


class EventPipeline(BaseModel):
    event_id: str
    org_id: str
    stage: EventStage = EventStage.HOLD
    previous_stage: EventStage | None = None
    stage_history: list[StageTransition] = Field(default_factory=list)
    version: int = 1

    # Hold
    hold_expires_at: datetime | None = None
    hold_notes: str | None = None

    # Offer
    offer_sent_at: datetime | None = None
    offer_expires_at: datetime | None = None
    offer_amount: float | None = None
    offer_terms: str | None = None

    # Confirmed
    confirmed_at: datetime | None = None
    contract_signed: bool | None = None
    deposit_received: bool | None = None

    # Marketing
    marketing_started_at: datetime | None = None
    flyer_generated: bool | None = None
    social_media_scheduled: bool | None = None
    ticket_link_active: bool | None = None

    # Completed
    completed_at: datetime | None = None
    final_attendance: int | None = None
    final_revenue: float | None = None
    settlement_complete: bool | None = None

    created_at: datetime
    updated_at: datetime
    created_by: str
    updated_by: str


class EventCreate(BaseModel):
    name: str
    date: datetime
    venue_id: str
    description: str | None = None
    capacity: int | None = None
    ticket_price: float | None = None


class Event(EventCreate):
    id: str
    org_id: str
    status: EventStatus = "draft"
    created_at: datetime
    updated_at: datetime
    created_by: str


class PipelineStatistics(BaseModel):
    total: int
    by_stage: dict[EventStage, int]
    conversion_rate: float
    average_days_in_stage: dict[EventStage, float]
