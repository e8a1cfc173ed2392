"""
Event pipeline stage machine: stages, legal transitions, required fields and automation hooks.
STAGE_CONFIG is built once at import and is read-only.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class EventStage(str, Enum):
    HOLD = "hold"
    OFFER = "offer"
    CONFIRMED = "confirmed"
    MARKETING = "marketing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Hook(str, Enum):
    """Automation run on stage entry/exit. Resolved by the automation registry."""

    SEND_HOLD_CONFIRMATION = "send_hold_confirmation"
    SCHEDULE_HOLD_EXPIRY = "schedule_hold_expiry"
    SEND_OFFER_EMAIL = "send_offer_email"
    SCHEDULE_OFFER_REMINDER = "schedule_offer_reminder"
    SCHEDULE_OFFER_EXPIRY = "schedule_offer_expiry"
    CANCEL_OFFER_REMINDER = "cancel_offer_reminder"
    SEND_CONFIRMATION_EMAIL = "send_confirmation_email"
    CREATE_CALENDAR_EVENT = "create_calendar_event"
    REQUEST_DEPOSIT = "request_deposit"
    GENERATE_MARKETING_ASSETS = "generate_marketing_assets"
    SCHEDULE_PROMO_REMINDERS = "schedule_promo_reminders"
    ACTIVATE_TICKETING = "activate_ticketing"
    PROCESS_SETTLEMENT = "process_settlement"
    SEND_THANK_YOU_EMAIL = "send_thank_you_email"
    REQUEST_REVIEWS = "request_reviews"
    SEND_CANCELLATION_NOTICE = "send_cancellation_notice"
    PROCESS_REFUNDS = "process_refunds"
    RELEASE_VENUE_HOLD = "release_venue_hold"


class Condition(str, Enum):
    CHECK_VENUE_AVAILABILITY = "check_venue_availability"
    CHECK_CONTRACT_SIGNED = "check_contract_signed"
    CHECK_DEPOSIT_RECEIVED = "check_deposit_received"


@dataclass(frozen=True)
class StageConfig:
    label: str
    color: str
    icon: str
    next_stages: frozenset[EventStage]
    required_fields: tuple[str, ...] = ()
    on_enter: tuple[Hook, ...] = ()
    on_exit: tuple[Hook, ...] = ()
    conditions: tuple[Condition, ...] = ()


STAGE_CONFIG: Mapping[EventStage, StageConfig] = MappingProxyType({
    EventStage.HOLD: StageConfig(
        label="Hold",
        color="yellow",
        icon="Clock",
        next_stages=frozenset({EventStage.OFFER, EventStage.CANCELLED}),
        required_fields=("hold_expires_at",),
        on_enter=(Hook.SEND_HOLD_CONFIRMATION, Hook.SCHEDULE_HOLD_EXPIRY),
        conditions=(Condition.CHECK_VENUE_AVAILABILITY,),
    ),
    EventStage.OFFER: StageConfig(
        label="Offer",
        color="blue",
        icon="Send",
        next_stages=frozenset({EventStage.CONFIRMED, EventStage.HOLD, EventStage.CANCELLED}),
        required_fields=("offer_amount", "offer_expires_at"),
        on_enter=(Hook.SEND_OFFER_EMAIL, Hook.SCHEDULE_OFFER_REMINDER, Hook.SCHEDULE_OFFER_EXPIRY),
        on_exit=(Hook.CANCEL_OFFER_REMINDER,),
    ),
    EventStage.CONFIRMED: StageConfig(
        label="Confirmed",
        color="green",
        icon="CheckCircle",
        next_stages=frozenset({EventStage.MARKETING, EventStage.CANCELLED}),
        required_fields=("contract_signed",),
        on_enter=(Hook.SEND_CONFIRMATION_EMAIL, Hook.CREATE_CALENDAR_EVENT, Hook.REQUEST_DEPOSIT),
        conditions=(Condition.CHECK_CONTRACT_SIGNED, Condition.CHECK_DEPOSIT_RECEIVED),
    ),
    EventStage.MARKETING: StageConfig(
        label="Marketing",
        color="purple",
        icon="Megaphone",
        next_stages=frozenset({EventStage.COMPLETED}),
        on_enter=(Hook.GENERATE_MARKETING_ASSETS, Hook.SCHEDULE_PROMO_REMINDERS, Hook.ACTIVATE_TICKETING),
    ),
    EventStage.COMPLETED: StageConfig(
        label="Completed",
        color="gray",
        icon="CheckCircle2",
        next_stages=frozenset(),  # terminal
        required_fields=("final_attendance", "settlement_complete"),
        on_enter=(Hook.PROCESS_SETTLEMENT, Hook.SEND_THANK_YOU_EMAIL, Hook.REQUEST_REVIEWS),
    ),
    EventStage.CANCELLED: StageConfig(
        label="Cancelled",
        color="red",
        icon="XCircle",
        next_stages=frozenset(),  # terminal
        on_enter=(Hook.SEND_CANCELLATION_NOTICE, Hook.PROCESS_REFUNDS, Hook.RELEASE_VENUE_HOLD),
    ),
})

# Progress line; cancelled sits off it
HAPPY_PATH: tuple[EventStage, ...] = (
    EventStage.HOLD,
    EventStage.OFFER,
    EventStage.CONFIRMED,
    EventStage.MARKETING,
    EventStage.COMPLETED,
)


def can_transition_to(current_stage: EventStage, target_stage: EventStage) -> bool:
    """True if target_stage is a legal next stage of current_stage."""
    config = STAGE_CONFIG.get(current_stage)
    if config is None:
        return False
    return target_stage in config.next_stages


def hooks_for_transition(current_stage: EventStage, target_stage: EventStage) -> tuple[Hook, ...]:
    """Hooks to run for a transition: current stage's on_exit, then target stage's on_enter."""
    return STAGE_CONFIG[current_stage].on_exit + STAGE_CONFIG[target_stage].on_enter


def get_stage_progress(stage: EventStage) -> float | None:
    """Percent position along HAPPY_PATH (20..100). None for cancelled."""
    if stage not in HAPPY_PATH:
        return None
    return (HAPPY_PATH.index(stage) + 1) / len(HAPPY_PATH) * 100


def get_stage_label(stage: EventStage) -> str:
    return STAGE_CONFIG[stage].label


def get_stage_color(stage: EventStage) -> str:
    return STAGE_CONFIG[stage].color


def get_stage_icon(stage: EventStage) -> str:
    return STAGE_CONFIG[stage].icon
