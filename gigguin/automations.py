"""
Default automation handlers, one per Hook. Email, calendar, ticketing and payment
integrations live outside this service; handlers here record the request.
"""
import logging

from gigguin.hooks import AutomationRegistry, HookContext
from gigguin.models import EventPipeline, StageTransition
from gigguin.stages import Hook, get_stage_label

logger = logging.getLogger(__name__)

registry = AutomationRegistry()

EMAIL_HOOKS = (
    Hook.SEND_HOLD_CONFIRMATION,
    Hook.SEND_OFFER_EMAIL,
    Hook.SEND_CONFIRMATION_EMAIL,
    Hook.SEND_THANK_YOU_EMAIL,
    Hook.SEND_CANCELLATION_NOTICE,
    Hook.REQUEST_DEPOSIT,
    Hook.REQUEST_REVIEWS,
)

SCHEDULE_HOOKS = (
    Hook.SCHEDULE_HOLD_EXPIRY,
    Hook.SCHEDULE_OFFER_REMINDER,
    Hook.SCHEDULE_OFFER_EXPIRY,
    Hook.SCHEDULE_PROMO_REMINDERS,
)


async def send_stage_email(context: HookContext) -> None:
    subject = f"Event moved to {get_stage_label(context.stage)}"
    logger.info(
        "Email %s for event_id=%s org_id=%s: %r",
        context.hook.value,
        context.event_id,
        context.org_id,
        subject,
    )


async def schedule_reminder(context: HookContext) -> None:
    # Expiry itself is enforced by the worker's sweep over hold_expires_at / offer_expires_at
    logger.info("Scheduled %s for event_id=%s", context.hook.value, context.event_id)


for _hook in EMAIL_HOOKS:
    registry.register(_hook)(send_stage_email)
for _hook in SCHEDULE_HOOKS:
    registry.register(_hook)(schedule_reminder)


@registry.register(Hook.CANCEL_OFFER_REMINDER)
async def cancel_offer_reminder(context: HookContext) -> None:
    logger.info("Cancelled offer reminder for event_id=%s", context.event_id)


@registry.register(Hook.CREATE_CALENDAR_EVENT)
async def create_calendar_event(context: HookContext) -> None:
    logger.info("Calendar event requested for event_id=%s org_id=%s", context.event_id, context.org_id)


@registry.register(Hook.GENERATE_MARKETING_ASSETS)
async def generate_marketing_assets(context: HookContext) -> None:
    logger.info("Generating marketing assets for event_id=%s", context.event_id)


@registry.register(Hook.ACTIVATE_TICKETING)
async def activate_ticketing(context: HookContext) -> None:
    logger.info("Activating ticketing for event_id=%s", context.event_id)


@registry.register(Hook.PROCESS_SETTLEMENT)
async def process_settlement(context: HookContext) -> None:
    logger.info("Processing settlement for event_id=%s", context.event_id)


@registry.register(Hook.PROCESS_REFUNDS)
async def process_refunds(context: HookContext) -> None:
    logger.info("Processing refunds for event_id=%s (automatic=%s)", context.event_id, context.automatic)


@registry.register(Hook.RELEASE_VENUE_HOLD)
async def release_venue_hold(context: HookContext) -> None:
    logger.info("Releasing venue hold for event_id=%s", context.event_id)


async def send_stage_transition_email(pipeline: EventPipeline, transition: StageTransition) -> None:
    """Sent to the organization for every stage change, next to the stage's own hooks."""
    logger.info(
        "Stage transition email for event_id=%s org_id=%s: %s -> %s (by %s)",
        pipeline.event_id,
        pipeline.org_id,
        get_stage_label(transition.from_stage),
        get_stage_label(transition.to_stage),
        transition.transitioned_by,
    )
