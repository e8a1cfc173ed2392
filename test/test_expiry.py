"""Tests for the hold/offer expiry sweep."""
from datetime import timedelta

from conftest import NOW

from gigguin.expiry import sweep_expired_stages
from gigguin.models import PipelineUpdates
from gigguin.pipeline import SYSTEM_ACTOR, transition_stage
from gigguin.stages import EventStage, Hook

S = EventStage


async def test_expired_hold_is_cancelled_automatically(store, dispatcher, make_pipeline):
    make_pipeline(event_id="evt-expired", hold_expires_at=NOW - timedelta(hours=1))
    make_pipeline(event_id="evt-fresh", hold_expires_at=NOW + timedelta(days=1))

    summary = await sweep_expired_stages(store, dispatcher, now=NOW)

    assert summary == {"hold": 1, "offer": 0, "skipped": 0}
    expired = await store.load_pipeline("evt-expired")
    assert expired.stage == S.CANCELLED
    entry = expired.stage_history[-1]
    assert entry.automatic is True
    assert entry.transitioned_by == SYSTEM_ACTOR
    assert entry.notes == "Hold expired automatically"
    assert (await store.load_pipeline("evt-fresh")).stage == S.HOLD
    assert dispatcher.calls[0]["automatic"] is True
    assert dispatcher.hooks == [Hook.SEND_CANCELLATION_NOTICE, Hook.PROCESS_REFUNDS, Hook.RELEASE_VENUE_HOLD]


async def test_expired_offer_is_cancelled(store, make_pipeline):
    make_pipeline(stage=S.OFFER, offer_amount=800, offer_expires_at=NOW - timedelta(minutes=5))

    summary = await sweep_expired_stages(store, now=NOW)

    assert summary["offer"] == 1
    pipeline = await store.load_pipeline("evt-1")
    assert pipeline.stage == S.CANCELLED
    assert pipeline.previous_stage == S.OFFER
    assert pipeline.stage_history[-1].notes == "Offer expired without response"


async def test_deadline_exactly_now_expires(store, make_pipeline):
    make_pipeline(hold_expires_at=NOW)
    assert (await sweep_expired_stages(store, now=NOW))["hold"] == 1


async def test_superseded_by_manual_transition_is_skipped(store, make_pipeline):
    make_pipeline(hold_expires_at=NOW - timedelta(hours=1))
    found = await store.find_expired(S.HOLD, NOW)
    # The organizer sends an offer after the sweep found the hold but before it ran
    await transition_stage(
        store, "evt-1", S.OFFER, "user-1",
        updates=PipelineUpdates(offer_amount=500, offer_expires_at=NOW + timedelta(days=2)),
    )

    class StaleStore:
        def __getattr__(self, name):
            return getattr(store, name)

        async def find_expired(self, stage, now):
            return found if stage == S.HOLD else []

    summary = await sweep_expired_stages(StaleStore(), now=NOW)

    assert summary == {"hold": 0, "offer": 0, "skipped": 1}
    pipeline = await store.load_pipeline("evt-1")
    assert pipeline.stage == S.OFFER
    assert len(pipeline.stage_history) == 1


async def test_nothing_expired(store, make_pipeline):
    make_pipeline()
    assert await sweep_expired_stages(store, now=NOW) == {"hold": 0, "offer": 0, "skipped": 0}


async def test_dispatch_failure_does_not_stop_the_sweep(store, broken_dispatcher, make_pipeline):
    make_pipeline(event_id="evt-a", hold_expires_at=NOW - timedelta(hours=2))
    make_pipeline(event_id="evt-b", hold_expires_at=NOW - timedelta(hours=1))

    summary = await sweep_expired_stages(store, broken_dispatcher, now=NOW)

    assert summary == {"hold": 2, "offer": 0, "skipped": 0}
    assert (await store.load_pipeline("evt-a")).stage == S.CANCELLED
    assert (await store.load_pipeline("evt-b")).stage == S.CANCELLED
    assert len(broken_dispatcher.calls) == 2
