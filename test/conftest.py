"""Shared fixtures: in-memory pipeline store with compare-and-swap saves, recording dispatcher, fake Redis."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import FakeAsyncRedis

from gigguin import redis_client
from gigguin.models import Event, EventPipeline
from gigguin.pipeline import new_pipeline
from gigguin.stages import EventStage

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class InMemoryPipelineStore:
    """Same contract as PostgresPipelineStore. Loads yield once so concurrent tasks can interleave."""

    def __init__(self):
        self.pipelines: dict[str, EventPipeline] = {}
        self.events: dict[str, Event] = {}
        self.saves = 0

    def put(self, pipeline: EventPipeline) -> EventPipeline:
        self.pipelines[pipeline.event_id] = pipeline.model_copy(deep=True)
        return pipeline

    async def load_pipeline(self, event_id):
        stored = self.pipelines.get(event_id)
        snapshot = stored.model_copy(deep=True) if stored else None
        await asyncio.sleep(0)
        return snapshot

    async def save_pipeline(self, pipeline, expected_version, event_status=None):
        stored = self.pipelines.get(pipeline.event_id)
        if stored is None or stored.version != expected_version:
            return False
        self.pipelines[pipeline.event_id] = pipeline.model_copy(deep=True)
        self.saves += 1
        event = self.events.get(pipeline.event_id)
        if event is not None and event_status is not None:
            self.events[pipeline.event_id] = event.model_copy(update={"status": event_status})
        return True

    async def create_event_with_pipeline(self, event, pipeline):
        self.events[event.id] = event
        self.put(pipeline)

    async def get_event(self, event_id):
        return self.events.get(event_id)

    async def list_pipelines(self, org_id, stage=None):
        found = [
            p.model_copy(deep=True)
            for p in self.pipelines.values()
            if p.org_id == org_id and (stage is None or p.stage == stage)
        ]
        return sorted(found, key=lambda p: p.updated_at, reverse=True)

    async def find_expired(self, stage, now):
        column = {EventStage.HOLD: "hold_expires_at", EventStage.OFFER: "offer_expires_at"}.get(stage)
        if column is None:
            return []
        return [
            p.model_copy(deep=True)
            for p in self.pipelines.values()
            if p.stage == stage and getattr(p, column) is not None and getattr(p, column) <= now
        ]


class RecordingDispatcher:
    def __init__(self):
        self.calls: list[dict] = []

    async def dispatch(self, hooks, pipeline, actor, automatic=False):
        self.calls.append({
            "hooks": list(hooks),
            "event_id": pipeline.event_id,
            "stage": pipeline.stage,
            "actor": actor,
            "automatic": automatic,
        })

    @property
    def hooks(self):
        return [h for call in self.calls for h in call["hooks"]]


class BrokenDispatcher(RecordingDispatcher):
    """Records the call, then fails the way a queue outage does."""

    async def dispatch(self, hooks, pipeline, actor, automatic=False):
        await super().dispatch(hooks, pipeline, actor, automatic)
        raise ConnectionError("queue unavailable")


class FakeOrganizationLookup:
    def __init__(self, subdomains=None, domains=None):
        self.subdomains = subdomains or {}
        self.domains = domains or {}

    async def by_subdomain(self, subdomain):
        return self.subdomains.get(subdomain)

    async def by_custom_domain(self, domain):
        return self.domains.get(domain)


@pytest.fixture
def store():
    return InMemoryPipelineStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def broken_dispatcher():
    return BrokenDispatcher()


@pytest.fixture
def org_lookup():
    return FakeOrganizationLookup(
        subdomains={"acme": "org-acme", "other": "org-other"},
        domains={"events.acme-club.com": "org-acme"},
    )


@pytest.fixture
def make_pipeline(store):
    """Store a fresh pipeline at hold (hold_expires_at a week out) and return it."""

    def _make(event_id="evt-1", org_id="org-acme", **fields):
        pipeline = new_pipeline(event_id, org_id, "user-1", hold_expires_at=NOW + timedelta(days=7), now=NOW)
        if fields:
            pipeline = pipeline.model_copy(update=fields)
        return store.put(pipeline)

    return _make


@pytest.fixture
async def fake_redis(monkeypatch):
    """Fake Redis installed as the shared client used by gigguin.redis_client.get_redis()."""
    r = FakeAsyncRedis(decode_responses=True)
    monkeypatch.setattr(redis_client, "_redis", r)
    yield r
    await r.flushall()
    await r.aclose()
