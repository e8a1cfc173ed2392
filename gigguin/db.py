"""
Async Postgres: events, event_pipelines (pipeline document + version for optimistic concurrency), organizations.
A pipeline save is a compare-and-swap on version; the event status change rides in the same transaction.
"""
import json
from datetime import datetime
from typing import Protocol

import asyncpg

from gigguin.config import settings
from gigguin.models import Event, EventPipeline, EventStatus
from gigguin.stages import EventStage

_pool: asyncpg.Pool | None = None

# Stage -> column holding its deadline, for the expiry sweep
EXPIRY_COLUMNS: dict[EventStage, str] = {
    EventStage.HOLD: "hold_expires_at",
    EventStage.OFFER: "offer_expires_at",
}


class PipelineStore(Protocol):
    async def load_pipeline(self, event_id: str) -> EventPipeline | None:
        ...

    async def save_pipeline(
        self,
        pipeline: EventPipeline,
        expected_version: int,
        event_status: EventStatus | None = None,
    ) -> bool:
        """Write pipeline only if the stored version still equals expected_version. False on conflict."""
        ...

    async def create_event_with_pipeline(self, event: Event, pipeline: EventPipeline) -> None:
        ...

    async def get_event(self, event_id: str) -> Event | None:
        ...

    async def list_pipelines(self, org_id: str, stage: EventStage | None = None) -> list[EventPipeline]:
        ...

    async def find_expired(self, stage: EventStage, now: datetime) -> list[EventPipeline]:
        ...


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS organizations (
                id VARCHAR(255) PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                subdomain VARCHAR(63) UNIQUE,
                custom_domain VARCHAR(255) UNIQUE,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id VARCHAR(255) PRIMARY KEY,
                org_id VARCHAR(255) NOT NULL,
                name VARCHAR(255) NOT NULL,
                date TIMESTAMPTZ NOT NULL,
                venue_id VARCHAR(255) NOT NULL,
                description TEXT,
                capacity INT,
                ticket_price DOUBLE PRECISION,
                status VARCHAR(20) NOT NULL DEFAULT 'draft',
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                created_by VARCHAR(255) NOT NULL
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS event_pipelines (
                event_id VARCHAR(255) PRIMARY KEY REFERENCES events(id),
                org_id VARCHAR(255) NOT NULL,
                stage VARCHAR(20) NOT NULL,
                hold_expires_at TIMESTAMPTZ,
                offer_expires_at TIMESTAMPTZ,
                document JSONB NOT NULL,
                version INT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_event_pipelines_org_stage
            ON event_pipelines(org_id, stage);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_event_pipelines_hold_expiry
            ON event_pipelines(hold_expires_at) WHERE stage = 'hold';
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_event_pipelines_offer_expiry
            ON event_pipelines(offer_expires_at) WHERE stage = 'offer';
        """)


def _document(pipeline: EventPipeline) -> str:
    return json.dumps(pipeline.model_dump(mode="json", exclude={"version"}))


def _pipeline_from_row(row: asyncpg.Record) -> EventPipeline:
    data = json.loads(row["document"])
    data["version"] = row["version"]
    return EventPipeline.model_validate(data)


class PostgresPipelineStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def load_pipeline(self, event_id: str) -> EventPipeline | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT document, version FROM event_pipelines WHERE event_id = $1;",
                event_id,
            )
        return _pipeline_from_row(row) if row else None

    async def save_pipeline(
        self,
        pipeline: EventPipeline,
        expected_version: int,
        event_status: EventStatus | None = None,
    ) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE event_pipelines
                    SET stage = $1, hold_expires_at = $2, offer_expires_at = $3,
                        document = $4::jsonb, version = $5, updated_at = $6
                    WHERE event_id = $7 AND version = $8;
                    """,
                    pipeline.stage.value,
                    pipeline.hold_expires_at,
                    pipeline.offer_expires_at,
                    _document(pipeline),
                    pipeline.version,
                    pipeline.updated_at,
                    pipeline.event_id,
                    expected_version,
                )
                # asyncpg returns the command tag, e.g. "UPDATE 1"
                if result.split()[-1] != "1":
                    return False
                if event_status is not None:
                    await conn.execute(
                        "UPDATE events SET status = $1, updated_at = $2 WHERE id = $3;",
                        event_status,
                        pipeline.updated_at,
                        pipeline.event_id,
                    )
        return True

    async def create_event_with_pipeline(self, event: Event, pipeline: EventPipeline) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO events (id, org_id, name, date, venue_id, description, capacity,
                                        ticket_price, status, created_at, updated_at, created_by)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12);
                    """,
                    event.id,
                    event.org_id,
                    event.name,
                    event.date,
                    event.venue_id,
                    event.description,
                    event.capacity,
                    event.ticket_price,
                    event.status,
                    event.created_at,
                    event.updated_at,
                    event.created_by,
                )
                await conn.execute(
                    """
                    INSERT INTO event_pipelines (event_id, org_id, stage, hold_expires_at, offer_expires_at,
                                                 document, version, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8);
                    """,
                    pipeline.event_id,
                    pipeline.org_id,
                    pipeline.stage.value,
                    pipeline.hold_expires_at,
                    pipeline.offer_expires_at,
                    _document(pipeline),
                    pipeline.version,
                    pipeline.updated_at,
                )

    async def get_event(self, event_id: str) -> Event | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM events WHERE id = $1;", event_id)
        return Event.model_validate(dict(row)) if row else None

    async def list_pipelines(self, org_id: str, stage: EventStage | None = None) -> list[EventPipeline]:
        async with self.pool.acquire() as conn:
            if stage is None:
                rows = await conn.fetch(
                    """
                    SELECT document, version FROM event_pipelines
                    WHERE org_id = $1 ORDER BY updated_at DESC;
                    """,
                    org_id,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT document, version FROM event_pipelines
                    WHERE org_id = $1 AND stage = $2 ORDER BY updated_at DESC;
                    """,
                    org_id,
                    stage.value,
                )
        return [_pipeline_from_row(r) for r in rows]

    async def find_expired(self, stage: EventStage, now: datetime) -> list[EventPipeline]:
        column = EXPIRY_COLUMNS.get(stage)
        if column is None:
            return []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT document, version FROM event_pipelines
                WHERE stage = $1 AND {column} <= $2 ORDER BY {column} ASC;
                """,
                stage.value,
                now,
            )
        return [_pipeline_from_row(r) for r in rows]


class PostgresOrganizationLookup:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def by_subdomain(self, subdomain: str) -> str | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT id FROM organizations WHERE subdomain = $1;",
                subdomain.lower(),
            )

    async def by_custom_domain(self, domain: str) -> str | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT id FROM organizations WHERE custom_domain = $1;",
                domain.lower(),
            )
