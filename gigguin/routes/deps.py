"""
Request-scoped collaborators. Tests swap these via app.dependency_overrides.
"""
from fastapi import Depends, Header, HTTPException

from gigguin.automations import registry
from gigguin.config import settings
from gigguin.db import PipelineStore, PostgresOrganizationLookup, PostgresPipelineStore, get_pool
from gigguin.hooks import HookDispatcher, InlineDispatcher, QueueDispatcher
from gigguin.tenancy import OrganizationLookup, resolve_organization


async def get_store() -> PipelineStore:
    return PostgresPipelineStore(await get_pool())


async def get_org_lookup() -> OrganizationLookup:
    return PostgresOrganizationLookup(await get_pool())


def get_dispatcher() -> HookDispatcher:
    if settings.hook_dispatch_mode == "inline":
        return InlineDispatcher(registry)
    return QueueDispatcher()


async def get_org_id(
    host: str = Header(default=""),
    lookup: OrganizationLookup = Depends(get_org_lookup),
) -> str:
    org_id = await resolve_organization(host, lookup)
    if org_id is None:
        raise HTTPException(status_code=404, detail="Organization not found for host")
    return org_id


def get_actor(x_actor_id: str | None = Header(default=None)) -> str:
    """Actor identity set by the authentication layer in front of this service."""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id")
    return x_actor_id
