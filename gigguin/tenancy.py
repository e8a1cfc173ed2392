"""
Organization resolution from the request host: <org>.gigguin.com subdomains or an org's custom domain.
"""
from dataclasses import dataclass
from typing import Protocol

from gigguin.config import settings


class OrganizationLookup(Protocol):
    async def by_subdomain(self, subdomain: str) -> str | None:
        ...

    async def by_custom_domain(self, domain: str) -> str | None:
        ...


@dataclass(frozen=True)
class HostInfo:
    hostname: str
    subdomain: str | None = None
    custom_domain: str | None = None


def _under(hostname: str, domain: str) -> bool:
    return hostname == domain or hostname.endswith("." + domain)


def _strip_port(host: str) -> str:
    if host.startswith("["):
        # [::1] or [::1]:8000
        end = host.find("]")
        return host[1:end] if end != -1 else host[1:]
    if host.count(":") > 1:
        # bare IPv6 literal, no port possible
        return host
    return host.partition(":")[0]


def parse_host(host: str) -> HostInfo:
    """
    Strip the port and classify the host.
    Under a root domain: the first label is the org subdomain, unless reserved (www, app, ...).
    Platform domains (vercel.app) are neither. Anything else (IP literals included) is a custom domain.
    """
    hostname = _strip_port(host.strip().lower()).rstrip(".")
    if not hostname:
        return HostInfo(hostname="")

    for root in settings.root_domains:
        if _under(hostname, root):
            if hostname == root:
                return HostInfo(hostname=hostname)
            subdomain = hostname.split(".")[0]
            if subdomain in settings.reserved_subdomains:
                return HostInfo(hostname=hostname)
            return HostInfo(hostname=hostname, subdomain=subdomain)

    if any(_under(hostname, d) for d in settings.platform_domains):
        return HostInfo(hostname=hostname)
    return HostInfo(hostname=hostname, custom_domain=hostname)


async def resolve_organization(host: str, lookup: OrganizationLookup) -> str | None:
    """Organization id for the host, or None for the main app / unknown hosts."""
    info = parse_host(host)
    if info.subdomain:
        return await lookup.by_subdomain(info.subdomain)
    if info.custom_domain:
        return await lookup.by_custom_domain(info.custom_domain)
    return None
