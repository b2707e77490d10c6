"""Dependency injection for FastAPI endpoints"""

from fastapi import Header, Request

from settlement_gateway.config import settings
from settlement_gateway.domain.capabilities import GUEST, Actor, Capability
from settlement_gateway.domain.clock import Clock, SystemClock
from settlement_gateway.domain.exceptions import ValidationError
from settlement_gateway.infrastructure.clients.blob_store import BlobStoreClient

_KNOWN_CAPABILITIES = {c.value: c for c in Capability}


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_clock() -> Clock:
    """Provide the business-timezone clock"""
    return SystemClock(settings.business_timezone)


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_capabilities: str = Header(default=""),
) -> Actor:
    """
    Resolve the acting user from headers set by the upstream identity gateway.

    Requests without an actor id are guests and hold no capabilities.
    Unknown capability names are ignored.
    """
    if not x_actor_id:
        return GUEST
    names = {c.strip() for c in x_actor_capabilities.split(",") if c.strip()}
    return Actor(
        actor_id=x_actor_id,
        capabilities=frozenset(_KNOWN_CAPABILITIES[n] for n in names if n in _KNOWN_CAPABILITIES),
    )


def get_blob_store() -> BlobStoreClient:
    """Provide Blob Store client instance"""
    return BlobStoreClient()


async def check_proof_ref(blob_store: BlobStoreClient, ref: str) -> None:
    """Refuse proof references that were never uploaded"""
    if not settings.verify_proof_refs:
        return
    if not await blob_store.exists(ref):
        raise ValidationError(f"Proof reference {ref} was not found in the blob store")
