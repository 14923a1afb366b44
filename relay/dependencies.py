"""
FastAPI dependency injection wiring.

The stores and the broadcast engine are built once in the app lifespan and
kept on app.state; handlers receive them through these providers.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header, Request

from relay.broadcast import BroadcastEngine
from relay.config import Settings
from relay.errors import Forbidden
from relay.models import Tier
from relay.storage import IdentityStore, MessageLog, RosterStore


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_identity_store(request: Request) -> IdentityStore:
    return request.app.state.identity


def get_roster(request: Request) -> RosterStore:
    return request.app.state.roster


def get_message_log(request: Request) -> MessageLog:
    return request.app.state.messages


def get_broadcast_engine(request: Request) -> BroadcastEngine:
    return request.app.state.engine


def require_admin(
    identity: Annotated[IdentityStore, Depends(get_identity_store)],
    x_admin_code: Annotated[Optional[str], Header(alias="x-admin-code")] = None,
) -> None:
    """Reject the request unless the x-admin-code header carries the admin code."""
    if identity.verify(x_admin_code) is not Tier.ADMIN:
        raise Forbidden()


Identity = Annotated[IdentityStore, Depends(get_identity_store)]
Roster = Annotated[RosterStore, Depends(get_roster)]
Messages = Annotated[MessageLog, Depends(get_message_log)]
Engine = Annotated[BroadcastEngine, Depends(get_broadcast_engine)]
AdminOnly = Depends(require_admin)
