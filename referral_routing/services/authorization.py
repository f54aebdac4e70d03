"""Decide whether an identity may act on a ticket."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.errors import AuthorizationError
from referral_routing.core.security import Identity
from referral_routing.models import ProviderContact, Ticket
from referral_routing.schemas import ActorType, ProviderRole

FORWARD_DENIED_MESSAGE = "You can only forward tickets for your own provider"


async def _find_contact(
    session: AsyncSession, *, user_id: int, provider_id: int
) -> ProviderContact | None:
    result = await session.execute(
        select(ProviderContact).where(
            ProviderContact.user_id == user_id,
            ProviderContact.provider_id == provider_id,
        )
    )
    return result.scalar_one_or_none()


async def can_act_on_ticket(
    session: AsyncSession, identity: Identity, ticket: Ticket
) -> bool:
    if identity.is_site_admin:
        return True
    # Admin-pool tickets have no owning provider to authorize a contact against.
    if ticket.provider_id is None:
        return False
    contact = await _find_contact(
        session, user_id=identity.user_id, provider_id=ticket.provider_id
    )
    return contact is not None


async def authorize_ticket_action(
    session: AsyncSession,
    identity: Identity,
    ticket: Ticket,
    *,
    message: str = FORWARD_DENIED_MESSAGE,
) -> None:
    """Raise ``AuthorizationError`` unless ``identity`` may act on ``ticket``."""

    if not await can_act_on_ticket(session, identity, ticket):
        raise AuthorizationError(message)


def require_site_admin(identity: Identity) -> None:
    if not identity.is_site_admin:
        raise AuthorizationError("Site admin access required")


async def require_provider_admin(
    session: AsyncSession, identity: Identity, ticket: Ticket
) -> ActorType:
    """Allow site admins and admins of the ticket's current provider.

    Returns the actor type to record on the resulting event.
    """

    if identity.is_site_admin:
        return ActorType.SITE_ADMIN
    if ticket.provider_id is not None:
        contact = await _find_contact(
            session, user_id=identity.user_id, provider_id=ticket.provider_id
        )
        if contact is not None and contact.provider_role == ProviderRole.ADMIN.value:
            return ActorType.PROVIDER_ADMIN
    raise AuthorizationError("Only provider admins can assign tickets internally")


def resolve_actor_type(identity: Identity) -> ActorType:
    if identity.is_site_admin:
        return ActorType.SITE_ADMIN
    return ActorType.PROVIDER_CONTACT
