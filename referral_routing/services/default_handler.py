from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.models import ProviderContact

logger = logging.getLogger(__name__)


async def resolve_default_handler(
    session: AsyncSession, provider_id: int
) -> ProviderContact | None:
    """Return the contact auto-assigned tickets routed to ``provider_id``.

    Uniqueness of the flag is not enforced in the database. When several
    contacts carry it the lowest contact id wins. No flagged contact is not an
    error: the ticket is left unassigned for manual follow-up.
    """

    result = await session.execute(
        select(ProviderContact)
        .where(
            ProviderContact.provider_id == provider_id,
            ProviderContact.is_default_referral_handler.is_(True),
        )
        .order_by(ProviderContact.id.asc())
    )
    handlers = result.scalars().all()
    if not handlers:
        logger.info("Provider %s has no default referral handler", provider_id)
        return None
    if len(handlers) > 1:
        logger.warning(
            "Provider %s has %d default referral handlers; using contact %s",
            provider_id,
            len(handlers),
            handlers[0].id,
        )
    return handlers[0]
