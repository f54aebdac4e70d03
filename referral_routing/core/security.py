from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.db import get_session
from referral_routing.core.errors import AuthenticationError
from referral_routing.models import User


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of a routing operation."""

    user_id: int
    is_site_admin: bool = False
    email: str | None = None
    full_name: str | None = None


async def get_current_identity(
    user_id: Annotated[Optional[int], Header(alias="X-User-Id")] = None,
    session: AsyncSession = Depends(get_session),
) -> Identity:
    """Resolve the identity forwarded by the upstream auth middleware."""

    if user_id is None:
        raise AuthenticationError("Authentication required")

    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise AuthenticationError("Unknown user")

    return Identity(
        user_id=user.id,
        is_site_admin=bool(user.is_site_admin),
        email=user.email,
        full_name=user.full_name,
    )
