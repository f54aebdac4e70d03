from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.db import get_session
from referral_routing.core.errors import NotFoundError, ValidationError
from referral_routing.core.security import Identity, get_current_identity
from referral_routing.models import OutboxEntry, utcnow
from referral_routing.schemas import OutboxEntryRead, OutboxStatus
from referral_routing.services.authorization import require_site_admin
from referral_routing.services.outbox import outbox_worker

router = APIRouter(prefix="/api/outbox", tags=["Outbox"])


async def _get_entry(entry_id: int, session: AsyncSession) -> OutboxEntry:
    result = await session.execute(select(OutboxEntry).where(OutboxEntry.id == entry_id))
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Outbox entry not found")
    return entry


@router.get("/", response_model=list[OutboxEntryRead])
async def list_outbox_entries(
    status: Optional[OutboxStatus] = Query(default=None),
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> list[OutboxEntryRead]:
    require_site_admin(identity)
    query = select(OutboxEntry).order_by(OutboxEntry.created_at.desc(), OutboxEntry.id.desc())
    if status is not None:
        query = query.where(OutboxEntry.status == status.value)
    result = await session.execute(query)
    return [OutboxEntryRead.model_validate(entry) for entry in result.scalars().all()]


@router.post("/{entry_id}/pause", response_model=OutboxEntryRead)
async def pause_outbox_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> OutboxEntryRead:
    require_site_admin(identity)
    entry = await _get_entry(entry_id, session)
    if entry.status != OutboxStatus.PENDING.value:
        raise ValidationError(f"Only pending entries can be paused (status is {entry.status})")
    entry.status = OutboxStatus.PAUSED.value
    entry.next_attempt_at = None
    entry.updated_at = utcnow()
    await session.commit()
    await session.refresh(entry)
    return OutboxEntryRead.model_validate(entry)


@router.post("/{entry_id}/resume", response_model=OutboxEntryRead)
async def resume_outbox_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> OutboxEntryRead:
    require_site_admin(identity)
    entry = await _get_entry(entry_id, session)
    if entry.status != OutboxStatus.PAUSED.value:
        raise ValidationError(f"Only paused entries can be resumed (status is {entry.status})")
    entry.status = OutboxStatus.PENDING.value
    entry.next_attempt_at = None
    entry.updated_at = utcnow()
    await session.commit()
    await session.refresh(entry)
    outbox_worker.notify()
    return OutboxEntryRead.model_validate(entry)


@router.post("/{entry_id}/retry", response_model=OutboxEntryRead)
async def retry_outbox_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> OutboxEntryRead:
    """Give a failed entry a fresh set of delivery attempts."""

    require_site_admin(identity)
    entry = await _get_entry(entry_id, session)
    if entry.status != OutboxStatus.FAILED.value:
        raise ValidationError(f"Only failed entries can be retried (status is {entry.status})")
    entry.status = OutboxStatus.PENDING.value
    entry.attempts = 0
    entry.next_attempt_at = None
    entry.updated_at = utcnow()
    await session.commit()
    await session.refresh(entry)
    outbox_worker.notify()
    return OutboxEntryRead.model_validate(entry)
