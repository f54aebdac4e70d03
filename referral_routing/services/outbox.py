"""Transactional outbox for notification and webhook side effects.

Routing operations append outbox rows inside their own transaction; the
``OutboxWorker`` delivers them afterwards, retrying with exponential backoff,
so delivery failures never reach the caller or the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.config import get_settings
from referral_routing.core.db import get_session_factory
from referral_routing.core.errors import SideEffectError
from referral_routing.models import OutboxEntry, utcnow
from referral_routing.schemas import OutboxKind, OutboxStatus
from referral_routing.services import notifications, webhooks

logger = logging.getLogger(__name__)


def enqueue_side_effect(
    session: AsyncSession,
    *,
    kind: OutboxKind,
    ticket_id: int | None,
    payload: Mapping[str, Any],
) -> OutboxEntry:
    """Add a pending side effect to the caller's unit of work without committing."""

    settings = get_settings()
    entry = OutboxEntry(
        ticket_id=ticket_id,
        kind=OutboxKind(kind).value,
        payload={"delivery_id": uuid4().hex, **dict(payload)},
        status=OutboxStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.outbox_max_attempts,
        next_attempt_at=None,
    )
    session.add(entry)
    return entry


def _claimable(now: datetime):
    """Due pending entries, plus processing entries whose lease has expired.

    A claim that was interrupted mid-delivery (cancellation, a crashed worker)
    leaves its row in ``processing``; once ``outbox_processing_lease_seconds``
    pass without an update the row is claimed again.
    """

    settings = get_settings()
    lease_cutoff = now - timedelta(seconds=settings.outbox_processing_lease_seconds)
    return or_(
        and_(
            OutboxEntry.status == OutboxStatus.PENDING.value,
            or_(
                OutboxEntry.next_attempt_at.is_(None),
                OutboxEntry.next_attempt_at <= now,
            ),
        ),
        and_(
            OutboxEntry.status == OutboxStatus.PROCESSING.value,
            OutboxEntry.updated_at <= lease_cutoff,
        ),
    )


def compute_backoff(attempts: int) -> timedelta:
    settings = get_settings()
    exponent = max(attempts - 1, 0)
    delay = settings.outbox_backoff_base_seconds * (2 ** exponent)
    return timedelta(seconds=min(delay, settings.outbox_backoff_max_seconds))


async def _dispatch(session: AsyncSession, entry: OutboxEntry) -> None:
    payload = dict(entry.payload or {})
    if entry.kind == OutboxKind.NOTIFICATION.value:
        await notifications.dispatch_notification(session, payload)
    elif entry.kind == OutboxKind.WEBHOOK.value:
        await webhooks.emit(
            session,
            event_name=payload["event"],
            site_id=payload.get("site_id"),
            payload=payload.get("data") or {},
            delivery_id=payload.get("delivery_id"),
        )
    else:
        raise SideEffectError(f"Unknown outbox entry kind '{entry.kind}'")


class OutboxWorker:
    """Drains the side-effect outbox in the background."""

    def __init__(self) -> None:
        self._wake: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    def notify(self) -> None:
        """Wake the worker loop; never blocks the caller."""

        if self._wake is not None:
            self._wake.set()

    async def _claim(self, session: AsyncSession, entry_id: int) -> OutboxEntry | None:
        now = utcnow()
        result = await session.execute(
            update(OutboxEntry)
            .where(OutboxEntry.id == entry_id, _claimable(now))
            .values(
                status=OutboxStatus.PROCESSING.value,
                attempts=OutboxEntry.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            return None
        await session.commit()
        claimed = await session.execute(
            select(OutboxEntry)
            .where(OutboxEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        return claimed.scalar_one()

    async def _finish(
        self, session: AsyncSession, entry_id: int, values: dict[str, Any]
    ) -> None:
        await session.execute(
            update(OutboxEntry)
            .where(OutboxEntry.id == entry_id)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def process_entry(self, entry_id: int) -> bool:
        """Deliver one outbox entry. Returns ``True`` when it was delivered."""

        session_factory = await get_session_factory()
        async with session_factory() as session:
            entry = await self._claim(session, entry_id)
            if entry is None:
                return False
            attempts = entry.attempts
            max_attempts = entry.max_attempts
            kind = entry.kind

            try:
                await _dispatch(session, entry)
            except Exception as exc:  # noqa: BLE001
                await session.rollback()
                error = SideEffectError(str(exc) or exc.__class__.__name__)
                if attempts >= max_attempts:
                    logger.warning(
                        "Outbox entry %s (%s) failed permanently after %d attempts: %s",
                        entry_id,
                        kind,
                        attempts,
                        error,
                    )
                    await self._finish(
                        session,
                        entry_id,
                        {
                            "status": OutboxStatus.FAILED.value,
                            "next_attempt_at": None,
                            "last_error": str(error),
                        },
                    )
                else:
                    delay = compute_backoff(attempts)
                    logger.warning(
                        "Outbox entry %s (%s) failed on attempt %d; retrying in %ss: %s",
                        entry_id,
                        kind,
                        attempts,
                        int(delay.total_seconds()),
                        error,
                    )
                    await self._finish(
                        session,
                        entry_id,
                        {
                            "status": OutboxStatus.PENDING.value,
                            "next_attempt_at": utcnow() + delay,
                            "last_error": str(error),
                        },
                    )
                return False

            await self._finish(
                session,
                entry_id,
                {
                    "status": OutboxStatus.DELIVERED.value,
                    "next_attempt_at": None,
                    "last_error": None,
                },
            )
            logger.info("Delivered outbox entry %s (%s)", entry_id, kind)
            return True

    async def drain(self) -> int:
        """Deliver every claimable entry once. Returns the number delivered."""

        settings = get_settings()
        session_factory = await get_session_factory()
        async with session_factory() as session:
            result = await session.execute(
                select(OutboxEntry.id, OutboxEntry.status)
                .where(_claimable(utcnow()))
                .order_by(OutboxEntry.id.asc())
                .limit(settings.outbox_batch_size)
            )
            rows = result.all()

        entry_ids = []
        for entry_id, status in rows:
            if status == OutboxStatus.PROCESSING.value:
                logger.warning(
                    "Reclaiming outbox entry %s after its processing lease expired", entry_id
                )
            entry_ids.append(entry_id)

        delivered = 0
        for entry_id in entry_ids:
            if await self.process_entry(entry_id):
                delivered += 1
        return delivered

    async def run(self) -> None:
        settings = get_settings()
        if self._wake is None:
            self._wake = asyncio.Event()
        wake = self._wake
        while not self._stopping:
            wake.clear()
            try:
                await self.drain()
            except SQLAlchemyError:
                logger.exception("Outbox drain failed")
            if self._stopping:
                break
            try:
                await asyncio.wait_for(
                    wake.wait(), timeout=settings.outbox_poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stopping = True
        if self._wake is not None:
            self._wake.set()
        if self._task is not None:
            await self._task
        self._task = None
        self._wake = None


outbox_worker = OutboxWorker()
