"""Append-only ticket lifecycle audit trail."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.errors import NotFoundError
from referral_routing.models import Ticket, TicketEvent, utcnow
from referral_routing.schemas import (
    ActorType,
    ReassignmentReason,
    RoutingSnapshot,
    TicketEventType,
)


def _dump(value: BaseModel | Mapping[str, Any] | None) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return dict(value)


async def _allocate_sequence(session: AsyncSession, ticket_id: int) -> int:
    result = await session.execute(
        update(Ticket)
        .where(Ticket.id == ticket_id)
        .values(version=Ticket.version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError("Ticket not found")
    # The row stays write-locked by this transaction, so the value read back
    # is the one this update produced.
    version = await session.execute(select(Ticket.version).where(Ticket.id == ticket_id))
    return int(version.scalar_one())


async def record_event(
    session: AsyncSession,
    *,
    ticket_id: int,
    event_type: TicketEventType,
    actor_id: int | None,
    actor_type: ActorType,
    previous_state: RoutingSnapshot | Mapping[str, Any] | None,
    new_state: RoutingSnapshot | Mapping[str, Any] | None,
    reason: ReassignmentReason | None = None,
    notes: str | None = None,
    metadata: BaseModel | Mapping[str, Any] | None = None,
    sequence: int | None = None,
) -> TicketEvent:
    """Append one immutable event to the caller's unit of work.

    ``sequence`` is the ticket version produced by the mutation being recorded.
    When omitted, a version is allocated here so events recorded outside the
    forwarding flow still replay in commit order. The caller commits.
    """

    if sequence is None:
        sequence = await _allocate_sequence(session, ticket_id)

    event = TicketEvent(
        ticket_id=ticket_id,
        sequence=sequence,
        event_type=TicketEventType(event_type).value,
        actor_id=actor_id,
        actor_type=ActorType(actor_type).value,
        previous_state=_dump(previous_state),
        new_state=_dump(new_state),
        reason=ReassignmentReason(reason).value if reason is not None else None,
        notes=notes,
        metadata_=_dump(metadata) or {},
        created_at=utcnow(),
    )
    session.add(event)
    await session.flush()
    return event


async def list_events(session: AsyncSession, ticket_id: int) -> list[TicketEvent]:
    """Return a ticket's events in replay order."""

    result = await session.execute(
        select(TicketEvent)
        .where(TicketEvent.ticket_id == ticket_id)
        .order_by(TicketEvent.sequence.asc(), TicketEvent.id.asc())
    )
    return list(result.scalars().all())
