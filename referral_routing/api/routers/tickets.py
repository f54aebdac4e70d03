from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.db import get_session
from referral_routing.core.errors import NotFoundError
from referral_routing.core.security import Identity, get_current_identity
from referral_routing.models import Ticket
from referral_routing.schemas import (
    AssignRequest,
    ForwardRequest,
    ReassignRequest,
    TicketActionResponse,
    TicketEventList,
    TicketEventRead,
    TicketRead,
)
from referral_routing.services.authorization import authorize_ticket_action
from referral_routing.services.forwarding import (
    assign_ticket_internally,
    forward_ticket,
    reassign_ticket,
)
from referral_routing.services.ticket_events import list_events

router = APIRouter(prefix="/api/tickets", tags=["Tickets"])

VIEW_DENIED_MESSAGE = "You do not have access to this ticket"


async def _get_visible_ticket(
    ticket_id: int, session: AsyncSession, identity: Identity
) -> Ticket:
    result = await session.execute(select(Ticket).where(Ticket.id == ticket_id))
    ticket = result.scalar_one_or_none()
    if ticket is None:
        raise NotFoundError("Ticket not found")
    await authorize_ticket_action(session, identity, ticket, message=VIEW_DENIED_MESSAGE)
    return ticket


@router.get("/{ticket_id}", response_model=TicketRead)
async def get_ticket(
    ticket_id: int,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> TicketRead:
    ticket = await _get_visible_ticket(ticket_id, session, identity)
    return TicketRead.model_validate(ticket)


@router.get("/{ticket_id}/events", response_model=TicketEventList)
async def get_ticket_events(
    ticket_id: int,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> TicketEventList:
    await _get_visible_ticket(ticket_id, session, identity)
    events = await list_events(session, ticket_id)
    return TicketEventList(
        events=[TicketEventRead.model_validate(event) for event in events]
    )


@router.post("/{ticket_id}/forward", response_model=TicketActionResponse)
async def forward_ticket_endpoint(
    ticket_id: int,
    payload: ForwardRequest,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> TicketActionResponse:
    outcome = await forward_ticket(session, ticket_id, identity, payload)
    return TicketActionResponse(ticket=TicketRead.model_validate(outcome.ticket))


@router.post("/{ticket_id}/reassign", response_model=TicketActionResponse)
async def reassign_ticket_endpoint(
    ticket_id: int,
    payload: ReassignRequest,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> TicketActionResponse:
    outcome = await reassign_ticket(session, ticket_id, identity, payload)
    return TicketActionResponse(ticket=TicketRead.model_validate(outcome.ticket))


@router.post("/{ticket_id}/assign", response_model=TicketActionResponse)
async def assign_ticket_endpoint(
    ticket_id: int,
    payload: AssignRequest,
    session: AsyncSession = Depends(get_session),
    identity: Identity = Depends(get_current_identity),
) -> TicketActionResponse:
    outcome = await assign_ticket_internally(session, ticket_id, identity, payload)
    return TicketActionResponse(ticket=TicketRead.model_validate(outcome.ticket))
