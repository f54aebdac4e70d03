"""Ticket routing state machine.

Every routing operation follows the same steps: load the ticket, authorize
the actor, validate the request, compute the new routing fields from the
observed ticket, then apply them with one conditional UPDATE guarded by the
ticket ``version``. The audit event and any outbox rows are written in the
same transaction. When the guard misses, another mutation committed first and
the whole decision is taken again against the fresh row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.config import get_settings
from referral_routing.core.errors import (
    ConcurrencyError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from referral_routing.core.security import Identity
from referral_routing.models import Provider, ProviderContact, Ticket, TicketEvent, utcnow
from referral_routing.schemas import (
    FORWARD_REASONS,
    ActorType,
    AssignMetadata,
    AssignRequest,
    ForwardAction,
    ForwardMetadata,
    ForwardRequest,
    OutboxKind,
    ReassignMetadata,
    ReassignmentReason,
    ReassignRequest,
    RoutingSnapshot,
    TicketEventType,
    TicketStatus,
)
from referral_routing.services import notifications, webhooks
from referral_routing.services.authorization import (
    authorize_ticket_action,
    require_provider_admin,
    require_site_admin,
    resolve_actor_type,
)
from referral_routing.services.default_handler import resolve_default_handler
from referral_routing.services.outbox import enqueue_side_effect, outbox_worker
from referral_routing.services.ticket_events import record_event

logger = logging.getLogger(__name__)

ROUTING_FIELDS = ("provider_id", "assigned_to", "forwarded_from_provider_id", "status")


@dataclass
class SideEffect:
    kind: OutboxKind
    payload: dict[str, Any]


@dataclass
class PlannedChange:
    """A routing decision taken against one observed ticket version."""

    values: dict[str, Any]
    event_type: TicketEventType
    actor_type: ActorType
    reason: ReassignmentReason | None
    notes: str | None
    metadata: BaseModel
    increments_reassignment: bool = True
    side_effects: list[SideEffect] = field(default_factory=list)


@dataclass
class RoutingOutcome:
    ticket: Ticket
    event: TicketEvent


def snapshot(ticket: Ticket) -> RoutingSnapshot:
    return RoutingSnapshot(
        provider_id=ticket.provider_id,
        assigned_to=ticket.assigned_to,
        forwarded_from_provider_id=ticket.forwarded_from_provider_id,
        status=TicketStatus(ticket.status),
        reassignment_count=ticket.reassignment_count,
    )


def plan_forward_to_admin(
    ticket: Ticket, *, new_status: TicketStatus | None, now: datetime
) -> dict[str, Any]:
    return {
        "provider_id": None,
        "assigned_to": None,
        "assigned_at": None,
        "forwarded_from_provider_id": ticket.provider_id,
        "last_reassigned_at": now,
        "status": (new_status or TicketStatus(ticket.status)).value,
    }


def plan_forward_to_provider(
    ticket: Ticket,
    *,
    target_provider_id: int,
    assignee_user_id: int | None,
    new_status: TicketStatus | None,
    now: datetime,
) -> dict[str, Any]:
    return {
        "provider_id": target_provider_id,
        "assigned_to": assignee_user_id,
        "assigned_at": now,
        "forwarded_from_provider_id": None,
        "last_reassigned_at": now,
        "status": (new_status or TicketStatus(ticket.status)).value,
    }


def plan_reassign(
    ticket: Ticket,
    *,
    target_provider_id: int,
    assignee_user_id: int | None,
    preserve_history: bool,
    now: datetime,
) -> dict[str, Any]:
    return {
        "provider_id": target_provider_id,
        "assigned_to": assignee_user_id,
        "assigned_at": now,
        "forwarded_from_provider_id": (
            ticket.forwarded_from_provider_id if preserve_history else None
        ),
        "last_reassigned_at": now,
    }


def plan_internal_assignment(
    ticket: Ticket, *, assignee_user_id: int, now: datetime
) -> dict[str, Any]:
    return {"assigned_to": assignee_user_id, "assigned_at": now}


def _next_snapshot(previous: RoutingSnapshot, change: PlannedChange) -> RoutingSnapshot:
    updates = {key: change.values[key] for key in ROUTING_FIELDS if key in change.values}
    if "status" in updates:
        updates["status"] = TicketStatus(updates["status"])
    if change.increments_reassignment:
        updates["reassignment_count"] = previous.reassignment_count + 1
    return previous.model_copy(update=updates)


async def _load_ticket(
    session: AsyncSession, ticket_id: int, *, fresh: bool = False
) -> Ticket:
    query = select(Ticket).where(Ticket.id == ticket_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    result = await session.execute(query)
    ticket = result.scalar_one_or_none()
    if ticket is None:
        raise NotFoundError("Ticket not found")
    return ticket


async def _ensure_provider_exists(session: AsyncSession, provider_id: int) -> None:
    result = await session.execute(select(Provider.id).where(Provider.id == provider_id))
    if result.scalar_one_or_none() is None:
        raise NotFoundError("Target provider not found")


async def _apply_change(
    session: AsyncSession, ticket: Ticket, change: PlannedChange, now: datetime
) -> bool:
    values: dict[str, Any] = dict(change.values)
    values["version"] = Ticket.version + 1
    values["updated_at"] = now
    if change.increments_reassignment:
        values["reassignment_count"] = Ticket.reassignment_count + 1
    result = await session.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.version == ticket.version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _run_transition(
    session: AsyncSession,
    ticket_id: int,
    identity: Identity,
    plan: Callable[[Ticket, datetime], Awaitable[PlannedChange]],
) -> RoutingOutcome:
    settings = get_settings()
    max_attempts = max(settings.forward_max_attempts, 1)

    for attempt in range(1, max_attempts + 1):
        ticket = await _load_ticket(session, ticket_id, fresh=True)
        now = utcnow()
        change = await plan(ticket, now)
        previous_state = snapshot(ticket)
        new_state = _next_snapshot(previous_state, change)
        observed_version = ticket.version

        try:
            applied = await _apply_change(session, ticket, change, now)
            if not applied:
                await session.rollback()
                logger.debug(
                    "Ticket %s changed since version %s; retrying %s (attempt %d)",
                    ticket_id,
                    observed_version,
                    change.event_type.value,
                    attempt,
                )
                continue

            event = await record_event(
                session,
                ticket_id=ticket_id,
                event_type=change.event_type,
                actor_id=identity.user_id,
                actor_type=change.actor_type,
                previous_state=previous_state,
                new_state=new_state,
                reason=change.reason,
                notes=change.notes,
                metadata=change.metadata,
                sequence=observed_version + 1,
            )
            for effect in change.side_effects:
                enqueue_side_effect(
                    session, kind=effect.kind, ticket_id=ticket_id, payload=effect.payload
                )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.exception(
                "Failed to persist %s for ticket %s", change.event_type.value, ticket_id
            )
            raise PersistenceError("Failed to update ticket") from exc

        updated = await _load_ticket(session, ticket_id, fresh=True)
        logger.info(
            "Ticket %s %s by user %s: provider %s -> %s, assigned_to %s -> %s",
            ticket_id,
            change.event_type.value,
            identity.user_id,
            previous_state.provider_id,
            new_state.provider_id,
            previous_state.assigned_to,
            new_state.assigned_to,
        )
        outbox_worker.notify()
        return RoutingOutcome(ticket=updated, event=event)

    logger.warning(
        "Giving up on ticket %s after %d contended attempts", ticket_id, max_attempts
    )
    raise ConcurrencyError("Ticket was modified concurrently; please retry")


def _webhook_effect(ticket: Ticket, event_name: str, data: dict[str, Any]) -> list[SideEffect]:
    if not ticket.site_id:
        return []
    return [
        SideEffect(
            kind=OutboxKind.WEBHOOK,
            payload={"event": event_name, "site_id": ticket.site_id, "data": data},
        )
    ]


def _notification_effect(
    ticket: Ticket,
    identity: Identity,
    *,
    template: str,
    reason: ReassignmentReason | None,
    notes: str | None,
    assignee_user_id: int | None = None,
) -> list[SideEffect]:
    return [
        SideEffect(
            kind=OutboxKind.NOTIFICATION,
            payload=notifications.build_notification_payload(
                template=template,
                ticket=ticket,
                actor=identity,
                reason=reason.value if reason is not None else None,
                notes=notes,
                assignee_user_id=assignee_user_id,
            ),
        )
    ]


def _validate_forward_request(request: ForwardRequest) -> ReassignmentReason:
    reason = request.reason
    if request.action is None or reason is None:
        raise ValidationError("Missing required fields: action, reason")
    if reason not in FORWARD_REASONS:
        raise ValidationError(
            "reason must be one of: " + ", ".join(sorted(r.value for r in FORWARD_REASONS))
        )
    return reason


async def forward_ticket(
    session: AsyncSession,
    ticket_id: int,
    identity: Identity,
    request: ForwardRequest,
) -> RoutingOutcome:
    """Move a ticket to the admin pool or to another provider."""

    async def plan(ticket: Ticket, now: datetime) -> PlannedChange:
        await authorize_ticket_action(session, identity, ticket)
        reason = _validate_forward_request(request)
        actor_type = resolve_actor_type(identity)

        if request.action == ForwardAction.FORWARD_TO_ADMIN:
            return PlannedChange(
                values=plan_forward_to_admin(ticket, new_status=request.new_status, now=now),
                event_type=TicketEventType.FORWARDED,
                actor_type=actor_type,
                reason=reason,
                notes=request.notes,
                metadata=ForwardMetadata(action=ForwardAction.FORWARD_TO_ADMIN),
                side_effects=[
                    *_notification_effect(
                        ticket,
                        identity,
                        template=notifications.TICKET_FORWARDED_TO_ADMIN,
                        reason=reason,
                        notes=request.notes,
                    ),
                    *_webhook_effect(
                        ticket,
                        webhooks.TICKET_FORWARDED,
                        {
                            "ticket_id": ticket.id,
                            "action": ForwardAction.FORWARD_TO_ADMIN.value,
                            "forwarded_by": identity.user_id,
                            "reason": reason.value,
                        },
                    ),
                ],
            )

        target_provider_id = request.target_provider_id
        if target_provider_id is None:
            raise ValidationError("target_provider_id required when forwarding to provider")
        await _ensure_provider_exists(session, target_provider_id)
        handler = await resolve_default_handler(session, target_provider_id)
        assignee_user_id = handler.user_id if handler is not None else None
        side_effects: list[SideEffect] = []
        if assignee_user_id is not None:
            side_effects.extend(
                _notification_effect(
                    ticket,
                    identity,
                    template=notifications.TICKET_REASSIGNED,
                    reason=reason,
                    notes=request.notes,
                    assignee_user_id=assignee_user_id,
                )
            )
        side_effects.extend(
            _webhook_effect(
                ticket,
                webhooks.TICKET_FORWARDED,
                {
                    "ticket_id": ticket.id,
                    "action": ForwardAction.FORWARD_TO_PROVIDER.value,
                    "target_provider_id": target_provider_id,
                    "forwarded_by": identity.user_id,
                    "reason": reason.value,
                },
            )
        )
        return PlannedChange(
            values=plan_forward_to_provider(
                ticket,
                target_provider_id=target_provider_id,
                assignee_user_id=assignee_user_id,
                new_status=request.new_status,
                now=now,
            ),
            event_type=TicketEventType.FORWARDED,
            actor_type=actor_type,
            reason=reason,
            notes=request.notes,
            metadata=ForwardMetadata(
                action=ForwardAction.FORWARD_TO_PROVIDER,
                target_provider_id=target_provider_id,
            ),
            side_effects=side_effects,
        )

    return await _run_transition(session, ticket_id, identity, plan)


async def forward_to_admin(
    session: AsyncSession,
    ticket_id: int,
    identity: Identity,
    *,
    reason: ReassignmentReason,
    notes: str | None = None,
    new_status: TicketStatus | None = None,
) -> RoutingOutcome:
    return await forward_ticket(
        session,
        ticket_id,
        identity,
        ForwardRequest(
            action=ForwardAction.FORWARD_TO_ADMIN,
            reason=reason,
            notes=notes,
            new_status=new_status,
        ),
    )


async def forward_to_provider(
    session: AsyncSession,
    ticket_id: int,
    identity: Identity,
    *,
    target_provider_id: int,
    reason: ReassignmentReason,
    notes: str | None = None,
    new_status: TicketStatus | None = None,
) -> RoutingOutcome:
    return await forward_ticket(
        session,
        ticket_id,
        identity,
        ForwardRequest(
            action=ForwardAction.FORWARD_TO_PROVIDER,
            target_provider_id=target_provider_id,
            reason=reason,
            notes=notes,
            new_status=new_status,
        ),
    )


async def reassign_ticket(
    session: AsyncSession,
    ticket_id: int,
    identity: Identity,
    request: ReassignRequest,
) -> RoutingOutcome:
    """Site-admin reassignment to any provider, optionally to a specific contact."""

    require_site_admin(identity)
    reason = request.reason or ReassignmentReason.ADMIN_REASSIGNMENT

    async def plan(ticket: Ticket, now: datetime) -> PlannedChange:
        if request.target_provider_id is None:
            raise ValidationError("Missing required field: target_provider_id")
        target_provider_id = request.target_provider_id
        await _ensure_provider_exists(session, target_provider_id)

        if request.target_contact_id is not None:
            result = await session.execute(
                select(ProviderContact).where(
                    ProviderContact.id == request.target_contact_id,
                    ProviderContact.provider_id == target_provider_id,
                )
            )
            contact = result.scalar_one_or_none()
            if contact is None:
                raise ValidationError(
                    "Contact not found or does not belong to target provider"
                )
            assignee_user_id: int | None = contact.user_id
        else:
            handler = await resolve_default_handler(session, target_provider_id)
            assignee_user_id = handler.user_id if handler is not None else None

        side_effects: list[SideEffect] = []
        if assignee_user_id is not None:
            side_effects.extend(
                _notification_effect(
                    ticket,
                    identity,
                    template=notifications.TICKET_REASSIGNED,
                    reason=reason,
                    notes=request.notes,
                    assignee_user_id=assignee_user_id,
                )
            )
        side_effects.extend(
            _webhook_effect(
                ticket,
                webhooks.TICKET_REASSIGNED,
                {
                    "ticket_id": ticket.id,
                    "target_provider_id": target_provider_id,
                    "assigned_to": assignee_user_id,
                    "reassigned_by": identity.user_id,
                    "reason": reason.value,
                },
            )
        )
        return PlannedChange(
            values=plan_reassign(
                ticket,
                target_provider_id=target_provider_id,
                assignee_user_id=assignee_user_id,
                preserve_history=request.preserve_history,
                now=now,
            ),
            event_type=TicketEventType.REASSIGNED,
            actor_type=ActorType.SITE_ADMIN,
            reason=reason,
            notes=request.notes,
            metadata=ReassignMetadata(
                preserve_history=request.preserve_history,
                target_contact_id=request.target_contact_id,
            ),
            side_effects=side_effects,
        )

    return await _run_transition(session, ticket_id, identity, plan)


async def assign_ticket_internally(
    session: AsyncSession,
    ticket_id: int,
    identity: Identity,
    request: AssignRequest,
) -> RoutingOutcome:
    """Hand a ticket to another contact of its current provider.

    Internal assignment is not a reassignment: ``reassignment_count`` is left
    untouched.
    """

    async def plan(ticket: Ticket, now: datetime) -> PlannedChange:
        actor_type = await require_provider_admin(session, identity, ticket)
        if request.assigned_to_user_id is None:
            raise ValidationError("Missing required field: assigned_to_user_id")
        if ticket.provider_id is None:
            raise ValidationError("Cannot assign internal contact to unassigned ticket")

        result = await session.execute(
            select(ProviderContact.id).where(
                ProviderContact.user_id == request.assigned_to_user_id,
                ProviderContact.provider_id == ticket.provider_id,
            )
        )
        if result.scalar_one_or_none() is None:
            raise ValidationError(
                "Target contact not found or does not belong to this provider"
            )

        assignee_user_id = request.assigned_to_user_id
        return PlannedChange(
            values=plan_internal_assignment(ticket, assignee_user_id=assignee_user_id, now=now),
            event_type=TicketEventType.ASSIGNED,
            actor_type=actor_type,
            reason=ReassignmentReason.INTERNAL_ASSIGNMENT,
            notes=request.notes,
            metadata=AssignMetadata(),
            increments_reassignment=False,
            side_effects=[
                *_notification_effect(
                    ticket,
                    identity,
                    template=notifications.TICKET_ASSIGNED_INTERNALLY,
                    reason=None,
                    notes=request.notes,
                    assignee_user_id=assignee_user_id,
                ),
                *_webhook_effect(
                    ticket,
                    webhooks.TICKET_ASSIGNED,
                    {
                        "ticket_id": ticket.id,
                        "assigned_to": assignee_user_id,
                        "assigned_by": identity.user_id,
                    },
                ),
            ],
        )

    return await _run_transition(session, ticket_id, identity, plan)
