from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

SNAPSHOT_SCHEMA_VERSION = 1


class TicketStatus(str, Enum):
    PENDING = "pending"
    NEED_ADDRESSED = "need_addressed"
    WRONG_ORG = "wrong_org"
    OUT_OF_SCOPE = "out_of_scope"
    NOT_ELIGIBLE = "not_eligible"
    UNABLE_TO_ASSIST = "unable_to_assist"
    UNRESPONSIVE = "unresponsive"


class ForwardAction(str, Enum):
    FORWARD_TO_ADMIN = "forward_to_admin"
    FORWARD_TO_PROVIDER = "forward_to_provider"


class ReassignmentReason(str, Enum):
    UNABLE_TO_ASSIST = "unable_to_assist"
    WRONG_ORG = "wrong_org"
    CAPACITY = "capacity"
    OTHER = "other"
    ADMIN_REASSIGNMENT = "admin_reassignment"
    INTERNAL_ASSIGNMENT = "internal_assignment"


FORWARD_REASONS = frozenset(
    {
        ReassignmentReason.UNABLE_TO_ASSIST,
        ReassignmentReason.WRONG_ORG,
        ReassignmentReason.CAPACITY,
        ReassignmentReason.OTHER,
    }
)


class TicketEventType(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    FORWARDED = "forwarded"
    STATUS_CHANGED = "status_changed"
    COMMENT_ADDED = "comment_added"
    UPDATED = "updated"


class ActorType(str, Enum):
    SITE_ADMIN = "site_admin"
    PROVIDER_ADMIN = "provider_admin"
    PROVIDER_CONTACT = "provider_contact"
    SYSTEM = "system"


class ProviderRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class OutboxKind(str, Enum):
    NOTIFICATION = "notification"
    WEBHOOK = "webhook"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    PAUSED = "paused"


class RoutingSnapshot(BaseModel):
    """Routing fields of a ticket captured on either side of a transition."""

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    provider_id: Optional[int] = None
    assigned_to: Optional[int] = None
    forwarded_from_provider_id: Optional[int] = None
    status: TicketStatus
    reassignment_count: int = Field(ge=0)

    model_config = ConfigDict(from_attributes=True)


class ForwardMetadata(BaseModel):
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    action: ForwardAction
    target_provider_id: Optional[int] = None


class ReassignMetadata(BaseModel):
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    preserve_history: bool = False
    target_contact_id: Optional[int] = None


class AssignMetadata(BaseModel):
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    internal_assignment: Literal[True] = True


class ForwardRequest(BaseModel):
    action: Optional[ForwardAction] = None
    target_provider_id: Optional[int] = None
    reason: Optional[ReassignmentReason] = None
    notes: Optional[str] = Field(default=None, max_length=4096)
    new_status: Optional[TicketStatus] = None


class ReassignRequest(BaseModel):
    target_provider_id: Optional[int] = None
    target_contact_id: Optional[int] = None
    reason: Optional[ReassignmentReason] = None
    notes: Optional[str] = Field(default=None, max_length=4096)
    preserve_history: bool = False


class AssignRequest(BaseModel):
    assigned_to_user_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=4096)


class TicketRead(BaseModel):
    id: int
    site_id: Optional[str] = None
    client_name: Optional[str] = None
    description: Optional[str] = None
    provider_id: Optional[int] = None
    assigned_to: Optional[int] = None
    assigned_at: Optional[datetime] = None
    status: TicketStatus
    forwarded_from_provider_id: Optional[int] = None
    reassignment_count: int
    last_reassigned_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TicketActionResponse(BaseModel):
    success: bool = True
    ticket: TicketRead


class TicketEventRead(BaseModel):
    id: int
    ticket_id: int
    sequence: int
    event_type: TicketEventType
    actor_id: Optional[int] = None
    actor_type: Optional[ActorType] = None
    previous_state: Optional[dict[str, Any]] = None
    new_state: Optional[dict[str, Any]] = None
    reason: Optional[ReassignmentReason] = None
    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TicketEventList(BaseModel):
    events: list[TicketEventRead]


class OutboxEntryRead(BaseModel):
    id: int
    ticket_id: Optional[int] = None
    kind: OutboxKind
    payload: dict[str, Any]
    status: OutboxStatus
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
