from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Mapping
from uuid import uuid4

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.config import get_settings
from referral_routing.core.errors import SideEffectError
from referral_routing.models import WebhookDelivery, WebhookEndpoint, utcnow

logger = logging.getLogger(__name__)

TICKET_FORWARDED = "ticket.forwarded"
TICKET_REASSIGNED = "ticket.reassigned"
TICKET_ASSIGNED = "ticket.assigned"

_MAX_BODY_LENGTH = 2000


def _truncate_value(value: str) -> str:
    if len(value) <= _MAX_BODY_LENGTH:
        return value
    return value[: _MAX_BODY_LENGTH - 3] + "..."


def sign_payload(secret: str, timestamp: str, body: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def _is_subscribed(endpoint: WebhookEndpoint, event_name: str) -> bool:
    events = endpoint.events or []
    return event_name in events


def build_envelope(
    event_name: str, payload: Mapping[str, Any], delivery_id: str | None = None
) -> dict[str, Any]:
    return {
        "id": delivery_id or uuid4().hex,
        "event": event_name,
        "created_at": utcnow().isoformat().replace("+00:00", "Z"),
        "data": dict(payload),
    }


async def _deliver(
    session: AsyncSession,
    endpoint: WebhookEndpoint,
    event_name: str,
    envelope: Mapping[str, Any],
) -> WebhookDelivery:
    settings = get_settings()
    body = json.dumps(envelope, separators=(",", ":"), ensure_ascii=False, default=str)
    timestamp = str(int(time.time()))
    signature = sign_payload(endpoint.secret, timestamp, body)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": settings.webhook_user_agent,
        "X-Referral-Event": event_name,
        "X-Referral-Timestamp": timestamp,
        "X-Referral-Signature": f"t={timestamp},v1={signature}",
    }

    started = time.monotonic()
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    try:
        async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as client:
            response = await client.post(
                endpoint.url, content=body.encode("utf-8"), headers=headers
            )
        status_code = response.status_code
        response_body = _truncate_value(response.text) or None
        if response.status_code >= 400:
            error_message = f"Non-2xx response ({response.status_code})"
    except httpx.HTTPError as exc:
        error_message = str(exc) or exc.__class__.__name__

    duration_ms = int((time.monotonic() - started) * 1000)
    success = error_message is None
    delivery = WebhookDelivery(
        webhook_id=endpoint.id,
        event_type=event_name,
        delivery_id=envelope["id"],
        request_payload=dict(envelope),
        status_code=status_code,
        success=success,
        duration_ms=duration_ms,
        response_body=response_body,
        error_message=error_message,
    )
    session.add(delivery)
    endpoint.last_delivery_at = utcnow()
    endpoint.last_error = None if success else error_message
    session.add(endpoint)
    return delivery


async def emit(
    session: AsyncSession,
    *,
    event_name: str,
    site_id: str | None,
    payload: Mapping[str, Any],
    delivery_id: str | None = None,
) -> list[WebhookDelivery]:
    """POST ``event_name`` to every active endpoint of ``site_id`` subscribed to it.

    Each attempt is logged as a ``WebhookDelivery``. When ``delivery_id`` is
    given, endpoints that already accepted that delivery are skipped, so a
    retried outbox entry only reaches the endpoints that failed. Raises
    ``SideEffectError`` after logging when any endpoint rejected the delivery.
    """

    if not site_id:
        logger.debug("Skipping webhook '%s' because the ticket has no site.", event_name)
        return []

    result = await session.execute(
        select(WebhookEndpoint)
        .where(
            WebhookEndpoint.site_id == site_id,
            WebhookEndpoint.is_active.is_(True),
        )
        .order_by(WebhookEndpoint.id.asc())
    )
    endpoints = [
        endpoint for endpoint in result.scalars().all() if _is_subscribed(endpoint, event_name)
    ]
    if delivery_id and endpoints:
        accepted = await session.execute(
            select(WebhookDelivery.webhook_id).where(
                WebhookDelivery.delivery_id == delivery_id,
                WebhookDelivery.success.is_(True),
            )
        )
        already_delivered = set(accepted.scalars().all())
        endpoints = [endpoint for endpoint in endpoints if endpoint.id not in already_delivered]
    if not endpoints:
        return []

    envelope = build_envelope(event_name, payload, delivery_id)
    deliveries = [
        await _deliver(session, endpoint, event_name, envelope) for endpoint in endpoints
    ]
    await session.commit()

    failures = [delivery for delivery in deliveries if not delivery.success]
    for delivery in failures:
        logger.warning(
            "Webhook '%s' delivery to endpoint %s failed: %s",
            event_name,
            delivery.webhook_id,
            delivery.error_message,
        )
    if failures:
        raise SideEffectError(
            f"{len(failures)} of {len(deliveries)} '{event_name}' webhook deliveries failed"
        )
    logger.info("Delivered webhook '%s' to %d endpoint(s)", event_name, len(deliveries))
    return deliveries
