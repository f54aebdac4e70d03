"""Notification delivery for ticket routing events."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_routing.core.config import get_settings
from referral_routing.core.errors import SideEffectError
from referral_routing.core.security import Identity
from referral_routing.models import Ticket, User

logger = logging.getLogger(__name__)

TICKET_FORWARDED_TO_ADMIN = "ticket_forwarded_to_admin"
TICKET_REASSIGNED = "ticket_reassigned"
TICKET_ASSIGNED_INTERNALLY = "ticket_assigned_internally"

_TEMPLATES: dict[str, tuple[str, str]] = {
    TICKET_FORWARDED_TO_ADMIN: (
        "Ticket #{ticket_id} was forwarded to the admin pool",
        "{actor} forwarded ticket #{ticket_id} to the admin pool.\n"
        "Reason: {reason}\n"
        "Notes: {notes}\n\n"
        "The ticket needs to be reassigned to a provider.",
    ),
    TICKET_REASSIGNED: (
        "Ticket #{ticket_id} has been assigned to you",
        "{actor} routed ticket #{ticket_id} to your organization and assigned it to you.\n"
        "Reason: {reason}\n"
        "Notes: {notes}",
    ),
    TICKET_ASSIGNED_INTERNALLY: (
        "Ticket #{ticket_id} has been assigned to you",
        "{actor} assigned ticket #{ticket_id} to you.\n"
        "Notes: {notes}",
    ),
}


def build_notification_payload(
    *,
    template: str,
    ticket: Ticket,
    actor: Identity,
    reason: str | None = None,
    notes: str | None = None,
    assignee_user_id: int | None = None,
) -> dict[str, Any]:
    if template not in _TEMPLATES:
        raise ValueError(f"Unknown notification template '{template}'")
    return {
        "template": template,
        "ticket_id": ticket.id,
        "actor": {
            "user_id": actor.user_id,
            "email": actor.email,
            "full_name": actor.full_name,
        },
        "reason": reason,
        "notes": notes,
        "assignee_user_id": assignee_user_id,
    }


def _clean_str(value: object | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    cleaned = str(value).strip()
    return cleaned or None


def render_notification(payload: Mapping[str, Any]) -> tuple[str, str]:
    subject_template, body_template = _TEMPLATES[payload["template"]]
    actor = payload.get("actor") or {}
    actor_label = (
        _clean_str(actor.get("full_name"))
        or _clean_str(actor.get("email"))
        or f"User {actor.get('user_id')}"
    )
    context = {
        "ticket_id": payload.get("ticket_id"),
        "actor": actor_label,
        "reason": (payload.get("reason") or "not specified").replace("_", " "),
        "notes": _clean_str(payload.get("notes")) or "none",
    }
    return subject_template.format(**context), body_template.format(**context)


async def _resolve_recipients(
    session: AsyncSession, payload: Mapping[str, Any]
) -> list[str]:
    if payload["template"] == TICKET_FORWARDED_TO_ADMIN:
        result = await session.execute(
            select(User.email).where(User.is_site_admin.is_(True)).order_by(User.id.asc())
        )
        return [email for email in result.scalars().all() if email]

    assignee_user_id = payload.get("assignee_user_id")
    if assignee_user_id is None:
        return []
    result = await session.execute(select(User.email).where(User.id == assignee_user_id))
    email = result.scalar_one_or_none()
    return [email] if email else []


async def send_smtp_email(
    *,
    subject: str,
    body: str,
    to: Iterable[str],
    template: str,
    ticket_identifier: str,
) -> None:
    """Deliver an email through the configured SMTP relay.

    Raises ``SideEffectError`` when the relay rejects the message so the
    outbox can retry it. Missing SMTP configuration skips delivery.
    """

    settings = get_settings()
    host = _clean_str(settings.smtp_host)
    sender = _clean_str(settings.smtp_sender)
    recipients = [address for address in (_clean_str(item) for item in to) if address]

    if not host or not sender:
        logger.debug("Skipping '%s' email because SMTP is not configured.", template)
        return
    if not recipients:
        logger.debug("Skipping '%s' email because it has no recipients.", template)
        return

    port = settings.smtp_port
    username = _clean_str(settings.smtp_username)
    password = _clean_str(settings.smtp_password)
    use_ssl = settings.smtp_use_ssl
    use_tls = settings.smtp_use_tls
    if use_ssl and use_tls:
        logger.warning(
            "SMTP has both TLS and SSL enabled; defaulting to implicit SSL only."
        )
        use_tls = False

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = sender
    message["To"] = ", ".join(recipients)
    message["X-Referral-Template"] = template
    message["X-Referral-Ticket"] = ticket_identifier
    message.set_content(body)

    timeout = 15.0
    ssl_context = ssl.create_default_context()

    def _send_email_sync() -> dict[str, tuple[int, bytes]]:
        if use_ssl:
            smtp_client = smtplib.SMTP_SSL(
                host=host,
                port=port,
                timeout=timeout,
                context=ssl_context,
            )
        else:
            smtp_client = smtplib.SMTP(host=host, port=port, timeout=timeout)

        with smtp_client as client:
            client.ehlo()
            if use_tls and not use_ssl:
                client.starttls(context=ssl_context)
                client.ehlo()
            if username and password:
                client.login(username, password)
            errors = client.send_message(
                message,
                from_addr=sender,
                to_addrs=recipients,
            )
            return errors or {}

    try:
        send_errors = await asyncio.to_thread(_send_email_sync)
    except (smtplib.SMTPException, OSError) as exc:
        raise SideEffectError(f"SMTP delivery of '{template}' failed: {exc}") from exc

    if send_errors:
        refused = ", ".join(sorted(send_errors))
        logger.warning("SMTP refused '%s' email for %s", template, refused)
    logger.info(
        "Sent '%s' email for ticket %s to %s",
        template,
        ticket_identifier,
        ", ".join(recipients),
    )


async def dispatch_notification(session: AsyncSession, payload: Mapping[str, Any]) -> None:
    """Render and send the notification described by an outbox payload."""

    recipients = await _resolve_recipients(session, payload)
    if not recipients:
        logger.info(
            "No recipients for '%s' notification on ticket %s",
            payload["template"],
            payload.get("ticket_id"),
        )
        return
    subject, body = render_notification(payload)
    await send_smtp_email(
        subject=subject,
        body=body,
        to=recipients,
        template=payload["template"],
        ticket_identifier=str(payload.get("ticket_id")),
    )
