from __future__ import annotations

import smtplib
from typing import Any

import pytest
import pytest_asyncio

from referral_routing.core.config import get_settings
from referral_routing.core.db import dispose_engine, get_session_factory
from referral_routing.core.errors import SideEffectError
from referral_routing.core.security import Identity
from referral_routing.models import Ticket
from referral_routing.services import notifications
from referral_routing.services.notifications import (
    build_notification_payload,
    dispatch_notification,
    render_notification,
    send_smtp_email,
)
from tests.factories import seed_world


@pytest_asyncio.fixture(autouse=True)
async def notifications_db(tmp_path, monkeypatch):
    db_path = tmp_path / "notifications.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("REFERRAL_ROUTING_SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("REFERRAL_ROUTING_SMTP_PORT", "2525")
    monkeypatch.setenv("REFERRAL_ROUTING_SMTP_SENDER", "referrals@example.com")
    monkeypatch.setenv("REFERRAL_ROUTING_SMTP_USERNAME", "mailer")
    monkeypatch.setenv("REFERRAL_ROUTING_SMTP_PASSWORD", "hunter2")
    monkeypatch.setenv("REFERRAL_ROUTING_SMTP_USE_TLS", "1")
    get_settings.cache_clear()
    _DummySMTP.reset()
    await dispose_engine()
    yield
    await dispose_engine()
    get_settings.cache_clear()


class _DummySMTP:
    last_kwargs: dict[str, Any] | None = None
    send_calls: list[dict[str, Any]] = []
    login_args: tuple[str, str] | None = None
    starttls_called: bool = False
    fail_with: Exception | None = None

    def __init__(self, *, host=None, port=None, timeout=None, context=None, **kwargs):
        _DummySMTP.last_kwargs = {"host": host, "port": port, "timeout": timeout}

    def __enter__(self):
        if _DummySMTP.fail_with is not None:
            raise _DummySMTP.fail_with
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def ehlo(self):
        return None

    def starttls(self, *, context=None):
        _DummySMTP.starttls_called = True

    def login(self, username, password):
        _DummySMTP.login_args = (username, password)

    def send_message(self, message, from_addr, to_addrs):
        _DummySMTP.send_calls.append(
            {"message": message, "sender": from_addr, "recipients": list(to_addrs)}
        )
        return {}

    @classmethod
    def reset(cls):
        cls.last_kwargs = None
        cls.send_calls = []
        cls.login_args = None
        cls.starttls_called = False
        cls.fail_with = None


async def _ticket(ticket_id: int) -> Ticket:
    session_factory = await get_session_factory()
    async with session_factory() as session:
        return await session.get(Ticket, ticket_id)


@pytest.mark.asyncio
async def test_forwarded_to_admin_notifies_every_site_admin(monkeypatch):
    monkeypatch.setattr(notifications.smtplib, "SMTP", _DummySMTP)
    world = await seed_world()
    ticket = await _ticket(world.ticket_id)

    payload = build_notification_payload(
        template=notifications.TICKET_FORWARDED_TO_ADMIN,
        ticket=ticket,
        actor=world.alpha_admin,
        reason="unable_to_assist",
        notes="  Client moved out of county  ",
    )

    session_factory = await get_session_factory()
    async with session_factory() as session:
        await dispatch_notification(session, payload)

    assert _DummySMTP.last_kwargs == {"host": "smtp.example.com", "port": 2525, "timeout": 15.0}
    assert _DummySMTP.starttls_called is True
    assert _DummySMTP.login_args == ("mailer", "hunter2")
    [call] = _DummySMTP.send_calls
    assert call["recipients"] == ["admin@referrals.example"]
    assert call["sender"] == "referrals@example.com"
    message = call["message"]
    assert message["Subject"] == f"Ticket #{world.ticket_id} was forwarded to the admin pool"
    assert message["X-Referral-Template"] == "ticket_forwarded_to_admin"
    body = message.get_content()
    assert "Alpha Lead forwarded ticket" in body
    assert "Reason: unable to assist" in body
    assert "Notes: Client moved out of county" in body


@pytest.mark.asyncio
async def test_reassigned_notification_goes_to_assignee(monkeypatch):
    monkeypatch.setattr(notifications.smtplib, "SMTP", _DummySMTP)
    world = await seed_world()
    ticket = await _ticket(world.ticket_id)

    payload = build_notification_payload(
        template=notifications.TICKET_REASSIGNED,
        ticket=ticket,
        actor=world.site_admin,
        reason="wrong_org",
        assignee_user_id=world.beta_handler.user_id,
    )
    session_factory = await get_session_factory()
    async with session_factory() as session:
        await dispatch_notification(session, payload)

    [call] = _DummySMTP.send_calls
    assert call["recipients"] == ["intake@beta.example"]


@pytest.mark.asyncio
async def test_notification_without_recipient_is_skipped(monkeypatch):
    monkeypatch.setattr(notifications.smtplib, "SMTP", _DummySMTP)
    world = await seed_world()
    ticket = await _ticket(world.ticket_id)

    payload = build_notification_payload(
        template=notifications.TICKET_REASSIGNED,
        ticket=ticket,
        actor=world.site_admin,
    )
    session_factory = await get_session_factory()
    async with session_factory() as session:
        await dispatch_notification(session, payload)

    assert _DummySMTP.send_calls == []


@pytest.mark.asyncio
async def test_send_smtp_email_skips_when_unconfigured(monkeypatch):
    monkeypatch.delenv("REFERRAL_ROUTING_SMTP_HOST")
    get_settings.cache_clear()
    monkeypatch.setattr(notifications.smtplib, "SMTP", _DummySMTP)

    await send_smtp_email(
        subject="Subject",
        body="Body",
        to=["someone@example.com"],
        template="ticket_reassigned",
        ticket_identifier="1",
    )

    assert _DummySMTP.last_kwargs is None
    assert _DummySMTP.send_calls == []


@pytest.mark.asyncio
async def test_smtp_failure_raises_side_effect_error(monkeypatch):
    monkeypatch.setattr(notifications.smtplib, "SMTP", _DummySMTP)
    _DummySMTP.fail_with = smtplib.SMTPServerDisconnected("Connection unexpectedly closed")

    with pytest.raises(SideEffectError) as excinfo:
        await send_smtp_email(
            subject="Subject",
            body="Body",
            to=["someone@example.com"],
            template="ticket_reassigned",
            ticket_identifier="1",
        )
    assert "Connection unexpectedly closed" in str(excinfo.value)


@pytest.mark.asyncio
async def test_render_notification_falls_back_for_missing_fields():
    subject, body = render_notification(
        {
            "template": notifications.TICKET_ASSIGNED_INTERNALLY,
            "ticket_id": 7,
            "actor": {"user_id": 3, "email": None, "full_name": None},
            "reason": None,
            "notes": None,
        }
    )
    assert subject == "Ticket #7 has been assigned to you"
    assert body == "User 3 assigned ticket #7 to you.\nNotes: none"

    with pytest.raises(ValueError):
        build_notification_payload(
            template="ticket_deleted",
            ticket=Ticket(id=7),
            actor=Identity(user_id=3),
        )
