from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from referral_routing.core.config import get_settings
from referral_routing.core.db import dispose_engine, get_session_factory
from referral_routing.core.errors import SideEffectError
from referral_routing.models import WebhookDelivery, WebhookEndpoint
from referral_routing.services import webhooks
from tests.factories import SITE_ID, WEBHOOK_SECRET, seed_world


@pytest_asyncio.fixture(autouse=True)
async def webhook_db(tmp_path, monkeypatch):
    db_path = tmp_path / "webhooks.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    get_settings.cache_clear()
    await dispose_engine()
    yield
    await dispose_engine()
    get_settings.cache_clear()


def _install_transport(monkeypatch, handler) -> None:
    real_client = httpx.AsyncClient

    def client_factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(webhooks.httpx, "AsyncClient", client_factory)


async def _deliveries() -> list[WebhookDelivery]:
    session_factory = await get_session_factory()
    async with session_factory() as session:
        result = await session.execute(select(WebhookDelivery).order_by(WebhookDelivery.id.asc()))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_signature_matches_hmac_over_timestamp_and_body():
    body = '{"event":"ticket.forwarded"}'
    expected = hmac.new(
        b"secret", b"1700000000." + body.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    assert webhooks.sign_payload("secret", "1700000000", body) == expected


@pytest.mark.asyncio
async def test_emit_posts_signed_envelope_and_logs_delivery(monkeypatch):
    world = await seed_world()
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, text="queued")

    _install_transport(monkeypatch, handler)

    session_factory = await get_session_factory()
    async with session_factory() as session:
        deliveries = await webhooks.emit(
            session,
            event_name=webhooks.TICKET_FORWARDED,
            site_id=SITE_ID,
            payload={"ticket_id": world.ticket_id, "action": "forward_to_admin"},
            delivery_id="dlv-123",
        )

    assert len(deliveries) == 1
    [request] = captured
    assert str(request.url) == "https://hooks.example/referrals"
    assert request.headers["X-Referral-Event"] == "ticket.forwarded"

    body = request.content.decode("utf-8")
    envelope = json.loads(body)
    assert envelope["id"] == "dlv-123"
    assert envelope["event"] == "ticket.forwarded"
    assert envelope["data"] == {"ticket_id": world.ticket_id, "action": "forward_to_admin"}

    timestamp = request.headers["X-Referral-Timestamp"]
    signature = request.headers["X-Referral-Signature"]
    assert signature == f"t={timestamp},v1={webhooks.sign_payload(WEBHOOK_SECRET, timestamp, body)}"

    [logged] = await _deliveries()
    assert logged.webhook_id == world.webhook_id
    assert logged.success is True
    assert logged.status_code == 202
    assert logged.response_body == "queued"
    assert logged.request_payload["id"] == "dlv-123"

    async with session_factory() as session:
        endpoint = (
            await session.execute(
                select(WebhookEndpoint).where(WebhookEndpoint.id == world.webhook_id)
            )
        ).scalar_one()
    assert endpoint.last_delivery_at is not None
    assert endpoint.last_error is None


@pytest.mark.asyncio
async def test_emit_skips_unsubscribed_and_inactive_endpoints(monkeypatch):
    await seed_world(webhook_events=["ticket.assigned"])
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200)

    _install_transport(monkeypatch, handler)

    session_factory = await get_session_factory()
    async with session_factory() as session:
        session.add(
            WebhookEndpoint(
                site_id=SITE_ID,
                url="https://disabled.example/hook",
                secret="other",
                events=["ticket.forwarded"],
                is_active=False,
            )
        )
        await session.commit()

        assert (
            await webhooks.emit(
                session,
                event_name=webhooks.TICKET_FORWARDED,
                site_id=SITE_ID,
                payload={"ticket_id": 1},
            )
            == []
        )
        assert (
            await webhooks.emit(
                session,
                event_name=webhooks.TICKET_ASSIGNED,
                site_id=None,
                payload={"ticket_id": 1},
            )
            == []
        )

    assert captured == []
    assert await _deliveries() == []


@pytest.mark.asyncio
async def test_rejected_delivery_is_logged_then_raised(monkeypatch):
    world = await seed_world()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    _install_transport(monkeypatch, handler)

    session_factory = await get_session_factory()
    async with session_factory() as session:
        with pytest.raises(SideEffectError):
            await webhooks.emit(
                session,
                event_name=webhooks.TICKET_REASSIGNED,
                site_id=SITE_ID,
                payload={"ticket_id": world.ticket_id},
            )

    [logged] = await _deliveries()
    assert logged.success is False
    assert logged.status_code == 500
    assert logged.error_message == "Non-2xx response (500)"

    async with session_factory() as session:
        endpoint = (
            await session.execute(
                select(WebhookEndpoint).where(WebhookEndpoint.id == world.webhook_id)
            )
        ).scalar_one()
    assert endpoint.last_error == "Non-2xx response (500)"


@pytest.mark.asyncio
async def test_transport_error_is_logged(monkeypatch):
    world = await seed_world()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    _install_transport(monkeypatch, handler)

    session_factory = await get_session_factory()
    async with session_factory() as session:
        with pytest.raises(SideEffectError):
            await webhooks.emit(
                session,
                event_name=webhooks.TICKET_ASSIGNED,
                site_id=SITE_ID,
                payload={"ticket_id": world.ticket_id},
            )

    [logged] = await _deliveries()
    assert logged.success is False
    assert logged.status_code is None
    assert logged.error_message == "connection refused"


@pytest.mark.asyncio
async def test_retry_only_reaches_endpoints_that_have_not_accepted(monkeypatch):
    world = await seed_world()
    hits: list[str] = []
    bad_status = {"code": 500}

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(str(request.url))
        if request.url.host == "bad.example":
            return httpx.Response(bad_status["code"])
        return httpx.Response(200)

    _install_transport(monkeypatch, handler)

    session_factory = await get_session_factory()
    async with session_factory() as session:
        session.add(
            WebhookEndpoint(
                site_id=SITE_ID,
                url="https://bad.example/x",
                secret="other",
                events=["ticket.forwarded"],
                is_active=True,
            )
        )
        await session.commit()

    for _ in range(2):
        async with session_factory() as session:
            with pytest.raises(SideEffectError):
                await webhooks.emit(
                    session,
                    event_name=webhooks.TICKET_FORWARDED,
                    site_id=SITE_ID,
                    payload={"ticket_id": world.ticket_id},
                    delivery_id="dlv-retry",
                )

    assert hits == [
        "https://hooks.example/referrals",
        "https://bad.example/x",
        "https://bad.example/x",
    ]

    bad_status["code"] = 204
    async with session_factory() as session:
        deliveries = await webhooks.emit(
            session,
            event_name=webhooks.TICKET_FORWARDED,
            site_id=SITE_ID,
            payload={"ticket_id": world.ticket_id},
            delivery_id="dlv-retry",
        )
    assert [delivery.status_code for delivery in deliveries] == [204]
    assert hits[-1] == "https://bad.example/x"
    assert len(hits) == 4

    # Once every endpoint has accepted, a further retry sends nothing.
    async with session_factory() as session:
        assert (
            await webhooks.emit(
                session,
                event_name=webhooks.TICKET_FORWARDED,
                site_id=SITE_ID,
                payload={"ticket_id": world.ticket_id},
                delivery_id="dlv-retry",
            )
            == []
        )
    assert len(hits) == 4

    logged = await _deliveries()
    assert {delivery.delivery_id for delivery in logged} == {"dlv-retry"}
    assert [delivery.success for delivery in logged] == [True, False, False, True]
