import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from dateutil.relativedelta import relativedelta
from sqlalchemy.future import select

from config import settings
from conftest import auth_headers, seed_user
from models.credit_transaction import CreditTransaction
from models.payment_event import PaymentEvent
from models.user import User
from services import webhooks
from services.entitlement import as_utc
from services.ledger_errors import (
    InvalidEventPayloadError,
    SignatureVerificationFailedError,
    WebhookNotConfiguredError,
)
from services.subscriptions import INFINITE_ACCESS_CREDITS, INFINITE_ACCESS_END_DATE, activate
from services.webhooks import WebhookEvent, ingest_event, verify_event


WEBHOOK_SECRET = "whsec_test_secret"
USER_ID = "hook-user"
CUSTOMER_REF = "cus_hook"


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(timestamp or time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def _checkout_completed(event_id: str = "evt_checkout_1", plan: str = "monthly", user_id: str = USER_ID) -> dict:
    return _event(
        event_id,
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "object": "checkout.session",
            "customer": CUSTOMER_REF,
            "metadata": {"userId": user_id, "plan": plan},
        },
    )


def _subscription_event(event_id: str, event_type: str, *, status: str, interval: str, period_end: int) -> dict:
    return _event(
        event_id,
        event_type,
        {
            "id": "sub_test_1",
            "object": "subscription",
            "customer": CUSTOMER_REF,
            "status": status,
            "items": {
                "data": [
                    {
                        "current_period_end": period_end,
                        "price": {"recurring": {"interval": interval}},
                    }
                ]
            },
        },
    )


async def _post(client, event: dict, *, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event)
    return await client.post(
        "/subscriptions/webhook",
        content=payload,
        headers={"stripe-signature": _sign(payload, secret), "content-type": "application/json"},
    )


async def _load(session_maker, user_id: str = USER_ID):
    async with session_maker() as session:
        user = (await session.execute(select(User).where(User.id == user_id))).scalar_one()
        entries = (
            await session.execute(select(CreditTransaction).where(CreditTransaction.user_id == user_id))
        ).scalars().all()
        events = (await session.execute(select(PaymentEvent))).scalars().all()
        return user, entries, events


def test_verify_event_rejects_missing_signature():
    with pytest.raises(SignatureVerificationFailedError) as exc_info:
        verify_event(b"{}", None)
    assert exc_info.value.status_code == 400


def test_verify_event_rejects_wrong_secret():
    payload = json.dumps(_checkout_completed())
    with pytest.raises(SignatureVerificationFailedError):
        verify_event(payload.encode("utf-8"), _sign(payload, "whsec_other"))


def test_verify_event_rejects_stale_timestamp():
    payload = json.dumps(_checkout_completed())
    stale = time.time() - settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS - 60
    with pytest.raises(SignatureVerificationFailedError):
        verify_event(payload.encode("utf-8"), _sign(payload, timestamp=stale))


def test_verify_event_rejects_malformed_payload():
    payload = '{"type": "checkout.session.completed"}'
    with pytest.raises(InvalidEventPayloadError) as exc_info:
        verify_event(payload.encode("utf-8"), _sign(payload))
    assert exc_info.value.detail["error"] == "invalid_payload"


def test_verify_event_requires_configured_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    with pytest.raises(WebhookNotConfiguredError) as exc_info:
        verify_event(b"{}", "t=1,v1=abc")
    assert exc_info.value.status_code == 503


def test_verify_event_parses_envelope():
    payload = json.dumps(_checkout_completed())
    event = verify_event(payload.encode("utf-8"), _sign(payload))
    assert event.id == "evt_checkout_1"
    assert event.type == "checkout.session.completed"
    assert event.data.object["metadata"]["plan"] == "monthly"


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_without_side_effects(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID)

    response = await _post(ledger_client, _checkout_completed(), secret="whsec_forged")
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_signature"

    missing = await ledger_client.post("/subscriptions/webhook", content=json.dumps(_checkout_completed()))
    assert missing.status_code == 400

    user, entries, events = await _load(ledger_session_maker)
    assert user.subscription_status == "free"
    assert entries == []
    assert events == []


@pytest.mark.asyncio
async def test_checkout_completed_activates_once(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID)

    first = await _post(ledger_client, _checkout_completed())
    assert first.status_code == 200
    assert first.json() == {"received": True, "duplicate": False, "outcome": "activated"}

    user, entries, events = await _load(ledger_session_maker)
    first_end = as_utc(user.subscription_end_date)
    assert user.subscription_status == "monthly"
    assert first_end > datetime.now(timezone.utc) + timedelta(days=27)
    assert user.payment_customer_ref == CUSTOMER_REF
    assert len(entries) == 1
    assert len(events) == 1

    replay = await _post(ledger_client, _checkout_completed())
    assert replay.status_code == 200
    assert replay.json()["duplicate"] is True

    user, entries, events = await _load(ledger_session_maker)
    assert as_utc(user.subscription_end_date) == first_end
    assert len(entries) == 1
    assert len(events) == 1


@pytest.mark.asyncio
async def test_checkout_without_metadata_is_acknowledged_and_dropped(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID)
    event = _checkout_completed()
    event["data"]["object"]["metadata"] = {}

    response = await _post(ledger_client, event)
    assert response.status_code == 200
    assert response.json()["outcome"] == "dropped"

    user, entries, _ = await _load(ledger_session_maker)
    assert user.subscription_status == "free"
    assert entries == []


@pytest.mark.asyncio
async def test_checkout_for_unknown_user_is_dropped(ledger_client):
    response = await _post(ledger_client, _checkout_completed(user_id="ghost"))
    assert response.status_code == 200
    assert response.json()["outcome"] == "dropped"


@pytest.mark.asyncio
async def test_subscription_update_applies_gateway_period_end(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID, customer_ref=CUSTOMER_REF)
    period_end = int(datetime(2027, 6, 1, tzinfo=timezone.utc).timestamp())
    event = _subscription_event(
        "evt_sub_updated",
        "customer.subscription.updated",
        status="active",
        interval="year",
        period_end=period_end,
    )

    response = await _post(ledger_client, event)
    assert response.json()["outcome"] == "renewed"

    user, entries, _ = await _load(ledger_session_maker)
    assert user.subscription_status == "yearly"
    assert as_utc(user.subscription_end_date) == datetime(2027, 6, 1, tzinfo=timezone.utc)
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_subscription_update_with_inactive_status_is_ignored(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID, customer_ref=CUSTOMER_REF)
    event = _subscription_event(
        "evt_sub_incomplete",
        "customer.subscription.updated",
        status="incomplete",
        interval="month",
        period_end=int(time.time()) + 86400,
    )

    response = await _post(ledger_client, event)
    assert response.json()["outcome"] == "ignored"
    user, _, _ = await _load(ledger_session_maker)
    assert user.subscription_status == "free"


@pytest.mark.asyncio
async def test_subscription_event_for_unknown_customer_is_dropped(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID)
    event = _subscription_event(
        "evt_sub_unknown",
        "customer.subscription.created",
        status="active",
        interval="month",
        period_end=int(time.time()) + 86400,
    )

    response = await _post(ledger_client, event)
    assert response.status_code == 200
    assert response.json()["outcome"] == "dropped"


@pytest.mark.asyncio
async def test_subscription_deleted_downgrades_but_keeps_credits(ledger_client, ledger_session_maker):
    await seed_user(
        ledger_session_maker,
        USER_ID,
        credits=2,
        status="yearly",
        end_date=datetime.now(timezone.utc) + timedelta(days=200),
        customer_ref=CUSTOMER_REF,
    )
    event = _event("evt_sub_deleted", "customer.subscription.deleted", {"id": "sub_test_1", "customer": CUSTOMER_REF})

    response = await _post(ledger_client, event)
    assert response.json()["outcome"] == "downgraded"

    user, _, _ = await _load(ledger_session_maker)
    assert user.subscription_status == "free"
    assert user.subscription_end_date is None
    assert user.credits == 2

    status = await ledger_client.get("/subscriptions/status", headers=auth_headers(USER_ID))
    assert status.json()["hasActiveSubscription"] is False


@pytest.mark.asyncio
async def test_invoice_payment_succeeded_is_logged(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID, customer_ref=CUSTOMER_REF)
    event = _event("evt_invoice", "invoice.payment_succeeded", {"id": "in_test_1", "customer": CUSTOMER_REF})

    response = await _post(ledger_client, event)
    assert response.json()["outcome"] == "recorded"

    _, entries, _ = await _load(ledger_session_maker)
    assert len(entries) == 1
    assert entries[0].amount == 0
    assert entries[0].reference_id == "in_test_1"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(ledger_client, ledger_session_maker):
    response = await _post(ledger_client, _event("evt_other", "charge.refunded", {"id": "ch_1"}))
    assert response.status_code == 200
    assert response.json() == {"received": True, "duplicate": False, "outcome": "ignored"}


@pytest.mark.asyncio
async def test_handler_failure_leaves_event_unrecorded(ledger_session_maker, monkeypatch):
    await seed_user(ledger_session_maker, USER_ID)

    async def exploding_handler(obj, db):
        raise RuntimeError("database unavailable")

    monkeypatch.setitem(webhooks.EVENT_HANDLERS, "checkout.session.completed", exploding_handler)
    event = WebhookEvent.model_validate(_checkout_completed("evt_retry"))

    async with ledger_session_maker() as session:
        with pytest.raises(RuntimeError):
            await ingest_event(event, session)

    _, _, events = await _load(ledger_session_maker)
    assert events == []

    monkeypatch.undo()
    async with ledger_session_maker() as session:
        result = await ingest_event(event, session)
    assert result["outcome"] == "activated"


@pytest.mark.asyncio
async def test_handler_failure_rolls_back_ledger_writes(ledger_session_maker, monkeypatch):
    await seed_user(ledger_session_maker, USER_ID)

    async def activate_then_fail(obj, db):
        await activate(USER_ID, "monthly", "Stripe checkout", db, fresh_period=True, commit=False)
        raise RuntimeError("connection dropped after ledger write")

    monkeypatch.setitem(webhooks.EVENT_HANDLERS, "checkout.session.completed", activate_then_fail)
    event = WebhookEvent.model_validate(_checkout_completed("evt_partial"))

    async with ledger_session_maker() as session:
        with pytest.raises(RuntimeError):
            await ingest_event(event, session)

    user, entries, events = await _load(ledger_session_maker)
    assert user.subscription_status == "free"
    assert user.subscription_end_date is None
    assert user.ledger_version == 0
    assert entries == []
    assert events == []


@pytest.mark.asyncio
async def test_checkout_after_subscription_created_grants_one_period(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID, customer_ref=CUSTOMER_REF)
    gateway_end = datetime.now(timezone.utc) + relativedelta(months=1)
    created = _subscription_event(
        "evt_sub_created",
        "customer.subscription.created",
        status="active",
        interval="month",
        period_end=int(gateway_end.timestamp()),
    )

    assert (await _post(ledger_client, created)).json()["outcome"] == "renewed"
    assert (await _post(ledger_client, _checkout_completed("evt_checkout_late"))).json()["outcome"] == "activated"

    user, _, _ = await _load(ledger_session_maker)
    remaining = as_utc(user.subscription_end_date) - datetime.now(timezone.utc)
    assert user.subscription_status == "monthly"
    assert timedelta(days=27) < remaining <= timedelta(days=32)


@pytest.mark.asyncio
async def test_subscription_created_after_checkout_keeps_gateway_period(ledger_client, ledger_session_maker):
    await seed_user(ledger_session_maker, USER_ID)
    gateway_end = (datetime.now(timezone.utc) + relativedelta(months=1)).replace(microsecond=0)
    created = _subscription_event(
        "evt_sub_created_late",
        "customer.subscription.created",
        status="active",
        interval="month",
        period_end=int(gateway_end.timestamp()),
    )

    await _post(ledger_client, _checkout_completed("evt_checkout_first"))
    await _post(ledger_client, created)

    user, _, _ = await _load(ledger_session_maker)
    assert as_utc(user.subscription_end_date) == gateway_end


@pytest.mark.asyncio
async def test_gateway_events_leave_operator_grant_in_place(ledger_client, ledger_session_maker):
    await seed_user(
        ledger_session_maker,
        USER_ID,
        credits=INFINITE_ACCESS_CREDITS,
        status="yearly",
        end_date=INFINITE_ACCESS_END_DATE,
        customer_ref=CUSTOMER_REF,
    )
    updated = _subscription_event(
        "evt_sub_vip",
        "customer.subscription.updated",
        status="active",
        interval="month",
        period_end=int(time.time()) + 30 * 86400,
    )
    deleted = _event("evt_sub_vip_deleted", "customer.subscription.deleted", {"id": "sub_vip", "customer": CUSTOMER_REF})

    assert (await _post(ledger_client, updated)).json()["outcome"] == "ignored"
    await _post(ledger_client, _checkout_completed("evt_checkout_vip"))
    assert (await _post(ledger_client, deleted)).json()["outcome"] == "ignored"

    user, entries, _ = await _load(ledger_session_maker)
    assert user.subscription_status == "yearly"
    assert as_utc(user.subscription_end_date) == INFINITE_ACCESS_END_DATE
    assert user.credits == INFINITE_ACCESS_CREDITS
    assert entries == []
