import hashlib
import hmac
import json
import time

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from config import settings
from conftest import create_user
from models.payment import Payment
from services.credits import CreditLedger


WEBHOOK_SECRET = "whsec_test_resume_builder"


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


def _signed(event, secret=WEBHOOK_SECRET, timestamp=None):
    payload = json.dumps(event)
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


def _completed_event(session_id, user_id, credits=10, event_type="checkout.session.completed", **overrides):
    session = {
        "id": session_id,
        "object": "checkout.session",
        "client_reference_id": user_id,
        "payment_status": "paid",
        "payment_intent": f"pi_{session_id}",
        "amount_total": 999,
        "metadata": {"user_id": user_id, "package_id": "pkg-starter", "credits": str(credits)},
    }
    session.update(overrides)
    return {"id": f"evt_{session_id}", "type": event_type, "data": {"object": session}}


async def _post(client, event, **kwargs):
    payload, headers = _signed(event, **kwargs)
    return await client.post("/billing/webhook", content=payload, headers=headers)


@pytest.mark.asyncio
async def test_completed_checkout_credits_purchase(client, session_maker):
    user_id = await create_user(session_maker, "webhook@example.com")

    resp = await _post(client, _completed_event("cs_test_paid", user_id, credits=10))
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "outcome": "credited"}

    async with session_maker() as session:
        ledger = CreditLedger(session)
        assert await ledger.get_balance(user_id) == 13
        entries = await ledger.history(user_id)
        assert len(entries) == 1
        assert entries[0].type == "purchase"
        assert entries[0].payment_id == "cs_test_paid"

        payment = (
            await session.execute(select(Payment).where(Payment.stripe_session_id == "cs_test_paid"))
        ).scalar_one()
        assert payment.status == "completed"
        assert payment.credits_purchased == 10
        assert payment.amount == 999
        assert payment.completed_at is not None


@pytest.mark.asyncio
async def test_duplicate_delivery_is_applied_once(client, session_maker):
    user_id = await create_user(session_maker, "duplicate@example.com")
    event = _completed_event("cs_test_dup", user_id, credits=25)

    first = await _post(client, event)
    second = await _post(client, event)
    async_success = await _post(
        client,
        _completed_event("cs_test_dup", user_id, credits=25, event_type="checkout.session.async_payment_succeeded"),
    )

    assert first.json()["outcome"] == "credited"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert async_success.json()["outcome"] == "duplicate"

    async with session_maker() as session:
        ledger = CreditLedger(session)
        assert await ledger.get_balance(user_id) == 28
        assert len(await ledger.history(user_id)) == 1


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(client, session_maker):
    user_id = await create_user(session_maker, "forged@example.com")

    resp = await _post(client, _completed_event("cs_test_forged", user_id), secret="whsec_wrong_secret")
    assert resp.status_code == 400
    body = resp.json()
    assert body["type"] == "error"
    assert body["error"]["type"] == "invalid_signature"

    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3


@pytest.mark.asyncio
async def test_stale_timestamp_is_rejected(client, session_maker):
    user_id = await create_user(session_maker, "stale@example.com")
    event = _completed_event("cs_test_stale", user_id)

    resp = await _post(client, event, timestamp=time.time() - 3600)
    assert resp.status_code == 400

    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3


@pytest.mark.asyncio
async def test_missing_signature_header_is_rejected(client):
    resp = await client.post(
        "/billing/webhook",
        content=json.dumps({"type": "checkout.session.completed"}),
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_signature"


@pytest.mark.asyncio
async def test_unconfigured_secret_rejects_every_delivery(client, monkeypatch, session_maker):
    user_id = await create_user(session_maker, "nosecret@example.com")
    payload, headers = _signed(_completed_event("cs_test_nosecret", user_id))
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

    resp = await client.post("/billing/webhook", content=payload, headers=headers)
    assert resp.status_code == 400

    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3


@pytest.mark.asyncio
async def test_missing_metadata_is_acknowledged_but_not_credited(client, session_maker):
    user_id = await create_user(session_maker, "nometa@example.com")
    event = _completed_event("cs_test_nometa", user_id, metadata={}, client_reference_id=None)

    resp = await _post(client, event)
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "skipped"

    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3


@pytest.mark.asyncio
async def test_unknown_user_in_metadata_fails_without_crediting(client, session_maker):
    resp = await _post(client, _completed_event("cs_test_ghost", "ghost-user"))
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "failed"

    async with session_maker() as session:
        assert not await CreditLedger(session).is_payment_applied("cs_test_ghost")


@pytest.mark.asyncio
async def test_unpaid_completion_waits_for_async_success(client, session_maker):
    user_id = await create_user(session_maker, "async@example.com")

    pending = await _post(client, _completed_event("cs_test_async", user_id, payment_status="unpaid"))
    assert pending.json()["outcome"] == "pending"

    succeeded = await _post(
        client,
        _completed_event("cs_test_async", user_id, event_type="checkout.session.async_payment_succeeded"),
    )
    assert succeeded.json()["outcome"] == "credited"

    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 13


@pytest.mark.asyncio
async def test_expired_session_marks_pending_payment(client, session_maker):
    user_id = await create_user(session_maker, "expired@example.com")
    async with session_maker() as session:
        session.add(Payment(user_id=user_id, stripe_session_id="cs_test_expired", amount=999, credits_purchased=10))
        await session.commit()

    resp = await _post(
        client,
        {"id": "evt_expired", "type": "checkout.session.expired", "data": {"object": {"id": "cs_test_expired"}}},
    )
    assert resp.json()["outcome"] == "expired"

    async with session_maker() as session:
        payment = (
            await session.execute(select(Payment).where(Payment.stripe_session_id == "cs_test_expired"))
        ).scalar_one()
        assert payment.status == "expired"
        assert await CreditLedger(session).get_balance(user_id) == 3


@pytest.mark.asyncio
async def test_unhandled_event_types_are_ignored(client):
    resp = await _post(client, {"id": "evt_other", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"


@pytest.mark.asyncio
async def test_signed_but_malformed_payload_is_rejected(client):
    payload = "not json"
    ts = int(time.time())
    digest = hmac.new(WEBHOOK_SECRET.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()

    resp = await client.post(
        "/billing/webhook",
        content=payload,
        headers={"Stripe-Signature": f"t={ts},v1={digest}"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "validation_error"


async def _pending_payment(session_maker, user_id, session_id, payment_id=None):
    async with session_maker() as session:
        payment = Payment(user_id=user_id, stripe_session_id=session_id, amount=999, credits_purchased=10)
        if payment_id:
            payment.id = payment_id
        session.add(payment)
        await session.commit()
        return payment.id


async def _payment(session_maker, session_id):
    async with session_maker() as session:
        return (await session.execute(select(Payment).where(Payment.stripe_session_id == session_id))).scalar_one()


@pytest.mark.asyncio
async def test_async_payment_failure_marks_pending_payment_failed(client, session_maker):
    user_id = await create_user(session_maker, "asyncfail@example.com")
    await _pending_payment(session_maker, user_id, "cs_test_asyncfail")

    pending = await _post(client, _completed_event("cs_test_asyncfail", user_id, payment_status="unpaid"))
    assert pending.json()["outcome"] == "pending"
    assert (await _payment(session_maker, "cs_test_asyncfail")).stripe_payment_intent_id == "pi_cs_test_asyncfail"

    failed = await _post(
        client,
        _completed_event("cs_test_asyncfail", user_id, event_type="checkout.session.async_payment_failed"),
    )
    assert failed.status_code == 200
    assert failed.json()["outcome"] == "failed"

    assert (await _payment(session_maker, "cs_test_asyncfail")).status == "failed"
    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3


@pytest.mark.asyncio
async def test_payment_intent_failure_is_matched_by_payment_ref(client, session_maker):
    user_id = await create_user(session_maker, "intentfail@example.com")
    payment_id = await _pending_payment(session_maker, user_id, "cs_test_intentfail", payment_id="pay-ref-1")
    event = {
        "id": "evt_intentfail",
        "type": "payment_intent.payment_failed",
        "data": {
            "object": {
                "id": "pi_intentfail",
                "object": "payment_intent",
                "metadata": {"user_id": user_id, "credits": "10", "payment_ref": payment_id},
            }
        },
    }

    resp = await _post(client, event)
    assert resp.json()["outcome"] == "failed"

    payment = await _payment(session_maker, "cs_test_intentfail")
    assert payment.status == "failed"
    assert payment.stripe_payment_intent_id == "pi_intentfail"


@pytest.mark.asyncio
async def test_payment_failure_never_downgrades_completed_payment(client, session_maker):
    user_id = await create_user(session_maker, "settled@example.com")
    assert (await _post(client, _completed_event("cs_test_settled", user_id))).json()["outcome"] == "credited"

    resp = await _post(
        client,
        {
            "id": "evt_settled_fail",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_cs_test_settled", "metadata": {}}},
        },
    )
    assert resp.json()["outcome"] == "ignored"

    assert (await _payment(session_maker, "cs_test_settled")).status == "completed"
    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 13


@pytest.mark.asyncio
@pytest.mark.parametrize("data", ["oops", {"object": "cs_test"}, {"object": None}, None])
async def test_signed_event_without_object_payload_is_rejected(client, data):
    resp = await _post(client, {"id": "evt_malformed", "type": "checkout.session.completed", "data": data})
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "validation_error"


@pytest.mark.asyncio
async def test_concurrent_credit_conflict_counts_as_duplicate(client, session_maker, monkeypatch):
    user_id = await create_user(session_maker, "conflict@example.com")
    await _pending_payment(session_maker, user_id, "cs_test_conflict")

    async def conflicting_credit(self, *args, **kwargs):
        raise IntegrityError("INSERT INTO credit_transactions", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(CreditLedger, "credit", conflicting_credit)

    resp = await _post(client, _completed_event("cs_test_conflict", user_id))
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "duplicate"

    assert (await _payment(session_maker, "cs_test_conflict")).status == "pending"
    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3
