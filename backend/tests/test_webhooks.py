import json
import time

import pytest
import stripe

from marketplace import models
from marketplace.models import PaymentStatus
from marketplace.services.payment_gateway import (
    WebhookSignatureError,
    construct_event,
    sign_payload,
)
from marketplace.services.webhooks import handle_processor_event

from payment_fakes import book, intent_event, make_professional, make_user, signed


def pending_payment(db, gateway):
    client = make_user(db, "client@test.com")
    professional = make_professional(db)
    _, payment = book(db, gateway, client, professional)
    return payment


def received_notifications(db):
    return (
        db.query(models.Notification)
        .filter(models.Notification.type == models.NotificationType.PAYMENT_RECEIVED)
        .count()
    )


def test_succeeded_marks_payment_paid(db, gateway):
    payment = pending_payment(db, gateway)

    outcome = handle_processor_event(db, intent_event(payment))

    assert outcome == "paid"
    db.refresh(payment)
    assert payment.status == PaymentStatus.PAID
    assert payment.payment_method == "card"
    assert payment.transaction_id == "ch_1"


def test_duplicate_delivery_is_a_no_op(db, gateway):
    payment = pending_payment(db, gateway)
    event = intent_event(payment)

    assert handle_processor_event(db, event) == "paid"
    notified = received_notifications(db)
    assert handle_processor_event(db, event) == "duplicate"

    db.refresh(payment)
    assert payment.status == PaymentStatus.PAID
    assert received_notifications(db) == notified


def test_unknown_intent_is_ignored(db):
    event = {"id": "evt_x", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_missing"}}}

    assert handle_processor_event(db, event) == "unknown_intent"


def test_unknown_event_type_is_ignored(db):
    assert handle_processor_event(db, {"id": "evt_y", "type": "charge.refunded", "data": {}}) == "ignored"


def test_failed_payment(db, gateway):
    payment = pending_payment(db, gateway)

    assert handle_processor_event(db, intent_event(payment, "payment_intent.payment_failed")) == "failed"
    # A late success cannot resurrect a failed payment
    assert handle_processor_event(db, intent_event(payment)) == "duplicate"

    db.refresh(payment)
    assert payment.status == PaymentStatus.FAILED


def test_success_after_cancel_does_not_reopen(db, gateway):
    payment = pending_payment(db, gateway)
    payment.status = PaymentStatus.CANCELLED
    db.commit()

    assert handle_processor_event(db, intent_event(payment)) == "duplicate"
    db.refresh(payment)
    assert payment.status == PaymentStatus.CANCELLED


def test_account_updated_enables_payouts(db):
    professional = make_professional(db, stripe_account_id="acct_42")
    event = {
        "id": "evt_acct",
        "type": "account.updated",
        "data": {"object": {"id": "acct_42", "charges_enabled": True, "requirements": {"disabled_reason": None}}},
    }

    assert handle_processor_event(db, event) == "account_updated"
    db.refresh(professional)
    assert professional.payout_status == models.PayoutStatus.ENABLED
    assert professional.identity_verified is True


def test_account_updated_with_pending_requirements(db):
    professional = make_professional(db, stripe_account_id="acct_43")
    event = {
        "type": "account.updated",
        "data": {
            "object": {
                "id": "acct_43",
                "charges_enabled": False,
                "requirements": {"disabled_reason": "requirements.past_due"},
            }
        },
    }

    handle_processor_event(db, event)
    db.refresh(professional)
    assert professional.payout_status == models.PayoutStatus.PENDING
    assert professional.identity_verified is False


def test_construct_event_accepts_valid_signature():
    body = json.dumps({"id": "evt_1", "type": "ping"}).encode()
    header = sign_payload(body, "whsec_test")

    assert construct_event(body, header, "whsec_test")["id"] == "evt_1"


def test_construct_event_accepts_any_matching_v1():
    body = b'{"id": "evt_1"}'
    ts = int(time.time())
    good = sign_payload(body, "whsec_test", ts).split("v1=")[1]
    header = f"t={ts},v1=deadbeef,v1={good}"

    assert construct_event(body, header, "whsec_test")["id"] == "evt_1"


@pytest.mark.parametrize(
    "header_for",
    [
        lambda body: None,
        lambda body: "garbage",
        lambda body: f"t={int(time.time())},v0=abc",
        lambda body: sign_payload(body, "wrong_secret"),
        lambda body: sign_payload(body + b" ", "whsec_test"),
        lambda body: sign_payload(body, "whsec_test", int(time.time()) - 3600),
    ],
)
def test_construct_event_rejects_bad_signatures(header_for):
    body = b'{"id": "evt_1"}'

    with pytest.raises(WebhookSignatureError):
        construct_event(body, header_for(body), "whsec_test", tolerance=300)


def test_construct_event_wraps_sdk_verification_errors(monkeypatch):
    body = b'{"id": "evt_1"}'
    seen = []

    def reject(payload, header, secret, tolerance=None):
        seen.append((payload, header, secret, tolerance))
        raise stripe.SignatureVerificationError("No signatures found", header, payload)

    monkeypatch.setattr(stripe.WebhookSignature, "verify_header", reject)

    with pytest.raises(WebhookSignatureError, match="No signatures found"):
        construct_event(body, "t=1,v1=abc", "whsec_test", tolerance=60)
    assert seen == [('{"id": "evt_1"}', "t=1,v1=abc", "whsec_test", 60)]


def test_construct_event_requires_object_payload():
    body = b"[1, 2]"

    with pytest.raises(WebhookSignatureError, match="not an object"):
        construct_event(body, sign_payload(body, "whsec_test"), "whsec_test")

def test_webhook_route_rejects_bad_signature(client):
    response = client.post(
        "/api/v1/payment/webhook",
        content=b'{"type": "payment_intent.succeeded"}',
        headers={"Stripe-Signature": "t=1,v1=bad"},
    )

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_webhook_route_applies_event(client, session_factory, gateway):
    db = session_factory()
    payment = pending_payment(db, gateway)
    body, headers = signed(intent_event(payment))

    first = client.post("/api/v1/payment/webhook", content=body, headers=headers)
    second = client.post("/api/v1/payment/webhook", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"received": True}
    assert second.status_code == 200
    db.refresh(payment)
    assert payment.status == PaymentStatus.PAID
    db.close()


def test_webhook_route_acknowledges_unknown_intent(client):
    body, headers = signed({"id": "evt_z", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_nope"}}})

    response = client.post("/api/v1/payment/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True}
