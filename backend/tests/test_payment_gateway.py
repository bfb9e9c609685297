from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from marketplace.services.payment_gateway import PaymentGateway, to_minor_units
from marketplace.utils.errors import UpstreamError


def gateway_with(handler, secret_key="sk_test_123"):
    return PaymentGateway(
        secret_key=secret_key,
        api_base="https://processor.test/v1",
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


def test_minor_units():
    assert to_minor_units(Decimal("47.20")) == 4720
    assert to_minor_units(Decimal("0.005")) == 1
    assert to_minor_units(Decimal("36")) == 3600


def test_create_payment_intent_sends_form_and_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "pi_1", "client_secret": "pi_1_secret"})

    result = gateway_with(handler).create_payment_intent(
        amount=Decimal("47.20"),
        currency="USD",
        metadata={"appointment_id": 7},
        idempotency_key="intent-appointment-7",
    )

    assert result["client_secret"] == "pi_1_secret"
    assert seen["url"] == "https://processor.test/v1/payment_intents"
    assert seen["headers"]["Authorization"] == "Bearer sk_test_123"
    assert seen["headers"]["Idempotency-Key"] == "intent-appointment-7"
    assert seen["form"]["amount"] == ["4720"]
    assert seen["form"]["currency"] == ["usd"]
    assert seen["form"]["metadata[appointment_id]"] == ["7"]
    assert seen["form"]["payment_method_types[0]"] == ["card"]


def test_transfer_targets_destination():
    seen = {}

    def handler(request):
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "tr_1"})

    gateway_with(handler).create_transfer(
        amount=Decimal("36.00"),
        currency="USD",
        destination="acct_9",
        metadata={"payment_id": 3},
        idempotency_key="release-3",
    )

    assert seen["form"]["amount"] == ["3600"]
    assert seen["form"]["destination"] == ["acct_9"]


def test_processor_error_becomes_upstream_error():
    def handler(request):
        return httpx.Response(402, json={"error": {"message": "Your card was declined."}})

    with pytest.raises(UpstreamError) as exc:
        gateway_with(handler).create_refund("pi_1", idempotency_key="refund-1")

    assert "Your card was declined." in exc.value.message
    assert exc.value.status_code == 502
    assert exc.value.retryable is False
    assert exc.value.correlation_id


def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamError) as exc:
        gateway_with(handler).cancel_payment_intent("pi_1")

    assert exc.value.retryable is True
    assert exc.value.status_code == 504


def test_connection_error_is_not_retryable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamError) as exc:
        gateway_with(handler).cancel_payment_intent("pi_1")

    assert exc.value.retryable is False


def test_missing_secret_key_fails_without_calling_out():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(UpstreamError):
        gateway_with(handler, secret_key="").cancel_payment_intent("pi_1")
    assert calls == []
