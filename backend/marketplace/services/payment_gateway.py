"""Client for the Stripe-compatible payment processor REST API.

All money crosses this boundary as integer minor units; callers pass and
receive ``Decimal`` major units. Every request carries a bounded timeout and,
for state-changing calls, an ``Idempotency-Key`` so retries after a timeout
never double-charge or double-transfer.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

import httpx
import stripe

from ..core.config import settings
from ..utils.errors import UpstreamError

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """Raised when a webhook payload cannot be authenticated."""


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, str]:
    """Encode nested dicts/lists the way the processor expects form bodies."""
    out: Dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            out.update(_flatten(value, name))
        elif isinstance(value, (list, tuple)):
            for idx, item in enumerate(value):
                out[f"{name}[{idx}]"] = str(item)
        elif isinstance(value, bool):
            out[name] = "true" if value else "false"
        else:
            out[name] = str(value)
    return out


class PaymentGateway:
    def __init__(
        self,
        secret_key: str,
        api_base: str = "https://api.stripe.com/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        correlation_id = uuid.uuid4().hex[:12]
        if not self.secret_key:
            logger.error("Payment processor not configured (cid=%s)", correlation_id)
            raise UpstreamError(
                f"Payment processor is not configured (ref {correlation_id})",
                correlation_id=correlation_id,
            )
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        url = f"{self.api_base}{path}"
        started = time.perf_counter()
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.request(method, url, data=_flatten(data or {}), headers=headers)
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException as exc:
            logger.error(
                "Payment processor timeout %s %s (cid=%s): %s", method, path, correlation_id, exc
            )
            raise UpstreamError(
                f"Payment processor timed out, please retry (ref {correlation_id})",
                correlation_id=correlation_id,
                retryable=True,
            ) from exc
        except httpx.HTTPStatusError as exc:
            detail = _error_message(exc.response)
            logger.error(
                "Payment processor error %s %s -> %s (cid=%s): %s",
                method,
                path,
                exc.response.status_code,
                correlation_id,
                detail,
            )
            raise UpstreamError(
                f"Payment processor rejected the request: {detail} (ref {correlation_id})",
                correlation_id=correlation_id,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Payment processor call failed %s %s (cid=%s): %s", method, path, correlation_id, exc
            )
            raise UpstreamError(
                f"Payment processor unavailable (ref {correlation_id})",
                correlation_id=correlation_id,
            ) from exc
        logger.info(
            "Payment processor %s %s ok in %.1fms (cid=%s)",
            method,
            path,
            (time.perf_counter() - started) * 1000.0,
            correlation_id,
        )
        return body

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, Any],
        idempotency_key: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/payment_intents",
            {
                "amount": to_minor_units(amount),
                "currency": currency.lower(),
                "metadata": dict(metadata),
                "description": description,
                "payment_method_types": ["card"],
            },
            idempotency_key=idempotency_key,
        )

    def cancel_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/payment_intents/{payment_intent_id}/cancel",
            idempotency_key=f"cancel-{payment_intent_id}",
        )

    def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: Mapping[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/transfers",
            {
                "amount": to_minor_units(amount),
                "currency": currency.lower(),
                "destination": destination,
                "metadata": dict(metadata),
            },
            idempotency_key=idempotency_key,
        )

    def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        reason: str = "requested_by_customer",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/refunds",
            {
                "payment_intent": payment_intent_id,
                "reason": reason,
                "metadata": dict(metadata or {}),
            },
            idempotency_key=idempotency_key,
        )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
        err = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    except ValueError:
        pass
    return f"HTTP {response.status_code}"


def construct_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = 300,
) -> Dict[str, Any]:
    """Verify the ``Stripe-Signature`` header and return the parsed event.

    The header check (HMAC-SHA256 over ``"<ts>.<raw body>"``, any matching
    ``v1`` entry, timestamp tolerance) is done by the Stripe SDK; the body is
    returned as a plain dict.
    """
    if not secret:
        raise WebhookSignatureError("Webhook signing secret is not configured")
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise WebhookSignatureError("Webhook payload is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc

    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        raise WebhookSignatureError("Webhook payload is not valid JSON")
    if not isinstance(event, dict):
        raise WebhookSignatureError("Webhook payload is not an object")
    return event


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header for ``payload``; used by local tooling and tests."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning a gateway bound to the configured credentials."""
    return PaymentGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        api_base=settings.STRIPE_API_BASE,
        timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
    )
