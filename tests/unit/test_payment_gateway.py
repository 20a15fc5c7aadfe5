"""Unit tests for the PayPal, Stripe and manual refund adapters.

HTTP is served by ``httpx.MockTransport``; nothing leaves the process.
"""

import json
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from libs.common.errors import GatewayFailure
from services.commerce_service.services.payment_gateway import (
    GatewayResponse,
    ManualGateway,
    PayPalGateway,
    StripeGateway,
    resolve_gateway,
)

PAYPAL_URL = "https://paypal.test"
STRIPE_URL = "https://stripe.test"


def _paypal(handler, **kwargs):
    defaults = {"client_id": "cid", "client_secret": "secret", "api_url": PAYPAL_URL}
    defaults.update(kwargs)
    return PayPalGateway(transport=httpx.MockTransport(handler), **defaults)


def _stripe(handler, **kwargs):
    return StripeGateway(
        secret_key="sk_test", api_url=STRIPE_URL, transport=httpx.MockTransport(handler), **kwargs
    )


# ---------------------------------------------------------------------------
# GatewayResponse
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestGatewayResponse:
    def test_success_fields(self):
        response = GatewayResponse(status=201, data={"id": "RF-1", "status": "PENDING"})
        assert response.ok
        assert response.refund_id == "RF-1"
        assert response.refund_status == "PENDING"

    def test_error_message_shapes(self):
        paypal = GatewayResponse(status=422, data={"message": "Already refunded"})
        stripe = GatewayResponse(status=400, data={"error": {"message": "No such intent"}})
        bare = GatewayResponse(status=503)

        assert paypal.error_message == "Already refunded"
        assert stripe.error_message == "No such intent"
        assert bare.error_message == "Gateway returned HTTP 503"
        assert bare.refund_status == "FAILED"


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paypal_refund_fetches_token_then_refunds():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(201, json={"id": "RF-9", "status": "COMPLETED"})

    response = await _paypal(handler).refund_capture("CAP-1", Decimal("12.5"), "USD")

    assert response.ok
    assert response.refund_id == "RF-9"
    token_call, refund_call = seen
    assert token_call.headers["Authorization"].startswith("Basic ")
    assert refund_call.url.path == "/v2/payments/captures/CAP-1/refund"
    assert refund_call.headers["Authorization"] == "Bearer tok"
    assert json.loads(refund_call.content) == {
        "amount": {"value": "12.50", "currency_code": "USD"}
    }


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paypal_declined_refund_is_returned_not_raised():
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(422, json={"message": "Capture already refunded"})

    response = await _paypal(handler).refund_capture("CAP-1", "5", "USD")

    assert not response.ok
    assert response.error_message == "Capture already refunded"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paypal_token_failure_raises():
    def handler(request):
        return httpx.Response(401, json={"error_description": "bad client"})

    with pytest.raises(GatewayFailure) as exc_info:
        await _paypal(handler).refund_capture("CAP-1", "5", "USD")

    assert exc_info.value.detail == "Unable to authenticate with PayPal."


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paypal_requires_configuration_and_capture():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(GatewayFailure) as missing_config:
        await PayPalGateway(
            client_id="", client_secret="", api_url=PAYPAL_URL, transport=httpx.MockTransport(handler)
        ).refund_capture("CAP-1", "5", "USD")
    with pytest.raises(GatewayFailure) as missing_capture:
        await _paypal(handler).refund_capture(None, "5", "USD")

    assert missing_config.value.detail == "Missing PayPal configuration."
    assert "capture reference" in missing_capture.value.detail


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transport_errors_become_gateway_failures():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayFailure) as exc_info:
        await _paypal(handler).refund_capture("CAP-1", "5", "USD")

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail.startswith("PayPal refund failed")


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_refund_posts_cents():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "re_1", "status": "succeeded"})

    response = await _stripe(handler).refund_capture("pi_123", Decimal("19.99"), "USD")

    assert response.refund_id == "re_1"
    assert response.refund_status == "succeeded"
    (request,) = seen
    assert request.url.path == "/v1/refunds"
    assert request.headers["Authorization"] == "Bearer sk_test"
    form = parse_qs(request.content.decode())
    assert form == {"payment_intent": ["pi_123"], "amount": ["1999"]}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_error_body_is_surfaced():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "Charge already refunded."}})

    response = await _stripe(handler).refund_capture("pi_123", "5", "USD")

    assert not response.ok
    assert response.error_message == "Charge already refunded."


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_without_key_fails():
    gateway = StripeGateway(secret_key=None, api_url=STRIPE_URL)
    gateway.secret_key = None

    with pytest.raises(GatewayFailure) as exc_info:
        await gateway.refund_capture("pi_123", "5", "USD")

    assert exc_info.value.detail == "Stripe is not configured."


# ---------------------------------------------------------------------------
# Manual and resolution
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_gateway_always_succeeds():
    response = await ManualGateway().refund_capture(None, Decimal("7"), "USD")

    assert response.ok
    assert response.refund_id == "MANUAL"
    assert response.data["amount"] == "7.00"


@pytest.mark.unit
@pytest.mark.parametrize(
    "method, reference, expected",
    [
        ("paypal", "CAP-1", PayPalGateway),
        ("PayPal", "CAP-1", PayPalGateway),
        ("stripe", "pi_1", StripeGateway),
        ("paypal", None, ManualGateway),
        ("cod", "anything", ManualGateway),
        (None, None, ManualGateway),
    ],
)
def test_resolve_gateway(method, reference, expected):
    assert isinstance(resolve_gateway(method, reference), expected)
