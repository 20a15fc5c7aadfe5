"""
Payment gateway adapters for refunds.

Provides async refund calls for:
- PayPal (OAuth client credentials + capture refund)
- Stripe (refund against a payment intent)
- Manual (cash on delivery, NETS and anything without a capture id)

Any 2xx response means money moved. Everything else, transport errors
included, is a ``GatewayFailure``. Nothing here retries.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
from libs.common.config import get_settings
from libs.common.currency import dollars_to_cents, quantize
from libs.common.errors import GatewayFailure
from libs.common.logging import get_logger
from services.commerce_service.models import MANUAL_REFUND_MARKER, PaymentMethod

logger = get_logger(__name__)


@dataclass
class GatewayResponse:
    """Raw gateway answer: HTTP status plus decoded body."""

    status: int
    data: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def refund_id(self) -> Optional[str]:
        value = self.data.get("id")
        return str(value) if value else None

    @property
    def refund_status(self) -> str:
        return str(self.data.get("status") or ("COMPLETED" if self.ok else "FAILED"))

    @property
    def error_message(self) -> str:
        # PayPal: {"message": ...}; Stripe: {"error": {"message": ...}}
        error = self.data.get("error")
        message = self.data.get("message") or self.data.get("error_description")
        if not message and isinstance(error, dict):
            message = error.get("message")
        return str(message or f"Gateway returned HTTP {self.status}")


class PaymentGateway(Protocol):
    name: str

    async def refund_capture(
        self, capture_id: Optional[str], amount: Any, currency: str
    ) -> GatewayResponse: ...


def _decode(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text}
    return data if isinstance(data, dict) else {"data": data}


class PayPalGateway:
    """PayPal capture refunds (v2 payments API)."""

    name = PaymentMethod.PAYPAL.value

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.client_id = client_id or settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET
        self.api_url = (api_url or settings.PAYPAL_API_URL or "").rstrip("/")
        self.timeout = timeout or settings.GATEWAY_TIMEOUT
        self._transport = transport

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            f"{self.api_url}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        data = _decode(response)
        if not response.is_success or not data.get("access_token"):
            logger.error("PayPal token request failed: %s - %s", response.status_code, data)
            raise GatewayFailure("Unable to authenticate with PayPal.")
        return data["access_token"]

    async def refund_capture(
        self, capture_id: Optional[str], amount: Any, currency: str
    ) -> GatewayResponse:
        if not (self.client_id and self.client_secret and self.api_url):
            raise GatewayFailure("Missing PayPal configuration.")
        if not capture_id:
            raise GatewayFailure("PayPal capture reference is missing for this order.")

        payload = {
            "amount": {"value": f"{quantize(amount):.2f}", "currency_code": currency}
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                token = await self._access_token(client)
                response = await client.post(
                    f"{self.api_url}/v2/payments/captures/{capture_id}/refund",
                    headers={"Authorization": f"Bearer {token}"},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error("PayPal refund transport error for %s: %s", capture_id, exc)
            raise GatewayFailure(f"PayPal refund failed: {exc}") from exc

        return GatewayResponse(status=response.status_code, data=_decode(response))


class StripeGateway:
    """Stripe refunds against a PaymentIntent."""

    name = PaymentMethod.STRIPE.value

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.api_url = (api_url or settings.STRIPE_API_URL).rstrip("/")
        self.timeout = timeout or settings.GATEWAY_TIMEOUT
        self._transport = transport

    async def refund_capture(
        self, capture_id: Optional[str], amount: Any, currency: str
    ) -> GatewayResponse:
        if not self.secret_key:
            raise GatewayFailure("Stripe is not configured.")
        if not capture_id:
            raise GatewayFailure("Stripe payment reference is missing for this order.")

        form = {"payment_intent": capture_id}
        if amount is not None:
            form["amount"] = str(dollars_to_cents(amount))
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.api_url}/v1/refunds",
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                    data=form,
                )
        except httpx.HTTPError as exc:
            logger.error("Stripe refund transport error for %s: %s", capture_id, exc)
            raise GatewayFailure(f"Stripe refund failed: {exc}") from exc

        return GatewayResponse(status=response.status_code, data=_decode(response))


class ManualGateway:
    """Refunds settled outside a processor (cash, bank transfer, NETS)."""

    name = PaymentMethod.MANUAL.value

    async def refund_capture(
        self, capture_id: Optional[str], amount: Any, currency: str
    ) -> GatewayResponse:
        return GatewayResponse(
            status=200,
            data={
                "id": MANUAL_REFUND_MARKER,
                "status": "COMPLETED",
                "amount": f"{quantize(amount):.2f}",
                "currency": currency,
            },
        )


def resolve_gateway(
    payment_method: Optional[str], payment_reference: Optional[str]
) -> PaymentGateway:
    """Pick the adapter for an order; no capture reference means manual."""
    method = (payment_method or "").strip().lower()
    if payment_reference and method == PaymentMethod.PAYPAL.value:
        return PayPalGateway()
    if payment_reference and method == PaymentMethod.STRIPE.value:
        return StripeGateway()
    return ManualGateway()
