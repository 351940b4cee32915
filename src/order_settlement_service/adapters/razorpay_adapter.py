"""Razorpay payment gateway adapter.

Orders are created with automatic capture, so a successful payment arrives as
``payment.authorized`` followed by ``payment.captured``. Signatures are
HMAC-SHA256 hex digests compared in constant time.
"""

import hashlib
import hmac
import logging
import time
from typing import Any

import httpx

from order_settlement_service.adapters.base_adapter import PaymentGateway
from order_settlement_service.models.payment_models import GatewayOrder, GatewayPayment, GatewayRefund
from order_settlement_service.observability.metrics import record_gateway_api_call
from order_settlement_service.services.errors import (
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)

logger = logging.getLogger(__name__)

RAZORPAY_BASE_URL = "https://api.razorpay.com/v1"


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayAdapter(PaymentGateway):
    """Adapter for the Razorpay Orders and Payments API.

    Authenticates every call with HTTP basic auth using the key id and secret.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        timeout_seconds: float = 15.0,
        base_url: str = RAZORPAY_BASE_URL,
    ) -> None:
        """Initialize Razorpay adapter.

        Args:
            key_id: Razorpay key id
            key_secret: Razorpay key secret (also signs checkout callbacks)
            webhook_secret: Secret configured for the webhook endpoint
            timeout_seconds: Timeout applied to every gateway call
            base_url: API base URL
        """
        super().__init__("razorpay", key_id)
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self.base_url = base_url

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> GatewayOrder:
        """Create a Razorpay order with automatic capture enabled."""
        if amount <= 0:
            raise ValueError("amount must be positive")

        data = await self._request(
            "POST",
            "/orders",
            "create_order",
            json={
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
                "notes": {**(notes or {}), "autoCaptureEnabled": "true"},
            },
        )
        order = GatewayOrder(
            id=data["id"],
            amount=int(data.get("amount", amount)),
            currency=data.get("currency", currency),
            receipt=data.get("receipt"),
            status=data.get("status", "created"),
        )
        logger.info(f"Razorpay order {order.id} created for receipt {receipt}, amount {amount}")
        return order

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a payment by id."""
        data = await self._request("GET", f"/payments/{payment_id}", "fetch_payment")
        return GatewayPayment(
            id=data["id"],
            order_id=data.get("order_id"),
            status=data["status"],
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", "INR"),
            method=data.get("method"),
            captured=bool(data.get("captured", False)),
            error_code=data.get("error_code"),
            error_description=data.get("error_description"),
        )

    async def refund(self, payment_id: str, amount: int | None = None) -> GatewayRefund:
        """Refund a captured payment, in full unless ``amount`` is given."""
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = amount

        data = await self._request("POST", f"/payments/{payment_id}/refund", "refund", json=body)
        refund = GatewayRefund(
            id=data["id"],
            payment_id=data.get("payment_id", payment_id),
            amount=int(data.get("amount", amount or 0)),
            status=data.get("status", "processed"),
        )
        logger.info(f"Razorpay refund {refund.id} issued for payment {payment_id}")
        return refund

    def verify_payment_signature(
        self, payment_intent_id: str, payment_id: str, signature: str
    ) -> bool:
        expected = hmac_sha256_hex(self.key_secret, f"{payment_intent_id}|{payment_id}".encode())
        return _signatures_match(expected, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        expected = hmac_sha256_hex(self.webhook_secret, raw_body)
        return _signatures_match(expected, signature)

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and map failures onto the gateway errors.

        Raises:
            GatewayTimeoutError: If the call exceeded the timeout
            GatewayUnavailableError: On network failure or a 5xx response
            GatewayError: On a 4xx response
        """
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                auth=(self.key_id, self.key_secret), timeout=self.timeout_seconds
            ) as client:
                response = await client.request(method, f"{self.base_url}{path}", json=json)

        except httpx.TimeoutException as e:
            logger.error(f"Razorpay {operation} timed out after {self.timeout_seconds}s")
            raise GatewayTimeoutError(f"Razorpay {operation} timed out") from e

        except httpx.RequestError as e:
            logger.error(f"Razorpay {operation} failed: {e}")
            raise GatewayUnavailableError(f"Razorpay {operation} failed: {e}") from e

        finally:
            record_gateway_api_call(operation, time.perf_counter() - start)

        if response.status_code >= 500:
            logger.error(f"Razorpay {operation} returned {response.status_code}")
            raise GatewayUnavailableError(f"Razorpay {operation} returned {response.status_code}")

        if response.status_code >= 400:
            description = self._error_description(response)
            logger.error(f"Razorpay {operation} rejected ({response.status_code}): {description}")
            raise GatewayError(
                f"Razorpay {operation} rejected: {description}", status_code=response.status_code
            )

        data: dict[str, Any] = response.json()
        return data

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
        except ValueError:
            return response.text
        return str(error.get("description") or error.get("code") or response.text)


def _signatures_match(expected: str, signature: str) -> bool:
    """Constant-time compare that treats any non-ASCII signature as a mismatch."""
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogatepass"))
