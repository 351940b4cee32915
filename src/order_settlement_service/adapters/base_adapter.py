"""Base adapter for payment gateway integrations.

This module defines the abstract base class that payment gateway adapters must
implement. Gateway calls raise the settlement error taxonomy so that callers can
tell a retryable outage (timeout, unreachable) from a rejected request.
"""

from abc import ABC, abstractmethod
from typing import Any

from order_settlement_service.models.payment_models import GatewayOrder, GatewayPayment, GatewayRefund


class PaymentGateway(ABC):
    """Abstract base class for payment gateway adapters.

    The adapter follows a simple error handling pattern:
    - network calls raise GatewayTimeoutError, GatewayUnavailableError or GatewayError
    - signature checks return False on mismatch and never raise
    - the settlement layer decides retry logic
    """

    def __init__(self, gateway_name: str, key_id: str) -> None:
        """Initialize the payment gateway adapter.

        Args:
            gateway_name: Name of the gateway (e.g., 'razorpay')
            key_id: Public key id handed to clients for the checkout widget
        """
        self.gateway_name = gateway_name
        self.key_id = key_id

    @abstractmethod
    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> GatewayOrder:
        """Create the gateway order a customer pays against.

        Args:
            amount: Amount in the currency's minor unit
            currency: ISO currency code
            receipt: Merchant receipt reference
            notes: Free-form key/value notes stored with the order

        Returns:
            GatewayOrder: Created order; its id is the payment intent id
        """
        pass

    @abstractmethod
    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch the authoritative state of a payment.

        Args:
            payment_id: Gateway payment identifier

        Returns:
            GatewayPayment: Current payment state
        """
        pass

    @abstractmethod
    async def refund(self, payment_id: str, amount: int | None = None) -> GatewayRefund:
        """Refund a captured payment.

        Args:
            payment_id: Gateway payment identifier
            amount: Amount to refund in minor units (full amount when None)

        Returns:
            GatewayRefund: The refund issued
        """
        pass

    @abstractmethod
    def verify_payment_signature(
        self, payment_intent_id: str, payment_id: str, signature: str
    ) -> bool:
        """Check the signature returned to the client after checkout."""
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        """Check the signature of a webhook request body."""
        pass
