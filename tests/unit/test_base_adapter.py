"""Unit tests for PaymentGateway base class."""

from typing import Any

import pytest

from order_settlement_service.adapters.base_adapter import PaymentGateway
from order_settlement_service.models.payment_models import GatewayOrder, GatewayPayment, GatewayRefund


class ConcretePaymentGateway(PaymentGateway):
    """Concrete implementation for testing the abstract base class."""

    def __init__(self) -> None:
        super().__init__("test_gateway", "key_test")

    async def create_order(
        self, amount: int, currency: str, receipt: str, notes: dict[str, Any] | None = None
    ) -> GatewayOrder:
        return GatewayOrder(id=f"order_{receipt}", amount=amount, currency=currency, receipt=receipt)

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        return GatewayPayment(id=payment_id, status="captured")

    async def refund(self, payment_id: str, amount: int | None = None) -> GatewayRefund:
        return GatewayRefund(id=f"rfnd_{payment_id}", payment_id=payment_id, amount=amount or 0)

    def verify_payment_signature(
        self, payment_intent_id: str, payment_id: str, signature: str
    ) -> bool:
        return signature == "valid"

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        return signature == "valid"


@pytest.mark.unit
class TestPaymentGateway:
    """Test suite for PaymentGateway abstract base class."""

    def test_concrete_gateway_can_be_instantiated(self) -> None:
        gateway = ConcretePaymentGateway()

        assert gateway.gateway_name == "test_gateway"
        assert gateway.key_id == "key_test"

    def test_refund_must_be_implemented(self) -> None:
        """A gateway that cannot refund is incomplete."""

        class IncompleteGateway(PaymentGateway):
            async def create_order(
                self, amount: int, currency: str, receipt: str, notes: dict[str, Any] | None = None
            ) -> GatewayOrder:
                raise NotImplementedError

            async def fetch_payment(self, payment_id: str) -> GatewayPayment:
                raise NotImplementedError

            def verify_payment_signature(
                self, payment_intent_id: str, payment_id: str, signature: str
            ) -> bool:
                return False

            def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
                return False

        with pytest.raises(TypeError):
            IncompleteGateway("incomplete", "key")  # type: ignore

    def test_base_class_cannot_be_instantiated(self) -> None:
        with pytest.raises(TypeError):
            PaymentGateway("abstract", "key")  # type: ignore

    @pytest.mark.asyncio
    async def test_create_order_signature(self) -> None:
        gateway = ConcretePaymentGateway()

        order = await gateway.create_order(24000, "INR", "ord_0001")

        assert order.id == "order_ord_0001"
        assert order.amount == 24000

    def test_signature_checks_return_bool(self) -> None:
        gateway = ConcretePaymentGateway()

        assert gateway.verify_payment_signature("order_1", "pay_1", "valid") is True
        assert gateway.verify_webhook_signature(b"{}", "forged") is False
