"""Checkout: price the basket, open a payment intent, reserve stock and place the order."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, Field

from order_settlement_service.adapters.base_adapter import PaymentGateway
from order_settlement_service.models.inventory_models import MenuItem
from order_settlement_service.models.order_models import OrderItem
from order_settlement_service.models.reservation_models import (
    CreateReservationStatus,
    ReservationLine,
)
from order_settlement_service.models.timestamps import to_iso, utc_now
from order_settlement_service.observability.decorators import traced
from order_settlement_service.repositories.inventory_store import InventoryStore
from order_settlement_service.repositories.reservation_ledger import ReservationLedger, merge_lines
from order_settlement_service.services.errors import SettlementServiceError
from order_settlement_service.services.order_service import OrderService

logger = logging.getLogger(__name__)

UNKNOWN_ITEM = "unknown_item"
ORDER_CREATION_FAILED = "order_creation_failed"


class CheckoutLine(BaseModel):
    """Item and quantity requested at checkout."""

    item_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


@dataclass
class CheckoutResult:
    """Result of a checkout attempt.

    Attributes:
        success: Whether stock is held and the order is placed
        reason: Rejection reason when unsuccessful (insufficient_stock,
            unknown_item, duplicate_intent)
        rejected_item_ids: Items that caused the rejection
        payment_intent_id: Gateway order the client pays against
        order_id: Placed order
        amount: Amount to pay in minor units
        currency: ISO currency code
        expires_at: When the held stock is released if unpaid
        gateway_key_id: Public key the client opens the gateway checkout with
    """

    success: bool
    reason: str | None = None
    rejected_item_ids: list[str] = field(default_factory=list)
    payment_intent_id: str | None = None
    order_id: str | None = None
    amount: int = 0
    currency: str = "INR"
    expires_at: datetime | None = None
    gateway_key_id: str | None = None


class CheckoutService:
    """Service for starting a checkout.

    Creates the gateway order first: its id keys the reservation, so a
    reservation never exists without a payment intent to settle it. Baskets
    the current stock cannot cover are turned away before the gateway call.
    """

    def __init__(
        self,
        inventory: InventoryStore,
        ledger: ReservationLedger,
        order_service: OrderService,
        gateway: PaymentGateway,
    ) -> None:
        self.inventory = inventory
        self.ledger = ledger
        self.order_service = order_service
        self.gateway = gateway

    @traced("checkout.start", id_arguments=("user_id",))
    async def start_checkout(
        self, user_id: str, lines: list[CheckoutLine], currency: str = "INR"
    ) -> CheckoutResult:
        """Start a checkout for ``user_id``.

        Returns:
            CheckoutResult: success with the payment details, or a rejection
            with an actionable reason

        Raises:
            ValueError: If the basket is empty or prices to zero
            GatewayTimeoutError: If the gateway did not answer in time
            GatewayUnavailableError: If the gateway could not be reached
            GatewayError: If the gateway rejected the order
            StoreUnavailableError: If DynamoDB fails
        """
        merged = merge_lines(ReservationLine(item_id=line.item_id, quantity=line.quantity) for line in lines)
        if not merged:
            raise ValueError("checkout must contain at least one item")

        items: dict[str, MenuItem] = {}
        missing: list[str] = []
        for line in merged:
            item = self.inventory.get_item(line.item_id)
            if item is None:
                missing.append(line.item_id)
            else:
                items[line.item_id] = item

        if missing:
            logger.info(f"Checkout for user {user_id} rejected, unknown items: {missing}")
            return CheckoutResult(success=False, reason=UNKNOWN_ITEM, rejected_item_ids=missing)

        order_items = [
            OrderItem(
                item_id=line.item_id,
                name=items[line.item_id].name,
                quantity=line.quantity,
                unit_price=items[line.item_id].price,
            )
            for line in merged
        ]
        total = sum(item.unit_price * item.quantity for item in order_items)
        if total <= 0:
            raise ValueError("checkout total must be positive")

        short = [
            line.item_id
            for line in merged
            if not items[line.item_id].has_unlimited_stock
            and items[line.item_id].sellable_quantity < line.quantity
        ]
        if short:
            logger.info(f"Checkout for user {user_id} rejected, insufficient stock: {short}")
            return CheckoutResult(
                success=False,
                reason=CreateReservationStatus.INSUFFICIENT_STOCK.value,
                rejected_item_ids=short,
            )

        gateway_order = await self.gateway.create_order(
            amount=total,
            currency=currency,
            receipt=f"rcpt_{uuid.uuid4().hex[:12]}",
            notes={"userId": user_id, "createdAt": to_iso(utc_now())},
        )
        intent = gateway_order.id

        result = self.ledger.create(intent, user_id, merged, total, currency)
        if not result.success or result.reservation is None:
            reason = result.status.value
            if result.status is CreateReservationStatus.ITEM_NOT_FOUND:
                reason = UNKNOWN_ITEM
            return CheckoutResult(
                success=False, reason=reason, rejected_item_ids=result.rejected_item_ids
            )

        try:
            order = await self.order_service.place_order(user_id, order_items, total, currency, intent)
        except SettlementServiceError:
            logger.error(f"Order creation failed for intent {intent}, releasing its reservation")
            try:
                self.ledger.fail(intent, ORDER_CREATION_FAILED)
            except SettlementServiceError as e:
                logger.error(
                    f"Could not release reservation {intent} after order creation failed, "
                    f"leaving it to the expiry sweep: {e}"
                )
            raise

        logger.info(f"Checkout started for user {user_id}: intent {intent}, order {order.order_id}")
        return CheckoutResult(
            success=True,
            payment_intent_id=intent,
            order_id=order.order_id,
            amount=total,
            currency=currency,
            expires_at=result.reservation.expires_at,
            gateway_key_id=self.gateway.key_id,
        )
