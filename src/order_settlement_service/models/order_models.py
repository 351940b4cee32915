"""Order models and the order status state machine.

Orders move through the kitchen stages independently of payment once the
payment is captured. Terminal states are immutable and cause the order to be
archived out of the live table.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from order_settlement_service.models.timestamps import from_iso, to_iso

STALE_PICKUP_GRACE = timedelta(minutes=5)
ABANDONED_ORDER_TTL = timedelta(hours=24)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PLACED = "Placed"
    COOKING = "Cooking"
    COOKED = "Cooked"
    PICK_UP = "Pick Up"
    PICKED_UP = "PickedUp"
    TERMINATED = "Terminated"
    EXPIRED = "Expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.PICKED_UP, OrderStatus.TERMINATED, OrderStatus.EXPIRED}
)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PLACED: frozenset({OrderStatus.COOKING, OrderStatus.TERMINATED, OrderStatus.EXPIRED}),
    OrderStatus.COOKING: frozenset({OrderStatus.COOKED, OrderStatus.TERMINATED}),
    OrderStatus.COOKED: frozenset({OrderStatus.PICK_UP, OrderStatus.TERMINATED}),
    OrderStatus.PICK_UP: frozenset(
        {OrderStatus.PICKED_UP, OrderStatus.TERMINATED, OrderStatus.EXPIRED}
    ),
    OrderStatus.PICKED_UP: frozenset(),
    OrderStatus.TERMINATED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

# Timestamp attribute written when an order enters each status
STATUS_TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.COOKING: "cooking_at",
    OrderStatus.COOKED: "cooked_at",
    OrderStatus.PICK_UP: "pickup_ready_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.TERMINATED: "terminated_at",
    OrderStatus.EXPIRED: "expired_at",
}

ORDER_TIMESTAMP_FIELDS = ("payment_captured_at", *STATUS_TIMESTAMP_FIELDS.values())


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether the state machine allows ``current -> target``."""
    return target in ALLOWED_TRANSITIONS[current]


class OrderItem(BaseModel):
    """Line item of an order."""

    item_id: str
    name: str
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0)

    def to_dynamodb_item(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
        }

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "OrderItem":
        return cls(
            item_id=item["item_id"],
            name=item["name"],
            quantity=int(item["quantity"]),
            unit_price=int(item["unit_price"]),
        )


class Order(BaseModel):
    """Customer order as stored in the live orders table."""

    order_id: str = Field(..., description="Unique order identifier")
    user_id: str = Field(..., description="Owning user")
    items: list[OrderItem] = Field(..., description="Ordered items")
    total_amount: int = Field(..., description="Total in minor units", ge=0)
    currency: str = Field(default="INR", description="ISO currency code")
    status: OrderStatus = Field(default=OrderStatus.PLACED, description="Current order status")
    payment_intent_id: str = Field(..., description="Gateway order the customer pays against")
    payment_id: str | None = Field(None, description="Gateway payment identifier once known")
    payment_captured: bool = Field(default=False, description="Whether payment has been captured")
    payment_method: str | None = Field(None, description="Payment method reported by the gateway")
    created_at: datetime = Field(..., description="Creation timestamp")
    status_updated_at: datetime = Field(..., description="Time the current status was entered")
    payment_captured_at: datetime | None = None
    cooking_at: datetime | None = None
    cooked_at: datetime | None = None
    pickup_ready_at: datetime | None = None
    picked_up_at: datetime | None = None
    terminated_at: datetime | None = None
    expired_at: datetime | None = None
    termination_reason: str | None = None

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        item: dict[str, Any] = {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "items": [line.to_dynamodb_item() for line in self.items],
            "total_amount": self.total_amount,
            "currency": self.currency,
            "status": self.status.value,
            "payment_intent_id": self.payment_intent_id,
            "payment_captured": self.payment_captured,
            "created_at": to_iso(self.created_at),
            "status_updated_at": to_iso(self.status_updated_at),
        }

        if self.payment_id is not None:
            item["payment_id"] = self.payment_id

        if self.payment_method is not None:
            item["payment_method"] = self.payment_method

        if self.termination_reason is not None:
            item["termination_reason"] = self.termination_reason

        for name in ORDER_TIMESTAMP_FIELDS:
            value = getattr(self, name)
            if value is not None:
                item[name] = to_iso(value)

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "Order":
        """Create Order from DynamoDB item.

        Args:
            item: DynamoDB item dictionary

        Returns:
            Order: Parsed model instance
        """
        data: dict[str, Any] = {
            "order_id": item["order_id"],
            "user_id": item["user_id"],
            "items": [OrderItem.from_dynamodb_item(line) for line in item.get("items", [])],
            "total_amount": int(item["total_amount"]),
            "currency": item.get("currency", "INR"),
            "status": OrderStatus(item["status"]),
            "payment_intent_id": item["payment_intent_id"],
            "payment_captured": bool(item.get("payment_captured", False)),
            "created_at": from_iso(item["created_at"]),
            "status_updated_at": from_iso(item["status_updated_at"]),
        }

        for name in ("payment_id", "payment_method", "termination_reason"):
            if name in item:
                data[name] = item[name]

        for name in ORDER_TIMESTAMP_FIELDS:
            if name in item:
                data[name] = from_iso(item[name])

        return cls(**data)
