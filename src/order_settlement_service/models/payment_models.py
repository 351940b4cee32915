"""Payment records, gateway responses and settlement error tracking."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from order_settlement_service.models.timestamps import from_iso, to_iso


class PaymentStatus(str, Enum):
    """Payment states as recorded by the settlement coordinator."""

    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"


class RefundStatus(str, Enum):
    """Refund progress for a captured payment whose reservation lapsed."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentRecord(BaseModel):
    """Payment state derived from gateway signals.

    Stored in DynamoDB with payment_id (the gateway payment identifier) as
    partition key. Never written by users.
    """

    payment_id: str = Field(..., description="Gateway payment identifier")
    payment_intent_id: str = Field(..., description="Gateway order / reservation identifier")
    amount: int = Field(default=0, description="Amount in minor units", ge=0)
    currency: str = Field(default="INR", description="ISO currency code")
    method: str | None = Field(None, description="Payment method (card, upi, ...)")
    status: PaymentStatus = Field(..., description="Current payment status")
    authorized_at: datetime | None = None
    captured_at: datetime | None = None
    failed_at: datetime | None = None
    error_code: str | None = None
    error_description: str | None = None
    refund_status: RefundStatus | None = None
    refund_id: str | None = None

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format."""
        item: dict[str, Any] = {
            "payment_id": self.payment_id,
            "payment_intent_id": self.payment_intent_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
        }

        for name in ("method", "error_code", "error_description", "refund_id"):
            value = getattr(self, name)
            if value is not None:
                item[name] = value

        if self.refund_status is not None:
            item["refund_status"] = self.refund_status.value

        for name in ("authorized_at", "captured_at", "failed_at"):
            value = getattr(self, name)
            if value is not None:
                item[name] = to_iso(value)

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "PaymentRecord":
        """Create PaymentRecord from DynamoDB item."""
        data: dict[str, Any] = {
            "payment_id": item["payment_id"],
            "payment_intent_id": item["payment_intent_id"],
            "amount": int(item.get("amount", 0)),
            "currency": item.get("currency", "INR"),
            "status": PaymentStatus(item["status"]),
        }

        for name in ("method", "error_code", "error_description", "refund_id"):
            if name in item:
                data[name] = item[name]

        if "refund_status" in item:
            data["refund_status"] = RefundStatus(item["refund_status"])

        for name in ("authorized_at", "captured_at", "failed_at"):
            if name in item:
                data[name] = from_iso(item[name])

        return cls(**data)


class GatewayOrder(BaseModel):
    """Order created at the payment gateway; its id is the payment intent id."""

    id: str
    amount: int
    currency: str
    receipt: str | None = None
    status: str = "created"


class GatewayPayment(BaseModel):
    """Authoritative payment state fetched from the gateway."""

    id: str
    order_id: str | None = None
    status: str
    amount: int = 0
    currency: str = "INR"
    method: str | None = None
    captured: bool = False
    error_code: str | None = None
    error_description: str | None = None


class GatewayRefund(BaseModel):
    """Refund issued through the gateway."""

    id: str
    payment_id: str
    amount: int = 0
    status: str = "processed"


class SettlementError(BaseModel):
    """Settlement step that failed after the payment record was written.

    Records what must be re-run for reconciliation. Stored in DynamoDB with
    error_id as partition key.
    """

    error_id: str = Field(..., description="Unique error identifier")
    created_at: datetime = Field(..., description="Error creation timestamp")
    payment_intent_id: str = Field(..., description="Payment intent identifier")
    payment_id: str | None = Field(None, description="Gateway payment identifier, if known")
    stage: str = Field(..., description="Settlement step that failed")
    error_details: str = Field(..., description="Error message or details")
    retry_count: int = Field(default=0, description="Number of retry attempts", ge=0)
    resolved: bool = Field(default=False, description="Whether a retry succeeded")

    @field_validator("retry_count")
    @classmethod
    def validate_retry_count(cls, v: int) -> int:
        """Validate that retry_count is non-negative."""
        if v < 0:
            raise ValueError("retry_count must be non-negative")
        return v

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format."""
        item: dict[str, Any] = {
            "error_id": self.error_id,
            "created_at": to_iso(self.created_at),
            "payment_intent_id": self.payment_intent_id,
            "stage": self.stage,
            "error_details": self.error_details,
            "retry_count": self.retry_count,
            "resolved": self.resolved,
        }

        if self.payment_id is not None:
            item["payment_id"] = self.payment_id

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "SettlementError":
        """Create SettlementError from DynamoDB item."""
        data: dict[str, Any] = {
            "error_id": item["error_id"],
            "created_at": from_iso(item["created_at"]),
            "payment_intent_id": item["payment_intent_id"],
            "stage": item["stage"],
            "error_details": item["error_details"],
            "retry_count": int(item.get("retry_count", 0)),
            "resolved": bool(item.get("resolved", False)),
        }

        if "payment_id" in item:
            data["payment_id"] = item["payment_id"]

        return cls(**data)
