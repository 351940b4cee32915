"""Stock reservation models.

A reservation is keyed by the payment intent (gateway order) identifier and
holds the stock for one checkout attempt until the payment settles or the
reservation expires.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from order_settlement_service.models.timestamps import from_iso, to_iso

RESERVATION_TTL = timedelta(minutes=5)
RESERVATION_RETENTION = timedelta(hours=24)

# A settlement transaction holds one action per line plus the status update.
MAX_RESERVATION_LINES = 50


class ReservationStatus(str, Enum):
    """Reservation lifecycle states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.ACTIVE


TERMINAL_RESERVATION_STATUSES = (
    ReservationStatus.COMPLETED,
    ReservationStatus.FAILED,
    ReservationStatus.EXPIRED,
)


class ReservationLine(BaseModel):
    """One reserved item within a reservation."""

    item_id: str = Field(..., description="Menu item identifier")
    quantity: int = Field(..., description="Reserved quantity", gt=0)
    stock_tracked: bool = Field(
        default=True, description="False when the item had unlimited stock at reservation time"
    )

    def to_dynamodb_item(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "quantity": self.quantity,
            "stock_tracked": self.stock_tracked,
        }

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "ReservationLine":
        return cls(
            item_id=item["item_id"],
            quantity=int(item["quantity"]),
            stock_tracked=bool(item.get("stock_tracked", True)),
        )


class Reservation(BaseModel):
    """Stock held for a single checkout attempt."""

    reservation_id: str = Field(..., description="Payment intent identifier")
    user_id: str = Field(..., description="Owning user")
    lines: list[ReservationLine] = Field(..., description="Reserved items")
    total_amount: int = Field(..., description="Amount in minor units", ge=0)
    currency: str = Field(default="INR", description="ISO currency code")
    status: ReservationStatus = Field(..., description="Current reservation status")
    created_at: datetime = Field(..., description="Creation timestamp")
    expires_at: datetime = Field(..., description="Expiry deadline while active")
    completed_at: datetime | None = Field(None, description="Settlement timestamp")
    failed_at: datetime | None = Field(None, description="Payment failure timestamp")
    expired_at: datetime | None = Field(None, description="Expiry timestamp")
    failure_reason: str | None = Field(None, description="Reason given on failure")

    @field_validator("lines")
    @classmethod
    def validate_lines(cls, v: list[ReservationLine]) -> list[ReservationLine]:
        """Validate that a reservation holds at least one line."""
        if not v:
            raise ValueError("reservation must contain at least one line")
        return v

    @property
    def payment_intent_id(self) -> str:
        return self.reservation_id

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        item: dict[str, Any] = {
            "reservation_id": self.reservation_id,
            "user_id": self.user_id,
            "lines": [line.to_dynamodb_item() for line in self.lines],
            "total_amount": self.total_amount,
            "currency": self.currency,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
        }

        for name in ("completed_at", "failed_at", "expired_at"):
            value = getattr(self, name)
            if value is not None:
                item[name] = to_iso(value)

        if self.failure_reason is not None:
            item["failure_reason"] = self.failure_reason

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "Reservation":
        """Create Reservation from DynamoDB item.

        Args:
            item: DynamoDB item dictionary

        Returns:
            Reservation: Parsed model instance
        """
        data: dict[str, Any] = {
            "reservation_id": item["reservation_id"],
            "user_id": item["user_id"],
            "lines": [ReservationLine.from_dynamodb_item(line) for line in item["lines"]],
            "total_amount": int(item["total_amount"]),
            "currency": item.get("currency", "INR"),
            "status": ReservationStatus(item["status"]),
            "created_at": from_iso(item["created_at"]),
            "expires_at": from_iso(item["expires_at"]),
        }

        for name in ("completed_at", "failed_at", "expired_at"):
            if name in item:
                data[name] = from_iso(item[name])

        if "failure_reason" in item:
            data["failure_reason"] = item["failure_reason"]

        return cls(**data)


class CreateReservationStatus(str, Enum):
    """Outcome of a reservation attempt."""

    CREATED = "created"
    INSUFFICIENT_STOCK = "insufficient_stock"
    ITEM_NOT_FOUND = "item_not_found"
    DUPLICATE_INTENT = "duplicate_intent"


@dataclass
class CreateReservationResult:
    """Result of ``ReservationLedger.create``.

    Attributes:
        status: Outcome of the attempt
        reservation: The persisted reservation when status is CREATED
        rejected_item_ids: Items that could not be reserved
    """

    status: CreateReservationStatus
    reservation: Reservation | None = None
    rejected_item_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is CreateReservationStatus.CREATED
