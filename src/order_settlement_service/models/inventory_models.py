"""Inventory data models.

A menu item carries two stock counters. ``available_quantity`` is the
authoritative stock and only drops when a reservation settles;
``reserved_quantity`` is the sum of quantities held by active reservations.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from order_settlement_service.models.timestamps import from_iso, to_iso


class ReserveOutcome(str, Enum):
    """Result of a single-item reserve call."""

    RESERVED = "reserved"
    UNLIMITED = "unlimited"
    INSUFFICIENT_STOCK = "insufficient_stock"
    ITEM_NOT_FOUND = "item_not_found"

    @property
    def ok(self) -> bool:
        return self in (ReserveOutcome.RESERVED, ReserveOutcome.UNLIMITED)


class MenuItem(BaseModel):
    """Menu item with stock counters."""

    item_id: str = Field(..., description="Unique identifier for the menu item")
    name: str = Field(..., description="Display name")
    price: int = Field(default=0, description="Unit price in the currency's minor unit", ge=0)
    available_quantity: int = Field(default=0, description="Authoritative stock", ge=0)
    reserved_quantity: int = Field(default=0, description="Stock held by active reservations", ge=0)
    has_unlimited_stock: bool = Field(default=False, description="Disables reservation accounting")
    version: int = Field(default=0, description="Optimistic-lock counter", ge=0)
    last_reservation_update: datetime | None = Field(None, description="Last counter mutation")

    @property
    def sellable_quantity(self) -> int:
        """Stock that can still be reserved."""
        return self.available_quantity - self.reserved_quantity

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        item: dict[str, Any] = {
            "item_id": self.item_id,
            "name": self.name,
            "price": self.price,
            "available_quantity": self.available_quantity,
            "reserved_quantity": self.reserved_quantity,
            "has_unlimited_stock": self.has_unlimited_stock,
            "version": self.version,
        }

        if self.last_reservation_update is not None:
            item["last_reservation_update"] = to_iso(self.last_reservation_update)

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "MenuItem":
        """Create MenuItem from DynamoDB item.

        Items created before reservation accounting existed have no
        ``reserved_quantity`` or ``version`` attribute; both default to zero.
        """
        data: dict[str, Any] = {
            "item_id": item["item_id"],
            "name": item.get("name", item["item_id"]),
            "price": int(item.get("price", 0)),
            "available_quantity": int(item.get("available_quantity", 0)),
            "reserved_quantity": int(item.get("reserved_quantity", 0)),
            "has_unlimited_stock": bool(item.get("has_unlimited_stock", False)),
            "version": int(item.get("version", 0)),
        }

        if "last_reservation_update" in item:
            data["last_reservation_update"] = from_iso(item["last_reservation_update"])

        return cls(**data)
