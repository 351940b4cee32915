"""Inventory store: the only writer of menu item stock counters.

Every counter mutation is an atomic conditional update on a single item and
bumps the item's ``version`` attribute. ``reserve`` needs to compare against
two attributes (available minus reserved), which a DynamoDB condition cannot
express arithmetically, so it reads the item and writes conditioned on the
version it saw. ``release`` and ``commit`` are single server-side arithmetic
updates guarded by the counters they decrement.
"""

import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from order_settlement_service.models.inventory_models import MenuItem, ReserveOutcome
from order_settlement_service.models.timestamps import to_iso, utc_now
from order_settlement_service.observability.metrics import record_stock_counter_drift
from order_settlement_service.repositories.dynamodb import (
    is_conditional_check_failure,
    is_transaction_conflict,
    store_error,
    update_action,
)
from order_settlement_service.services.errors import StockContentionError

logger = logging.getLogger(__name__)

RELEASE_UPDATE = (
    "SET reserved_quantity = reserved_quantity - :qty, last_reservation_update = :now "
    "ADD version :one"
)
RELEASE_CONDITION = "reserved_quantity >= :qty"

COMMIT_UPDATE = (
    "SET available_quantity = available_quantity - :qty, "
    "reserved_quantity = reserved_quantity - :qty, last_reservation_update = :now "
    "ADD version :one"
)
COMMIT_CONDITION = "reserved_quantity >= :qty AND available_quantity >= :qty"


class InventoryStore:
    """Repository for menu items and their stock counters.

    Manages menu item records in DynamoDB with item_id as partition key.
    """

    def __init__(
        self,
        dynamodb_resource: DynamoDBServiceResource,
        table_name: str,
        max_reserve_attempts: int = 5,
    ) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_name: Name of the DynamoDB table
            max_reserve_attempts: Optimistic-lock attempts before giving up on a reserve
        """
        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.table: Table = dynamodb_resource.Table(table_name)
        self.max_reserve_attempts = max_reserve_attempts

    def get_item(self, item_id: str) -> MenuItem | None:
        """Retrieve a menu item with a strongly consistent read.

        Args:
            item_id: Menu item identifier

        Returns:
            MenuItem if found, None otherwise

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            response = self.table.get_item(Key={"item_id": item_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise store_error("GetItem", e) from e

        if "Item" not in response:
            return None

        return MenuItem.from_dynamodb_item(response["Item"])

    def save_item(self, item: MenuItem) -> MenuItem:
        """Create or replace a menu item definition.

        Counters of an existing item are preserved: only the catalogue fields
        and ``available_quantity`` are taken from ``item``.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            response = self.table.update_item(
                Key={"item_id": item.item_id},
                UpdateExpression=(
                    "SET #name = :name, price = :price, available_quantity = :available, "
                    "has_unlimited_stock = :unlimited, "
                    "reserved_quantity = if_not_exists(reserved_quantity, :zero) "
                    "ADD version :one"
                ),
                ExpressionAttributeNames={"#name": "name"},
                ExpressionAttributeValues={
                    ":name": item.name,
                    ":price": item.price,
                    ":available": item.available_quantity,
                    ":unlimited": item.has_unlimited_stock,
                    ":zero": 0,
                    ":one": 1,
                },
                ReturnValues="ALL_NEW",
            )
        except (ClientError, BotoCoreError) as e:
            raise store_error("UpdateItem", e) from e

        return MenuItem.from_dynamodb_item(response["Attributes"])

    def list_items(self, limit: int = 100) -> list[MenuItem]:
        """List menu items.

        Args:
            limit: Maximum number of items to return

        Returns:
            list: List of MenuItem objects (empty list if none found or on error)
        """
        try:
            response = self.table.scan(Limit=limit)
            return [MenuItem.from_dynamodb_item(item) for item in response.get("Items", [])]

        except ClientError as e:
            logger.error(f"Failed to list menu items: {e}")  # pragma: no cover
            return []

    def reserve(self, item_id: str, quantity: int) -> ReserveOutcome:
        """Reserve stock for a checkout.

        Args:
            item_id: Menu item identifier
            quantity: Quantity to reserve

        Returns:
            ReserveOutcome: RESERVED, UNLIMITED, INSUFFICIENT_STOCK or ITEM_NOT_FOUND

        Raises:
            StockContentionError: If every optimistic-lock attempt lost a race
            StoreUnavailableError: If DynamoDB fails
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        for attempt in range(1, self.max_reserve_attempts + 1):
            item = self.get_item(item_id)
            if item is None:
                return ReserveOutcome.ITEM_NOT_FOUND

            if item.has_unlimited_stock:
                return ReserveOutcome.UNLIMITED

            if item.sellable_quantity < quantity:
                logger.info(
                    f"Insufficient stock for item {item_id}: requested {quantity}, "
                    f"sellable {item.sellable_quantity}"
                )
                return ReserveOutcome.INSUFFICIENT_STOCK

            if self._compare_and_reserve(item, quantity):
                return ReserveOutcome.RESERVED

            logger.debug(f"Reserve on item {item_id} lost a race (attempt {attempt}), retrying")

        raise StockContentionError(item_id, self.max_reserve_attempts)

    def _compare_and_reserve(self, item: MenuItem, quantity: int) -> bool:
        """Write the reservation if the item is unchanged since it was read."""
        condition = "version = :seen"
        if item.version == 0:
            condition = "attribute_not_exists(version) OR version = :seen"

        try:
            self.table.update_item(
                Key={"item_id": item.item_id},
                UpdateExpression=(
                    "SET reserved_quantity = :reserved, last_reservation_update = :now "
                    "ADD version :one"
                ),
                ConditionExpression=condition,
                ExpressionAttributeValues={
                    ":reserved": item.reserved_quantity + quantity,
                    ":now": to_iso(utc_now()),
                    ":one": 1,
                    ":seen": item.version,
                },
            )
            return True

        except ClientError as e:
            if is_conditional_check_failure(e) or is_transaction_conflict(e):
                return False
            raise store_error("UpdateItem", e) from e

        except BotoCoreError as e:
            raise store_error("UpdateItem", e) from e

    def release(self, item_id: str, quantity: int) -> bool:
        """Return reserved stock to the sellable pool.

        Args:
            item_id: Menu item identifier
            quantity: Quantity previously reserved

        Returns:
            bool: True if released or the item has unlimited stock, False if the
            item holds less reserved stock than requested (counter drift)

        Raises:
            StockContentionError: If in-flight transactions kept the item locked
            StoreUnavailableError: If DynamoDB fails
        """
        return self._apply(item_id, quantity, RELEASE_UPDATE, RELEASE_CONDITION, "release")

    def commit(self, item_id: str, quantity: int) -> bool:
        """Consume reserved stock after a successful payment.

        Decrements both ``available_quantity`` and ``reserved_quantity``.

        Returns:
            bool: True if committed or the item has unlimited stock, False on
            counter drift

        Raises:
            StockContentionError: If in-flight transactions kept the item locked
            StoreUnavailableError: If DynamoDB fails
        """
        return self._apply(item_id, quantity, COMMIT_UPDATE, COMMIT_CONDITION, "commit")

    def _apply(
        self, item_id: str, quantity: int, update: str, condition: str, operation: str
    ) -> bool:
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        for attempt in range(1, self.max_reserve_attempts + 1):
            try:
                self.table.update_item(
                    Key={"item_id": item_id},
                    UpdateExpression=update,
                    ConditionExpression=(
                        "attribute_exists(item_id) AND "
                        "(attribute_not_exists(has_unlimited_stock) OR has_unlimited_stock = :false) "
                        f"AND {condition}"
                    ),
                    ExpressionAttributeValues=self._counter_values(quantity) | {":false": False},
                )
                return True

            except ClientError as e:
                if is_conditional_check_failure(e):
                    break
                if not is_transaction_conflict(e):
                    raise store_error("UpdateItem", e) from e
                logger.debug(
                    f"{operation.capitalize()} on item {item_id} collided with a transaction "
                    f"(attempt {attempt}), retrying"
                )

            except BotoCoreError as e:
                raise store_error("UpdateItem", e) from e

        else:
            raise StockContentionError(item_id, self.max_reserve_attempts)

        item = self.get_item(item_id)
        if item is not None and item.has_unlimited_stock:
            return True

        self.report_drift(item_id, quantity, operation)
        return False

    def report_drift(self, item_id: str, quantity: int, operation: str) -> None:
        """Log a counter mutation that the stored counters could not satisfy."""
        logger.error(
            f"Stock counter drift on item {item_id}: {operation} of {quantity} rejected by "
            "the stored counters; no clamping applied"
        )
        record_stock_counter_drift(item_id, operation)

    def release_operation(self, item_id: str, quantity: int) -> dict[str, Any]:
        """Build the release update as a transaction action."""
        return update_action(
            self.table_name,
            {"item_id": item_id},
            RELEASE_UPDATE,
            RELEASE_CONDITION,
            values=self._counter_values(quantity),
        )

    def commit_operation(self, item_id: str, quantity: int) -> dict[str, Any]:
        """Build the commit update as a transaction action."""
        return update_action(
            self.table_name,
            {"item_id": item_id},
            COMMIT_UPDATE,
            COMMIT_CONDITION,
            values=self._counter_values(quantity),
        )

    def _counter_values(self, quantity: int) -> dict[str, Any]:
        return {":qty": quantity, ":now": to_iso(utc_now()), ":one": 1}

    def restock(self, item_id: str, quantity: int) -> MenuItem | None:
        """Add stock to a limited item.

        Returns:
            MenuItem after the update, or None if the item does not exist

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        try:
            response = self.table.update_item(
                Key={"item_id": item_id},
                UpdateExpression="ADD available_quantity :qty, version :one",
                ConditionExpression="attribute_exists(item_id)",
                ExpressionAttributeValues={":qty": quantity, ":one": 1},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return None
            raise store_error("UpdateItem", e) from e

        except BotoCoreError as e:
            raise store_error("UpdateItem", e) from e

        return MenuItem.from_dynamodb_item(response["Attributes"])

    def initialize_reserved_quantities(self) -> int:
        """Add ``reserved_quantity = 0`` to items created before reservations existed.

        Returns:
            int: Number of items updated

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        updated = 0
        scan_kwargs: dict[str, Any] = {
            "FilterExpression": "attribute_not_exists(reserved_quantity)",
            "ProjectionExpression": "item_id",
        }

        try:
            while True:
                response = self.table.scan(**scan_kwargs)
                for item in response.get("Items", []):
                    if self._initialize_reserved_quantity(item["item_id"]):
                        updated += 1

                if "LastEvaluatedKey" not in response:
                    break
                scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        except (ClientError, BotoCoreError) as e:
            raise store_error("Scan", e) from e

        logger.info(f"Initialized reserved_quantity on {updated} menu items")
        return updated

    def _initialize_reserved_quantity(self, item_id: str) -> bool:
        try:
            self.table.update_item(
                Key={"item_id": item_id},
                UpdateExpression="SET reserved_quantity = :zero, last_reservation_update = :now",
                ConditionExpression="attribute_not_exists(reserved_quantity)",
                ExpressionAttributeValues={":zero": 0, ":now": to_iso(utc_now())},
            )
            return True

        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise
