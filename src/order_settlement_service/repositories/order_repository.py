"""Live orders and the two order history tables.

Orders reaching a terminal status are archived in the same transaction that
records the status: the live order is deleted, conditioned on the status it was
read in, and identical copies are written to the user's history and to the
admin history.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from order_settlement_service.models.order_models import (
    STATUS_TIMESTAMP_FIELDS,
    Order,
    OrderStatus,
)
from order_settlement_service.models.timestamps import to_iso
from order_settlement_service.observability.metrics import record_order_archived
from order_settlement_service.repositories.dynamodb import (
    TRANSACTION_ACTION_LIMIT,
    chunked,
    delete_action,
    is_conditional_check_failure,
    put_action,
    store_error,
    transact_write,
)
from order_settlement_service.repositories.tables import (
    ORDER_PAYMENT_INTENT_INDEX,
    ORDER_STATUS_INDEX,
    TableNames,
)

logger = logging.getLogger(__name__)

# delete live + put user history + put admin history
ACTIONS_PER_ARCHIVE = 3
ORDERS_PER_ARCHIVE_TRANSACTION = TRANSACTION_ACTION_LIMIT // ACTIONS_PER_ARCHIVE


@dataclass
class ArchiveRequest:
    """A live order to move into a terminal status and out of the live table.

    Attributes:
        order: The order as last read; its status, status timestamp and capture
            flag guard the delete
        target: Terminal status to record
        changed_at: Time of the transition
        reason: Termination reason, if any
    """

    order: Order
    target: OrderStatus
    changed_at: datetime
    reason: str | None = None

    def archived_order(self) -> Order:
        """Build the terminal copy written to both history tables."""
        update: dict[str, Any] = {
            "status": self.target,
            "status_updated_at": self.changed_at,
            STATUS_TIMESTAMP_FIELDS[self.target]: self.changed_at,
        }
        if self.reason is not None:
            update["termination_reason"] = self.reason
        return self.order.model_copy(update=update)


class OrderRepository:
    """Repository for live orders and archived order history."""

    def __init__(self, dynamodb_resource: DynamoDBServiceResource, table_names: TableNames) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_names: Names of the orders and history tables
        """
        self.dynamodb = dynamodb_resource
        self.table_names = table_names
        self.table: Table = dynamodb_resource.Table(table_names.orders)
        self.user_history: Table = dynamodb_resource.Table(table_names.user_order_history)
        self.admin_history: Table = dynamodb_resource.Table(table_names.admin_order_history)

    def create(self, order: Order) -> bool:
        """Insert a new live order.

        Returns:
            bool: True if created, False if an order with that id exists

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            self.table.put_item(
                Item=order.to_dynamodb_item(),
                ConditionExpression="attribute_not_exists(order_id)",
            )
            return True

        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.warning(f"Order {order.order_id} already exists")
                return False
            raise store_error("PutItem", e) from e

        except BotoCoreError as e:
            raise store_error("PutItem", e) from e

    def get(self, order_id: str) -> Order | None:
        """Read a live order with a strongly consistent read.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            response = self.table.get_item(Key={"order_id": order_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise store_error("GetItem", e) from e

        if "Item" not in response:
            return None

        return Order.from_dynamodb_item(response["Item"])

    def find_by_payment_intent(self, payment_intent_id: str) -> Order | None:
        """Find the live order paid against a payment intent.

        Uses the payment_intent_id GSI, then re-reads the order consistently.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            response = self.table.query(
                IndexName=ORDER_PAYMENT_INTENT_INDEX,
                KeyConditionExpression="payment_intent_id = :intent",
                ExpressionAttributeValues={":intent": payment_intent_id},
                Limit=1,
            )
        except (ClientError, BotoCoreError) as e:
            raise store_error("Query", e) from e

        items = response.get("Items", [])
        if not items:
            return None

        return self.get(str(items[0]["order_id"]))

    def update_status(
        self, order_id: str, current: OrderStatus, target: OrderStatus, changed_at: datetime
    ) -> bool:
        """Move a live order to a non-terminal status.

        Returns:
            bool: True if applied, False if the order is no longer in ``current``

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        timestamp = to_iso(changed_at)
        try:
            self.table.update_item(
                Key={"order_id": order_id},
                UpdateExpression=(
                    "SET #status = :target, status_updated_at = :now, #entered_at = :now"
                ),
                ConditionExpression="#status = :current",
                ExpressionAttributeNames={
                    "#status": "status",
                    "#entered_at": STATUS_TIMESTAMP_FIELDS[target],
                },
                ExpressionAttributeValues={
                    ":target": target.value,
                    ":current": current.value,
                    ":now": timestamp,
                },
            )
            return True

        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.info(f"Order {order_id} is no longer {current.value}, not moving to {target.value}")
                return False
            raise store_error("UpdateItem", e) from e

        except BotoCoreError as e:
            raise store_error("UpdateItem", e) from e

    def mark_payment_captured(
        self, order_id: str, payment_id: str, method: str | None, captured_at: datetime
    ) -> bool:
        """Record the captured payment on a live order.

        Returns:
            bool: True if recorded, False if already recorded or the order is gone

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        update = (
            "SET payment_captured = :true, payment_id = :payment_id, "
            "payment_captured_at = :now"
        )
        values: dict[str, Any] = {
            ":true": True,
            ":payment_id": payment_id,
            ":now": to_iso(captured_at),
        }
        if method is not None:
            update += ", payment_method = :method"
            values[":method"] = method

        try:
            self.table.update_item(
                Key={"order_id": order_id},
                UpdateExpression=update,
                ConditionExpression="attribute_exists(order_id) AND payment_captured <> :true",
                ExpressionAttributeValues=values,
            )
            return True

        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise store_error("UpdateItem", e) from e

        except BotoCoreError as e:
            raise store_error("UpdateItem", e) from e

    def archive(self, request: ArchiveRequest) -> Order | None:
        """Record a terminal status and move the order to history atomically.

        Returns:
            Order: The archived copy, or None if the live order changed or vanished

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        archived = request.archived_order()
        if not transact_write(self.dynamodb, self._archive_actions(request, archived)):
            logger.info(
                f"Order {request.order.order_id} changed before archival as "
                f"{request.target.value}, skipping"
            )
            return None

        record_order_archived(request.target.value)
        logger.info(f"Order {archived.order_id} archived as {archived.status.value}")
        return archived

    def archive_many(self, requests: list[ArchiveRequest]) -> list[Order]:
        """Archive orders in transactions of up to 33 orders.

        A chunk cancelled by any order's condition is retried one order per
        transaction so that the remaining orders still archive.

        Returns:
            list: Orders archived by this call

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        archived_orders: list[Order] = []

        for chunk in chunked(requests, ORDERS_PER_ARCHIVE_TRANSACTION):
            archived = [request.archived_order() for request in chunk]
            actions = [
                action
                for request, order in zip(chunk, archived, strict=True)
                for action in self._archive_actions(request, order)
            ]

            if transact_write(self.dynamodb, actions):
                for order in archived:
                    record_order_archived(order.status.value)
                archived_orders.extend(archived)
                continue

            logger.warning(
                f"Archive transaction for {len(chunk)} orders cancelled, retrying per order"
            )
            for request in chunk:
                order = self.archive(request)
                if order is not None:
                    archived_orders.append(order)

        return archived_orders

    def _archive_actions(self, request: ArchiveRequest, archived: Order) -> list[dict[str, Any]]:
        item = archived.to_dynamodb_item()
        return [
            delete_action(
                self.table_names.orders,
                {"order_id": archived.order_id},
                "#status = :current AND status_updated_at = :seen AND payment_captured = :captured",
                names={"#status": "status"},
                values={
                    ":current": request.order.status.value,
                    ":seen": to_iso(request.order.status_updated_at),
                    ":captured": request.order.payment_captured,
                },
            ),
            put_action(self.table_names.user_order_history, item),
            put_action(self.table_names.admin_order_history, item),
        ]

    def find_in_status_since(
        self, status: OrderStatus, cutoff: datetime, limit: int = 100
    ) -> list[Order]:
        """Live orders that entered ``status`` before ``cutoff``.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        query_kwargs: dict[str, Any] = {
            "IndexName": ORDER_STATUS_INDEX,
            "KeyConditionExpression": "#status = :status AND status_updated_at < :cutoff",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {":status": status.value, ":cutoff": to_iso(cutoff)},
        }
        found: list[Order] = []

        try:
            while len(found) < limit:
                query_kwargs["Limit"] = limit - len(found)
                response = self.table.query(**query_kwargs)
                found.extend(Order.from_dynamodb_item(item) for item in response.get("Items", []))

                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        except (ClientError, BotoCoreError) as e:
            raise store_error("Query", e) from e

        return found

    def list_user_history(self, user_id: str, limit: int = 50) -> list[Order]:
        """List archived orders for a user.

        Returns:
            list: List of Order objects (empty list if none found or on error)
        """
        try:
            response = self.user_history.query(
                KeyConditionExpression="user_id = :uid",
                ExpressionAttributeValues={":uid": user_id},
                Limit=limit,
            )
            return [Order.from_dynamodb_item(item) for item in response.get("Items", [])]

        except ClientError as e:
            logger.error(f"Failed to list order history for user {user_id}: {e}")  # pragma: no cover
            return []

    def list_admin_history(self, limit: int = 100) -> list[Order]:
        """List archived orders across all users.

        Returns:
            list: List of Order objects (empty list if none found or on error)
        """
        try:
            response = self.admin_history.scan(Limit=limit)
            return [Order.from_dynamodb_item(item) for item in response.get("Items", [])]

        except ClientError as e:
            logger.error(f"Failed to list admin order history: {e}")  # pragma: no cover
            return []

    def get_archived(self, order_id: str) -> Order | None:
        """Read an archived order from the admin history.

        Returns:
            Order if found, None otherwise (including on error)
        """
        try:
            response = self.admin_history.get_item(Key={"order_id": order_id})

            if "Item" not in response:
                return None

            return Order.from_dynamodb_item(response["Item"])

        except ClientError as e:
            logger.error(f"Failed to get archived order {order_id}: {e}")  # pragma: no cover
            return None
