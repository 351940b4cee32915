"""Reservation ledger: one stock reservation per payment intent.

A reservation is created by reserving every line through the inventory store
and then recording it as ``active``. It leaves ``active`` exactly once, through
``complete``, ``fail`` or ``expire``. Each of those is a single DynamoDB
transaction that combines the status change (conditioned on ``status = active``)
with the inventory commit or release for every stock-tracked line, so a lost
race never touches the counters.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from order_settlement_service.models.inventory_models import ReserveOutcome
from order_settlement_service.models.reservation_models import (
    MAX_RESERVATION_LINES,
    RESERVATION_TTL,
    TERMINAL_RESERVATION_STATUSES,
    CreateReservationResult,
    CreateReservationStatus,
    Reservation,
    ReservationLine,
    ReservationStatus,
)
from order_settlement_service.models.timestamps import to_iso, utc_now
from order_settlement_service.observability.metrics import (
    record_reservation_created,
    record_reservation_rejected,
    record_reservation_transition,
    record_stock_counter_drift,
)
from order_settlement_service.repositories.dynamodb import (
    BATCH_WRITE_LIMIT,
    chunked,
    is_conditional_check_failure,
    store_error,
    transact_write,
    update_action,
)
from order_settlement_service.repositories.inventory_store import InventoryStore
from order_settlement_service.repositories.tables import RESERVATION_STATUS_INDEX
from order_settlement_service.services.errors import SettlementServiceError

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = {
    ReservationStatus.COMPLETED: "completed_at",
    ReservationStatus.FAILED: "failed_at",
    ReservationStatus.EXPIRED: "expired_at",
}

_REJECTIONS = {
    ReserveOutcome.INSUFFICIENT_STOCK: CreateReservationStatus.INSUFFICIENT_STOCK,
    ReserveOutcome.ITEM_NOT_FOUND: CreateReservationStatus.ITEM_NOT_FOUND,
}


def merge_lines(lines: Iterable[ReservationLine]) -> list[ReservationLine]:
    """Combine lines for the same item, keeping first-seen order."""
    quantities: dict[str, int] = {}
    for line in lines:
        quantities[line.item_id] = quantities.get(line.item_id, 0) + line.quantity
    return [ReservationLine(item_id=item_id, quantity=qty) for item_id, qty in quantities.items()]


class ReservationLedger:
    """Repository for stock reservations keyed by payment intent id."""

    def __init__(
        self,
        dynamodb_resource: DynamoDBServiceResource,
        table_name: str,
        inventory: InventoryStore,
        ttl: timedelta = RESERVATION_TTL,
    ) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_name: Name of the reservations table
            inventory: Store that owns the stock counters
            ttl: How long an active reservation holds its stock
        """
        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.table: Table = dynamodb_resource.Table(table_name)
        self.inventory = inventory
        self.ttl = ttl

    def get(self, payment_intent_id: str) -> Reservation | None:
        """Read a reservation with a strongly consistent read.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            response = self.table.get_item(
                Key={"reservation_id": payment_intent_id}, ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            raise store_error("GetItem", e) from e

        if "Item" not in response:
            return None

        return Reservation.from_dynamodb_item(response["Item"])

    def create(
        self,
        payment_intent_id: str,
        user_id: str,
        lines: Iterable[ReservationLine],
        total_amount: int,
        currency: str = "INR",
        now: datetime | None = None,
    ) -> CreateReservationResult:
        """Reserve stock for every line and record an active reservation.

        Either every line is reserved and the reservation is stored, or every
        line already reserved is released again before returning.

        Args:
            payment_intent_id: Gateway order id; becomes the reservation key
            user_id: Owning user
            lines: Items and quantities to hold
            total_amount: Amount the customer will pay, in minor units
            currency: ISO currency code
            now: Creation time (defaults to the current time)

        Returns:
            CreateReservationResult: CREATED with the reservation, or the
            rejection status with the offending item ids

        Raises:
            ValueError: If there are no lines or too many distinct items
            StockContentionError: If an item stayed contended; prior lines are released
            StoreUnavailableError: If DynamoDB fails; prior lines are released
        """
        merged = merge_lines(lines)
        if not merged:
            raise ValueError("reservation must contain at least one line")
        if len(merged) > MAX_RESERVATION_LINES:
            raise ValueError(f"reservation may hold at most {MAX_RESERVATION_LINES} items")

        held: list[ReservationLine] = []
        try:
            for line in merged:
                outcome = self.inventory.reserve(line.item_id, line.quantity)
                if not outcome.ok:
                    self._compensate(payment_intent_id, held)
                    status = _REJECTIONS[outcome]
                    record_reservation_rejected(status.value)
                    logger.info(
                        f"Reservation {payment_intent_id} rejected: {status.value} "
                        f"for item {line.item_id}"
                    )
                    return CreateReservationResult(status=status, rejected_item_ids=[line.item_id])

                held.append(
                    ReservationLine(
                        item_id=line.item_id,
                        quantity=line.quantity,
                        stock_tracked=outcome is ReserveOutcome.RESERVED,
                    )
                )
        except SettlementServiceError:
            self._compensate(payment_intent_id, held)
            raise

        created_at = now or utc_now()
        reservation = Reservation(
            reservation_id=payment_intent_id,
            user_id=user_id,
            lines=held,
            total_amount=total_amount,
            currency=currency,
            status=ReservationStatus.ACTIVE,
            created_at=created_at,
            expires_at=created_at + self.ttl,
        )

        try:
            self.table.put_item(
                Item=reservation.to_dynamodb_item(),
                ConditionExpression="attribute_not_exists(reservation_id)",
            )
        except ClientError as e:
            self._compensate(payment_intent_id, held)
            if is_conditional_check_failure(e):
                record_reservation_rejected(CreateReservationStatus.DUPLICATE_INTENT.value)
                logger.warning(f"Reservation for intent {payment_intent_id} already exists")
                return CreateReservationResult(status=CreateReservationStatus.DUPLICATE_INTENT)
            raise store_error("PutItem", e) from e
        except BotoCoreError as e:
            self._compensate(payment_intent_id, held)
            raise store_error("PutItem", e) from e

        record_reservation_created(len(held))
        logger.info(
            f"Reservation {payment_intent_id} created for user {user_id} with "
            f"{len(held)} lines, expires at {to_iso(reservation.expires_at)}"
        )
        return CreateReservationResult(status=CreateReservationStatus.CREATED, reservation=reservation)

    def _compensate(self, payment_intent_id: str, held: list[ReservationLine]) -> None:
        for line in held:
            if not line.stock_tracked:
                continue
            try:
                self.inventory.release(line.item_id, line.quantity)
            except SettlementServiceError as e:
                logger.error(
                    f"Could not release {line.quantity} of item {line.item_id} while rolling "
                    f"back reservation {payment_intent_id}: {e}"
                )

    def complete(self, payment_intent_id: str) -> bool:
        """Settle an active reservation: commit its stock.

        Returns:
            bool: True if this call moved the reservation out of ``active``
        """
        return self._finish(
            payment_intent_id, ReservationStatus.COMPLETED, self.inventory.commit_operation
        )

    def fail(self, payment_intent_id: str, reason: str) -> bool:
        """Mark an active reservation failed and release its stock.

        Returns:
            bool: True if this call moved the reservation out of ``active``
        """
        return self._finish(
            payment_intent_id,
            ReservationStatus.FAILED,
            self.inventory.release_operation,
            failure_reason=reason,
        )

    def expire(self, payment_intent_id: str) -> bool:
        """Expire an active reservation and release its stock.

        Returns:
            bool: True if this call moved the reservation out of ``active``
        """
        return self._finish(
            payment_intent_id, ReservationStatus.EXPIRED, self.inventory.release_operation
        )

    def _finish(
        self,
        payment_intent_id: str,
        target: ReservationStatus,
        stock_operation: Callable[[str, int], dict[str, Any]],
        failure_reason: str | None = None,
    ) -> bool:
        reservation = self.get(payment_intent_id)
        if reservation is None:
            logger.warning(f"Cannot mark reservation {payment_intent_id} {target.value}: not found")
            return False

        if reservation.status.is_terminal:
            logger.info(
                f"Reservation {payment_intent_id} already {reservation.status.value}, "
                f"ignoring {target.value}"
            )
            return False

        status_change = self._status_action(payment_intent_id, target, failure_reason)
        tracked = [line for line in reservation.lines if line.stock_tracked]
        actions = [status_change] + [
            stock_operation(line.item_id, line.quantity) for line in tracked
        ]

        if transact_write(self.dynamodb, actions):
            record_reservation_transition(target.value)
            logger.info(f"Reservation {payment_intent_id} moved to {target.value}")
            return True

        current = self.get(payment_intent_id)
        if current is None or current.status.is_terminal:
            logger.info(
                f"Reservation {payment_intent_id} lost the race to "
                f"{current.status.value if current else 'deletion'}, ignoring {target.value}"
            )
            return False

        # Still active, so an inventory condition cancelled the transaction.
        if not transact_write(self.dynamodb, [status_change]):
            logger.info(f"Reservation {payment_intent_id} settled concurrently, ignoring {target.value}")
            return False

        record_reservation_transition(target.value)
        logger.error(
            f"Reservation {payment_intent_id} moved to {target.value} but its stock counters "
            "rejected the transaction; applying lines individually"
        )
        completing = target is ReservationStatus.COMPLETED
        apply = self.inventory.commit if completing else self.inventory.release
        operation = "commit" if completing else "release"
        for line in tracked:
            try:
                apply(line.item_id, line.quantity)
            except SettlementServiceError as e:
                logger.error(
                    f"Reservation {payment_intent_id}: {operation} of {line.quantity} on item "
                    f"{line.item_id} failed and needs reconciliation: {e}"
                )
                record_stock_counter_drift(line.item_id, operation)
        return True

    def _status_action(
        self, payment_intent_id: str, target: ReservationStatus, failure_reason: str | None
    ) -> dict[str, Any]:
        update = "SET #status = :target, #changed_at = :now"
        values: dict[str, Any] = {
            ":target": target.value,
            ":now": to_iso(utc_now()),
            ":active": ReservationStatus.ACTIVE.value,
        }
        if failure_reason is not None:
            update += ", failure_reason = :reason"
            values[":reason"] = failure_reason

        return update_action(
            self.table_name,
            {"reservation_id": payment_intent_id},
            update,
            "#status = :active",
            names={"#status": "status", "#changed_at": TIMESTAMP_FIELDS[target]},
            values=values,
        )

    def find_due_for_expiry(self, now: datetime, limit: int = 100) -> list[Reservation]:
        """Active reservations whose ``expires_at`` is at or before ``now``.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        return self._query_status(ReservationStatus.ACTIVE, "expires_at <= :cutoff", now, limit)

    def find_terminal_before(self, cutoff: datetime, limit: int = 100) -> list[Reservation]:
        """Terminal reservations whose ``expires_at`` is before ``cutoff``.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        found: list[Reservation] = []
        for status in TERMINAL_RESERVATION_STATUSES:
            remaining = limit - len(found)
            if remaining <= 0:
                break
            found.extend(self._query_status(status, "expires_at < :cutoff", cutoff, remaining))
        return found

    def _query_status(
        self, status: ReservationStatus, range_condition: str, cutoff: datetime, limit: int
    ) -> list[Reservation]:
        query_kwargs: dict[str, Any] = {
            "IndexName": RESERVATION_STATUS_INDEX,
            "KeyConditionExpression": f"#status = :status AND {range_condition}",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {":status": status.value, ":cutoff": to_iso(cutoff)},
        }
        found: list[Reservation] = []

        try:
            while len(found) < limit:
                query_kwargs["Limit"] = limit - len(found)
                response = self.table.query(**query_kwargs)
                found.extend(Reservation.from_dynamodb_item(item) for item in response.get("Items", []))

                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        except (ClientError, BotoCoreError) as e:
            raise store_error("Query", e) from e

        return found

    def delete_reservations(self, payment_intent_ids: Iterable[str]) -> int:
        """Delete reservations in batch-write chunks.

        Returns:
            int: Number of reservations deleted

        Raises:
            StoreUnavailableError: If DynamoDB fails or keeps returning unprocessed items
        """
        deleted = 0
        for chunk in chunked(payment_intent_ids, BATCH_WRITE_LIMIT):
            requests: list[Any] = [
                {"DeleteRequest": {"Key": {"reservation_id": intent_id}}} for intent_id in chunk
            ]
            for _ in range(3):
                try:
                    response = self.dynamodb.batch_write_item(RequestItems={self.table_name: requests})
                except (ClientError, BotoCoreError) as e:
                    raise store_error("BatchWriteItem", e) from e

                unprocessed = response.get("UnprocessedItems", {}).get(self.table_name, [])
                deleted += len(requests) - len(unprocessed)
                if not unprocessed:
                    break
                requests = list(unprocessed)
            else:
                raise store_error(
                    "BatchWriteItem", RuntimeError(f"{len(requests)} deletes left unprocessed")
                )

        return deleted
