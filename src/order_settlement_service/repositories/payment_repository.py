"""Payment records derived from gateway signals.

Status writes are conditional so that a record only ever moves forward:
``authorized`` may become ``captured`` or ``failed``, a ``failed`` payment may
still be captured by the gateway, and ``captured`` is never overwritten.
"""

import logging
from datetime import datetime
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from order_settlement_service.models.payment_models import (
    PaymentRecord,
    PaymentStatus,
    RefundStatus,
)
from order_settlement_service.models.timestamps import to_iso
from order_settlement_service.repositories.dynamodb import is_conditional_check_failure, store_error
from order_settlement_service.repositories.tables import PAYMENT_INTENT_INDEX

logger = logging.getLogger(__name__)


class PaymentRepository:
    """Repository for payment records.

    Manages payment records in DynamoDB with payment_id as partition key.
    """

    def __init__(self, dynamodb_resource: DynamoDBServiceResource, table_name: str) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_name: Name of the DynamoDB table
        """
        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.table: Table = dynamodb_resource.Table(table_name)

    def get(self, payment_id: str) -> PaymentRecord | None:
        """Read a payment record with a strongly consistent read.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            response = self.table.get_item(Key={"payment_id": payment_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise store_error("GetItem", e) from e

        if "Item" not in response:
            return None

        return PaymentRecord.from_dynamodb_item(response["Item"])

    def list_for_intent(self, payment_intent_id: str) -> list[PaymentRecord]:
        """List payments made against a payment intent.

        Returns:
            list: List of PaymentRecord objects (empty list if none found or on error)
        """
        try:
            response = self.table.query(
                IndexName=PAYMENT_INTENT_INDEX,
                KeyConditionExpression="payment_intent_id = :intent",
                ExpressionAttributeValues={":intent": payment_intent_id},
            )
            return [PaymentRecord.from_dynamodb_item(item) for item in response.get("Items", [])]

        except ClientError as e:
            logger.error(f"Failed to list payments for intent {payment_intent_id}: {e}")  # pragma: no cover
            return []

    def record_authorized(
        self,
        payment_id: str,
        payment_intent_id: str,
        amount: int,
        method: str | None,
        at: datetime,
        currency: str = "INR",
    ) -> bool:
        """Record an authorized payment unless it has already moved on.

        Returns:
            bool: True if written, False if the record is already captured or failed
        """
        return self._write_status(
            payment_id,
            payment_intent_id,
            PaymentStatus.AUTHORIZED,
            {"amount": amount, "currency": currency, "method": method, "authorized_at": to_iso(at)},
            allowed_from=(PaymentStatus.AUTHORIZED,),
        )

    def record_captured(
        self,
        payment_id: str,
        payment_intent_id: str,
        amount: int,
        method: str | None,
        at: datetime,
        currency: str = "INR",
    ) -> bool:
        """Record a captured payment.

        Returns:
            bool: True if this call recorded the capture, False if it was already recorded

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        return self._write_status(
            payment_id,
            payment_intent_id,
            PaymentStatus.CAPTURED,
            {"amount": amount, "currency": currency, "method": method, "captured_at": to_iso(at)},
            allowed_from=(PaymentStatus.AUTHORIZED, PaymentStatus.FAILED),
        )

    def record_failed(
        self,
        payment_id: str,
        payment_intent_id: str,
        at: datetime,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> bool:
        """Record a failed payment unless it was captured or already failed.

        Returns:
            bool: True if this call recorded the failure

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        return self._write_status(
            payment_id,
            payment_intent_id,
            PaymentStatus.FAILED,
            {
                "failed_at": to_iso(at),
                "error_code": error_code,
                "error_description": error_description,
            },
            allowed_from=(PaymentStatus.AUTHORIZED,),
        )

    def _write_status(
        self,
        payment_id: str,
        payment_intent_id: str,
        status: PaymentStatus,
        attributes: dict[str, Any],
        allowed_from: tuple[PaymentStatus, ...],
    ) -> bool:
        assignments = ["#status = :status", "payment_intent_id = :intent"]
        names = {"#status": "status"}
        values: dict[str, Any] = {":status": status.value, ":intent": payment_intent_id}
        for name, value in attributes.items():
            if value is None:
                continue
            assignments.append(f"#{name} = :{name}")
            names[f"#{name}"] = name
            values[f":{name}"] = value

        allowed = []
        for index, previous in enumerate(allowed_from):
            values[f":from{index}"] = previous.value
            allowed.append(f"#status = :from{index}")

        try:
            self.table.update_item(
                Key={"payment_id": payment_id},
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression=f"attribute_not_exists(payment_id) OR {' OR '.join(allowed)}",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
            logger.info(f"Payment {payment_id} for intent {payment_intent_id} recorded {status.value}")
            return True

        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.info(f"Payment {payment_id} not recorded {status.value}: already settled")
                return False
            raise store_error("UpdateItem", e) from e

        except BotoCoreError as e:
            raise store_error("UpdateItem", e) from e

    def claim_refund(self, payment_id: str) -> bool:
        """Claim the right to refund a captured payment.

        Only one caller can move ``refund_status`` to ``pending``; a refund
        that previously failed can be claimed again.

        Returns:
            bool: True if the caller must issue the refund

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            self.table.update_item(
                Key={"payment_id": payment_id},
                UpdateExpression="SET refund_status = :pending",
                ConditionExpression=(
                    "#status = :captured AND "
                    "(attribute_not_exists(refund_status) OR refund_status = :failed)"
                ),
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":pending": RefundStatus.PENDING.value,
                    ":captured": PaymentStatus.CAPTURED.value,
                    ":failed": RefundStatus.FAILED.value,
                },
            )
            return True

        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.info(f"Refund for payment {payment_id} already claimed")
                return False
            raise store_error("UpdateItem", e) from e

        except BotoCoreError as e:
            raise store_error("UpdateItem", e) from e

    def finish_refund(
        self, payment_id: str, status: RefundStatus, refund_id: str | None = None
    ) -> None:
        """Record the result of a claimed refund.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        update = "SET refund_status = :status"
        values: dict[str, Any] = {":status": status.value}
        if refund_id is not None:
            update += ", refund_id = :refund_id"
            values[":refund_id"] = refund_id

        try:
            self.table.update_item(
                Key={"payment_id": payment_id},
                UpdateExpression=update,
                ExpressionAttributeValues=values,
            )
        except (ClientError, BotoCoreError) as e:
            raise store_error("UpdateItem", e) from e
