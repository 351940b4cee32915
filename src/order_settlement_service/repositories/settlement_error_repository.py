"""DynamoDB repository for the settlement reconciliation queue.

Following the admin-read convention, reads return None or an empty list on
failure. Recording an error is on the settlement path and raises instead.
"""

import logging

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from order_settlement_service.models.payment_models import SettlementError
from order_settlement_service.repositories.dynamodb import store_error

logger = logging.getLogger(__name__)


class SettlementErrorRepository:
    """Repository for settlement error CRUD operations.

    Manages settlement error records in DynamoDB with error_id as partition key.
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

    def save_error(self, error: SettlementError) -> None:
        """Save settlement error.

        Args:
            error: SettlementError to save

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        try:
            self.table.put_item(Item=error.to_dynamodb_item())
        except (ClientError, BotoCoreError) as e:
            raise store_error("PutItem", e) from e

    def get_error(self, error_id: str) -> SettlementError | None:
        """Retrieve settlement error by ID.

        Args:
            error_id: Error identifier

        Returns:
            SettlementError if found, None otherwise
        """
        try:
            response = self.table.get_item(Key={"error_id": error_id}, ConsistentRead=True)

            if "Item" not in response:
                return None

            return SettlementError.from_dynamodb_item(response["Item"])

        except ClientError as e:
            logger.error(f"Failed to get settlement error {error_id}: {e}")  # pragma: no cover
            return None

    def list_open_errors(self, limit: int = 50) -> list[SettlementError]:
        """List unresolved errors, oldest first.

        Args:
            limit: Maximum number of errors to return

        Returns:
            list: List of SettlementError objects (empty list if none found)
        """
        try:
            response = self.table.scan(
                FilterExpression="resolved = :false",
                ExpressionAttributeValues={":false": False},
            )
            errors = [SettlementError.from_dynamodb_item(item) for item in response.get("Items", [])]

        except ClientError as e:
            logger.error(f"Failed to list settlement errors: {e}")  # pragma: no cover
            return []

        errors.sort(key=lambda error: error.created_at)
        return errors[:limit]

    def update_retry(self, error_id: str, retry_count: int, resolved: bool) -> bool:
        """Record a retry attempt.

        Args:
            error_id: Error identifier
            retry_count: New retry count
            resolved: Whether the retry succeeded

        Returns:
            bool: True if update succeeded, False otherwise
        """
        try:
            self.table.update_item(
                Key={"error_id": error_id},
                UpdateExpression="SET retry_count = :count, resolved = :resolved",
                ExpressionAttributeValues={":count": retry_count, ":resolved": resolved},
            )
            return True

        except ClientError as e:
            logger.error(f"Failed to update settlement error {error_id}: {e}")  # pragma: no cover
            return False
