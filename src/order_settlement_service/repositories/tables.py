"""DynamoDB table layout.

Used to create tables against DynamoDB Local during development and in
component tests. Production tables are provisioned with the same schema.
"""

import logging
from dataclasses import dataclass
from typing import Any

from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource

logger = logging.getLogger(__name__)

RESERVATION_STATUS_INDEX = "status-expires_at-index"
ORDER_PAYMENT_INTENT_INDEX = "payment_intent_id-index"
ORDER_STATUS_INDEX = "status-status_updated_at-index"
PAYMENT_INTENT_INDEX = "payment_intent_id-index"


@dataclass(frozen=True)
class TableNames:
    """Names of the tables backing each collection."""

    menu_items: str = "menu-items"
    reservations: str = "stock-reservations"
    orders: str = "orders"
    user_order_history: str = "user-order-history"
    admin_order_history: str = "admin-order-history"
    payments: str = "payments"
    settlement_errors: str = "settlement-errors"


def _string_attributes(*names: str) -> list[dict[str, str]]:
    return [{"AttributeName": name, "AttributeType": "S"} for name in names]


def _index(name: str, partition_key: str, sort_key: str | None = None) -> dict[str, Any]:
    key_schema = [{"AttributeName": partition_key, "KeyType": "HASH"}]
    if sort_key:
        key_schema.append({"AttributeName": sort_key, "KeyType": "RANGE"})
    return {
        "IndexName": name,
        "KeySchema": key_schema,
        "Projection": {"ProjectionType": "ALL"},
    }


def table_schemas(names: TableNames) -> dict[str, dict[str, Any]]:
    """Return ``create_table`` arguments keyed by table name."""
    return {
        names.menu_items: {
            "KeySchema": [{"AttributeName": "item_id", "KeyType": "HASH"}],
            "AttributeDefinitions": _string_attributes("item_id"),
        },
        names.reservations: {
            "KeySchema": [{"AttributeName": "reservation_id", "KeyType": "HASH"}],
            "AttributeDefinitions": _string_attributes("reservation_id", "status", "expires_at"),
            "GlobalSecondaryIndexes": [
                _index(RESERVATION_STATUS_INDEX, "status", "expires_at"),
            ],
        },
        names.orders: {
            "KeySchema": [{"AttributeName": "order_id", "KeyType": "HASH"}],
            "AttributeDefinitions": _string_attributes(
                "order_id", "payment_intent_id", "status", "status_updated_at"
            ),
            "GlobalSecondaryIndexes": [
                _index(ORDER_PAYMENT_INTENT_INDEX, "payment_intent_id"),
                _index(ORDER_STATUS_INDEX, "status", "status_updated_at"),
            ],
        },
        names.user_order_history: {
            "KeySchema": [
                {"AttributeName": "user_id", "KeyType": "HASH"},
                {"AttributeName": "order_id", "KeyType": "RANGE"},
            ],
            "AttributeDefinitions": _string_attributes("user_id", "order_id"),
        },
        names.admin_order_history: {
            "KeySchema": [{"AttributeName": "order_id", "KeyType": "HASH"}],
            "AttributeDefinitions": _string_attributes("order_id"),
        },
        names.payments: {
            "KeySchema": [{"AttributeName": "payment_id", "KeyType": "HASH"}],
            "AttributeDefinitions": _string_attributes("payment_id", "payment_intent_id"),
            "GlobalSecondaryIndexes": [_index(PAYMENT_INTENT_INDEX, "payment_intent_id")],
        },
        names.settlement_errors: {
            "KeySchema": [{"AttributeName": "error_id", "KeyType": "HASH"}],
            "AttributeDefinitions": _string_attributes("error_id"),
        },
    }


def create_tables(dynamodb_resource: DynamoDBServiceResource, names: TableNames) -> list[str]:
    """Create any missing tables.

    Args:
        dynamodb_resource: Boto3 DynamoDB resource
        names: Table names to create

    Returns:
        list: Names of the tables that were created
    """
    existing = {table.name for table in dynamodb_resource.tables.all()}
    created: list[str] = []

    for table_name, schema in table_schemas(names).items():
        if table_name in existing:
            continue

        table = dynamodb_resource.create_table(
            TableName=table_name, BillingMode="PAY_PER_REQUEST", **schema
        )
        table.wait_until_exists()
        created.append(table_name)
        logger.info(f"Created DynamoDB table {table_name}")

    return created

