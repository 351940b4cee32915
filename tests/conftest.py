"""Shared pytest fixtures and configuration for all tests."""

import os
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

import boto3
import pytest
from moto import mock_aws

# Keep module-level app construction and OTLP exporters off during collection
os.environ.setdefault("ENVIRONMENT", "test")

from order_settlement_service.models.inventory_models import MenuItem  # noqa: E402
from order_settlement_service.models.order_models import Order, OrderItem, OrderStatus  # noqa: E402
from order_settlement_service.repositories.inventory_store import InventoryStore  # noqa: E402
from order_settlement_service.repositories.order_repository import OrderRepository  # noqa: E402
from order_settlement_service.repositories.payment_repository import PaymentRepository  # noqa: E402
from order_settlement_service.repositories.reservation_ledger import ReservationLedger  # noqa: E402
from order_settlement_service.repositories.settlement_error_repository import (  # noqa: E402
    SettlementErrorRepository,
)
from order_settlement_service.repositories.tables import TableNames, create_tables  # noqa: E402


@pytest.fixture
def fixed_now() -> datetime:
    """Fixture providing a fixed UTC timestamp."""
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def sample_order(fixed_now: datetime) -> Order:
    """Fixture providing a placed, unpaid order."""
    return Order(
        order_id="ord_0001",
        user_id="user_42",
        items=[OrderItem(item_id="item_dosa", name="Masala Dosa", quantity=2, unit_price=12000)],
        total_amount=24000,
        currency="INR",
        status=OrderStatus.PLACED,
        payment_intent_id="order_intent_1",
        created_at=fixed_now,
        status_updated_at=fixed_now,
    )


@pytest.fixture
def client_error() -> Any:
    """Factory for botocore ClientErrors with a given code."""
    from botocore.exceptions import ClientError

    def build(code: str, operation: str = "UpdateItem", **response: Any) -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": code}, **response}, operation)

    return build


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fake credentials so boto3 never reaches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def table_names() -> TableNames:
    return TableNames()


@pytest.fixture
def dynamodb(aws_credentials: None, table_names: TableNames) -> Iterator[Any]:
    """Emulated DynamoDB with every service table created."""
    with mock_aws():
        resource = boto3.resource("dynamodb", region_name="us-east-1")
        create_tables(resource, table_names)
        yield resource


@pytest.fixture
def inventory(dynamodb: Any, table_names: TableNames) -> InventoryStore:
    return InventoryStore(dynamodb_resource=dynamodb, table_name=table_names.menu_items)


@pytest.fixture
def ledger(dynamodb: Any, table_names: TableNames, inventory: InventoryStore) -> ReservationLedger:
    return ReservationLedger(
        dynamodb_resource=dynamodb, table_name=table_names.reservations, inventory=inventory
    )


@pytest.fixture
def order_repository(dynamodb: Any, table_names: TableNames) -> OrderRepository:
    return OrderRepository(dynamodb_resource=dynamodb, table_names=table_names)


@pytest.fixture
def payment_repository(dynamodb: Any, table_names: TableNames) -> PaymentRepository:
    return PaymentRepository(dynamodb_resource=dynamodb, table_name=table_names.payments)


@pytest.fixture
def error_repository(dynamodb: Any, table_names: TableNames) -> SettlementErrorRepository:
    return SettlementErrorRepository(
        dynamodb_resource=dynamodb, table_name=table_names.settlement_errors
    )


@pytest.fixture
def stock_item() -> Any:
    """Factory saving a menu item with the given stock."""

    def build(
        inventory: InventoryStore,
        item_id: str,
        available: int,
        price: int = 10000,
        unlimited: bool = False,
    ) -> MenuItem:
        return inventory.save_item(
            MenuItem(
                item_id=item_id,
                name=item_id.replace("_", " ").title(),
                price=price,
                available_quantity=available,
                has_unlimited_stock=unlimited,
            )
        )

    return build
