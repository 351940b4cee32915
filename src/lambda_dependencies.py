"""Shared dependency factory for Lambda handlers.

This module provides cached dependency initialization to optimize Lambda cold starts.
Dependencies are created once and reused across invocations within the same Lambda container.
"""

import logging
import os
from datetime import timedelta
from typing import Any

import boto3
from fastapi import FastAPI

from order_settlement_service.adapters.base_adapter import PaymentGateway
from order_settlement_service.adapters.razorpay_adapter import RazorpayAdapter
from order_settlement_service.handlers.api_handler import create_app
from order_settlement_service.handlers.event_handler import SweepEventHandler
from order_settlement_service.observability import configure_logging, setup_observability
from order_settlement_service.repositories.inventory_store import InventoryStore
from order_settlement_service.repositories.order_repository import OrderRepository
from order_settlement_service.repositories.payment_repository import PaymentRepository
from order_settlement_service.repositories.reservation_ledger import ReservationLedger
from order_settlement_service.repositories.settlement_error_repository import (
    SettlementErrorRepository,
)
from order_settlement_service.repositories.tables import TableNames
from order_settlement_service.services.checkout_service import CheckoutService
from order_settlement_service.services.errors import ConfigurationError
from order_settlement_service.services.event_publisher import EventPublisher
from order_settlement_service.services.order_service import OrderService
from order_settlement_service.services.reconciliation_service import ReconciliationService
from order_settlement_service.services.settlement_coordinator import SettlementCoordinator
from order_settlement_service.services.sweepers import (
    AbandonedOrderSweeper,
    ReservationExpirySweeper,
    StalePickupSweeper,
)

logger = logging.getLogger(__name__)

# Module-level caches for Lambda container reuse
_dynamodb_resource: Any | None = None
_gateway: PaymentGateway | None = None
_event_publisher: EventPublisher | None = None
_inventory_store: InventoryStore | None = None
_reservation_ledger: ReservationLedger | None = None
_order_service: OrderService | None = None
_reconciliation_service: ReconciliationService | None = None
_settlement_coordinator: SettlementCoordinator | None = None
_sweep_handler: SweepEventHandler | None = None
_fastapi_app: FastAPI | None = None


def _key_list(variable: str) -> list[str]:
    return [key.strip() for key in os.getenv(variable, "").split(",") if key.strip()]


def get_table_names() -> TableNames:
    """Read table names from the environment, falling back to the defaults."""
    defaults = TableNames()
    return TableNames(
        menu_items=os.getenv("DYNAMODB_MENU_ITEMS_TABLE", defaults.menu_items),
        reservations=os.getenv("DYNAMODB_RESERVATIONS_TABLE", defaults.reservations),
        orders=os.getenv("DYNAMODB_ORDERS_TABLE", defaults.orders),
        user_order_history=os.getenv(
            "DYNAMODB_USER_ORDER_HISTORY_TABLE", defaults.user_order_history
        ),
        admin_order_history=os.getenv(
            "DYNAMODB_ADMIN_ORDER_HISTORY_TABLE", defaults.admin_order_history
        ),
        payments=os.getenv("DYNAMODB_PAYMENTS_TABLE", defaults.payments),
        settlement_errors=os.getenv("DYNAMODB_SETTLEMENT_ERRORS_TABLE", defaults.settlement_errors),
    )


def get_dynamodb_resource() -> Any:
    """Create or retrieve cached DynamoDB resource.

    Returns:
        Boto3 DynamoDB resource configured for environment
    """
    global _dynamodb_resource

    if _dynamodb_resource is not None:
        return _dynamodb_resource

    endpoint_url = os.getenv("DYNAMODB_ENDPOINT")
    region = os.getenv("AWS_REGION", "us-east-1")

    if endpoint_url:
        # Local DynamoDB - use environment variables
        access_key = os.getenv("AWS_ACCESS_KEY_ID")
        secret_key = os.getenv("AWS_SECRET_ACCESS_KEY")
        logger.info(f"Using local DynamoDB at {endpoint_url}")
        _dynamodb_resource = boto3.resource(
            "dynamodb",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
        )
    else:
        logger.info(f"Using AWS DynamoDB in region {region}")
        _dynamodb_resource = boto3.resource("dynamodb", region_name=region)

    return _dynamodb_resource


def get_gateway() -> PaymentGateway:
    """Create or retrieve the cached payment gateway adapter.

    Raises:
        ConfigurationError: If Razorpay credentials are missing
    """
    global _gateway

    if _gateway is not None:
        return _gateway

    key_id = os.getenv("RAZORPAY_KEY_ID")
    key_secret = os.getenv("RAZORPAY_KEY_SECRET")
    webhook_secret = os.getenv("RAZORPAY_WEBHOOK_SECRET")

    if not key_id or not key_secret:
        raise ConfigurationError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET must be set in environment")
    if not webhook_secret:
        raise ConfigurationError("RAZORPAY_WEBHOOK_SECRET must be set in environment")

    timeout = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
    _gateway = RazorpayAdapter(
        key_id=key_id,
        key_secret=key_secret,
        webhook_secret=webhook_secret,
        timeout_seconds=timeout,
    )

    logger.info(f"Razorpay adapter configured with {timeout}s timeout")
    return _gateway


def get_event_publisher() -> EventPublisher:
    """Create or retrieve the cached notification publisher.

    Publishing is disabled when EVENT_BUS_NAME is not set.
    """
    global _event_publisher

    if _event_publisher is not None:
        return _event_publisher

    bus_name = os.getenv("EVENT_BUS_NAME")
    if bus_name:
        events_client = boto3.client("events", region_name=os.getenv("AWS_REGION", "us-east-1"))
        _event_publisher = EventPublisher(events_client=events_client, event_bus_name=bus_name)
        logger.info(f"Publishing notification events to bus {bus_name}")
    else:
        _event_publisher = EventPublisher()
        logger.warning("No EVENT_BUS_NAME configured - notification events will not be published")

    return _event_publisher


def get_inventory_store() -> InventoryStore:
    global _inventory_store

    if _inventory_store is None:
        _inventory_store = InventoryStore(
            dynamodb_resource=get_dynamodb_resource(),
            table_name=get_table_names().menu_items,
        )
    return _inventory_store


def get_reservation_ledger() -> ReservationLedger:
    global _reservation_ledger

    if _reservation_ledger is None:
        ttl_seconds = int(os.getenv("RESERVATION_TTL_SECONDS", "300"))
        _reservation_ledger = ReservationLedger(
            dynamodb_resource=get_dynamodb_resource(),
            table_name=get_table_names().reservations,
            inventory=get_inventory_store(),
            ttl=timedelta(seconds=ttl_seconds),
        )
        logger.info(f"Reservation ledger initialized with {ttl_seconds}s TTL")
    return _reservation_ledger


def get_order_service() -> OrderService:
    """Create or retrieve cached order service."""
    global _order_service

    if _order_service is None:
        order_repository = OrderRepository(
            dynamodb_resource=get_dynamodb_resource(), table_names=get_table_names()
        )
        _order_service = OrderService(
            order_repository=order_repository, event_publisher=get_event_publisher()
        )
        logger.info("Order service initialized")
    return _order_service


def get_reconciliation_service() -> ReconciliationService:
    """Create or retrieve cached reconciliation service."""
    global _reconciliation_service

    if _reconciliation_service is None:
        error_repository = SettlementErrorRepository(
            dynamodb_resource=get_dynamodb_resource(),
            table_name=get_table_names().settlement_errors,
        )
        _reconciliation_service = ReconciliationService(error_repository=error_repository)
        logger.info("Reconciliation service initialized")
    return _reconciliation_service


def get_payment_repository() -> PaymentRepository:
    return PaymentRepository(
        dynamodb_resource=get_dynamodb_resource(), table_name=get_table_names().payments
    )


def get_settlement_coordinator() -> SettlementCoordinator:
    """Create or retrieve cached settlement coordinator.

    Raises:
        ConfigurationError: If Razorpay credentials are missing
    """
    global _settlement_coordinator

    if _settlement_coordinator is not None:
        return _settlement_coordinator

    _settlement_coordinator = SettlementCoordinator(
        ledger=get_reservation_ledger(),
        payment_repository=get_payment_repository(),
        order_service=get_order_service(),
        gateway=get_gateway(),
        event_publisher=get_event_publisher(),
        reconciliation_service=get_reconciliation_service(),
        max_attempts=int(os.getenv("SETTLEMENT_MAX_ATTEMPTS", "3")),
        retry_delay_seconds=float(os.getenv("RETRY_DELAY_SECONDS", "1")),
    )

    logger.info("Settlement coordinator initialized")
    return _settlement_coordinator


def get_sweep_handler() -> SweepEventHandler:
    """Create or retrieve cached sweep handler.

    Returns:
        Configured SweepEventHandler instance
    """
    global _sweep_handler

    if _sweep_handler is not None:
        return _sweep_handler

    order_service = get_order_service()
    publisher = get_event_publisher()

    _sweep_handler = SweepEventHandler(
        expiry_sweeper=ReservationExpirySweeper(ledger=get_reservation_ledger()),
        stale_pickup_sweeper=StalePickupSweeper(order_service.order_repository, publisher),
        abandoned_order_sweeper=AbandonedOrderSweeper(order_service.order_repository, publisher),
    )

    logger.info("Sweep handler initialized")
    return _sweep_handler


def get_fastapi_app() -> FastAPI:
    """Create or retrieve cached FastAPI application.

    Returns:
        Configured FastAPI application instance

    Raises:
        ConfigurationError: If Razorpay credentials are missing
    """
    global _fastapi_app

    if _fastapi_app is not None:
        return _fastapi_app

    admin_keys = _key_list("ADMIN_API_KEY")
    if not admin_keys:
        logger.warning("No ADMIN_API_KEY configured - using development key")
        admin_keys = ["dummy-key-for-development"]

    staff_keys = _key_list("STAFF_API_KEY")
    if not staff_keys:
        logger.warning("No STAFF_API_KEY configured - staff endpoints accept admin keys only")

    gateway = get_gateway()
    order_service = get_order_service()

    _fastapi_app = create_app(
        checkout_service=CheckoutService(
            inventory=get_inventory_store(),
            ledger=get_reservation_ledger(),
            order_service=order_service,
            gateway=gateway,
        ),
        settlement_coordinator=get_settlement_coordinator(),
        order_service=order_service,
        inventory=get_inventory_store(),
        ledger=get_reservation_ledger(),
        payment_repository=get_payment_repository(),
        reconciliation_service=get_reconciliation_service(),
        sweep_handler=get_sweep_handler(),
        admin_api_keys=admin_keys,
        staff_api_keys=staff_keys,
    )

    logger.info("FastAPI application initialized")
    return _fastapi_app


def initialize_lambda_environment(app: FastAPI | None = None) -> None:
    """Initialize Lambda environment with logging and observability.

    Should be called once during Lambda cold start.

    Args:
        app: FastAPI application to instrument, if the container serves HTTP
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    configure_logging(log_level)
    setup_observability(app)

    logger.info("Lambda environment initialized")
