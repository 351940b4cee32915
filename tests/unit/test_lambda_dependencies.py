"""Unit tests for Lambda dependency factory."""

import os
from datetime import timedelta
from unittest.mock import MagicMock, Mock, patch

import pytest

from order_settlement_service.adapters.razorpay_adapter import RazorpayAdapter
from order_settlement_service.services.errors import ConfigurationError
from src.lambda_dependencies import (
    get_dynamodb_resource,
    get_event_publisher,
    get_fastapi_app,
    get_gateway,
    get_reservation_ledger,
    get_settlement_coordinator,
    get_sweep_handler,
    get_table_names,
    initialize_lambda_environment,
)

RAZORPAY_ENV = {
    "RAZORPAY_KEY_ID": "rzp_test_key",
    "RAZORPAY_KEY_SECRET": "key-secret",
    "RAZORPAY_WEBHOOK_SECRET": "hook-secret",
}


def _reset_caches() -> None:
    import src.lambda_dependencies as deps

    deps._dynamodb_resource = None
    deps._gateway = None
    deps._event_publisher = None
    deps._inventory_store = None
    deps._reservation_ledger = None
    deps._order_service = None
    deps._reconciliation_service = None
    deps._settlement_coordinator = None
    deps._sweep_handler = None
    deps._fastapi_app = None


@pytest.mark.unit
class TestGetDynamoDBResource:
    """Tests for get_dynamodb_resource function."""

    def teardown_method(self) -> None:
        """Clear cached resources after each test."""
        _reset_caches()

    @patch.dict(os.environ, {"DYNAMODB_ENDPOINT": "", "AWS_REGION": "us-west-2"}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_creates_aws_resource_when_no_endpoint(self, mock_boto3_resource: Mock) -> None:
        """Test that AWS DynamoDB resource is created when no local endpoint configured."""
        mock_resource = MagicMock()
        mock_boto3_resource.return_value = mock_resource

        result = get_dynamodb_resource()

        mock_boto3_resource.assert_called_once_with("dynamodb", region_name="us-west-2")
        assert result == mock_resource

    @patch.dict(
        os.environ,
        {
            "DYNAMODB_ENDPOINT": "http://localhost:8000",
            "AWS_REGION": "us-east-1",
            "AWS_ACCESS_KEY_ID": "test-key",
            "AWS_SECRET_ACCESS_KEY": "test-secret",
        },
        clear=True,
    )
    @patch("src.lambda_dependencies.boto3.resource")
    def test_creates_local_resource_when_endpoint_provided(self, mock_boto3_resource: Mock) -> None:
        """Test that local DynamoDB resource is created when endpoint configured."""
        mock_resource = MagicMock()
        mock_boto3_resource.return_value = mock_resource

        result = get_dynamodb_resource()

        mock_boto3_resource.assert_called_once_with(
            "dynamodb",
            endpoint_url="http://localhost:8000",
            region_name="us-east-1",
            aws_access_key_id="test-key",
            aws_secret_access_key="test-secret",
        )
        assert result == mock_resource

    @patch.dict(os.environ, {"DYNAMODB_ENDPOINT": ""}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_caches_resource_for_reuse(self, mock_boto3_resource: Mock) -> None:
        """Test that DynamoDB resource is cached and reused across calls."""
        mock_boto3_resource.return_value = MagicMock()

        result1 = get_dynamodb_resource()
        result2 = get_dynamodb_resource()

        mock_boto3_resource.assert_called_once()
        assert result1 is result2


@pytest.mark.unit
class TestGetTableNames:
    """Tests for get_table_names function."""

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self) -> None:
        names = get_table_names()

        assert names.menu_items == "menu-items"
        assert names.payments == "payments"

    @patch.dict(
        os.environ,
        {"DYNAMODB_MENU_ITEMS_TABLE": "prod-menu", "DYNAMODB_ORDERS_TABLE": "prod-orders"},
        clear=True,
    )
    def test_overrides_from_environment(self) -> None:
        names = get_table_names()

        assert names.menu_items == "prod-menu"
        assert names.orders == "prod-orders"
        assert names.reservations == "stock-reservations"


@pytest.mark.unit
class TestGetGateway:
    """Tests for get_gateway function."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch.dict(os.environ, {**RAZORPAY_ENV, "GATEWAY_TIMEOUT_SECONDS": "5"}, clear=True)
    def test_creates_razorpay_adapter(self) -> None:
        gateway = get_gateway()

        assert isinstance(gateway, RazorpayAdapter)
        assert gateway.key_id == "rzp_test_key"
        assert gateway.timeout_seconds == 5.0
        assert get_gateway() is gateway

    @patch.dict(os.environ, {"RAZORPAY_KEY_ID": "rzp_test_key"}, clear=True)
    def test_raises_when_key_secret_missing(self) -> None:
        with pytest.raises(ConfigurationError, match="RAZORPAY_KEY_SECRET"):
            get_gateway()

    @patch.dict(
        os.environ, {"RAZORPAY_KEY_ID": "rzp_test_key", "RAZORPAY_KEY_SECRET": "s"}, clear=True
    )
    def test_raises_when_webhook_secret_missing(self) -> None:
        with pytest.raises(ConfigurationError, match="RAZORPAY_WEBHOOK_SECRET"):
            get_gateway()


@pytest.mark.unit
class TestGetEventPublisher:
    """Tests for get_event_publisher function."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch.dict(os.environ, {}, clear=True)
    def test_disabled_without_bus(self) -> None:
        publisher = get_event_publisher()

        assert publisher.enabled is False

    @patch.dict(os.environ, {"EVENT_BUS_NAME": "orders-bus", "AWS_REGION": "eu-west-1"}, clear=True)
    @patch("src.lambda_dependencies.boto3.client")
    def test_publishes_to_configured_bus(self, mock_boto3_client: Mock) -> None:
        publisher = get_event_publisher()

        mock_boto3_client.assert_called_once_with("events", region_name="eu-west-1")
        assert publisher.enabled is True
        assert publisher.event_bus_name == "orders-bus"


@pytest.mark.unit
class TestServiceFactories:
    """Tests for the cached service factories."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch.dict(os.environ, {"RESERVATION_TTL_SECONDS": "120"}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_ledger_uses_configured_ttl(self, mock_boto3_resource: Mock) -> None:
        ledger = get_reservation_ledger()

        assert ledger.ttl == timedelta(seconds=120)
        assert ledger.inventory is not None
        assert get_reservation_ledger() is ledger

    @patch.dict(
        os.environ,
        {**RAZORPAY_ENV, "SETTLEMENT_MAX_ATTEMPTS": "5", "RETRY_DELAY_SECONDS": "0.5"},
        clear=True,
    )
    @patch("src.lambda_dependencies.boto3.resource")
    def test_coordinator_wiring(self, mock_boto3_resource: Mock) -> None:
        coordinator = get_settlement_coordinator()

        assert coordinator.max_attempts == 5
        assert coordinator.retry_delay_seconds == 0.5
        assert isinstance(coordinator.gateway, RazorpayAdapter)
        assert coordinator.ledger is get_reservation_ledger()
        assert get_settlement_coordinator() is coordinator

    @patch.dict(os.environ, {}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_coordinator_requires_gateway_credentials(self, mock_boto3_resource: Mock) -> None:
        with pytest.raises(ConfigurationError):
            get_settlement_coordinator()

    @patch.dict(os.environ, {}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_sweep_handler_does_not_need_gateway(self, mock_boto3_resource: Mock) -> None:
        handler = get_sweep_handler()

        assert get_sweep_handler() is handler


@pytest.mark.unit
class TestGetFastAPIApp:
    """Tests for get_fastapi_app function."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch.dict(
        os.environ,
        {**RAZORPAY_ENV, "ADMIN_API_KEY": "admin-1, admin-2", "STAFF_API_KEY": "staff-1"},
        clear=True,
    )
    @patch("src.lambda_dependencies.boto3.resource")
    def test_builds_app_with_configured_keys(self, mock_boto3_resource: Mock) -> None:
        app = get_fastapi_app()

        validator = app.state.api_key_validator
        assert validator.role_for("admin-2") is not None
        assert validator.role_for("staff-1") is not None
        assert validator.role_for("unknown") is None
        assert get_fastapi_app() is app

    @patch.dict(os.environ, RAZORPAY_ENV, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_falls_back_to_development_key(self, mock_boto3_resource: Mock) -> None:
        app = get_fastapi_app()

        assert app.state.api_key_validator.role_for("dummy-key-for-development") is not None


@pytest.mark.unit
class TestInitializeLambdaEnvironment:
    """Tests for initialize_lambda_environment function."""

    @patch("src.lambda_dependencies.setup_observability")
    @patch("src.lambda_dependencies.configure_logging")
    @patch.dict(os.environ, {"LOG_LEVEL": "DEBUG"}, clear=True)
    def test_configures_logging_with_env_level(
        self, mock_configure_logging: Mock, mock_setup_observability: Mock
    ) -> None:
        """Test that logging is configured with LOG_LEVEL from environment."""
        initialize_lambda_environment()

        mock_configure_logging.assert_called_once_with("DEBUG")
        mock_setup_observability.assert_called_once_with(None)

    @patch("src.lambda_dependencies.setup_observability")
    @patch("src.lambda_dependencies.configure_logging")
    @patch.dict(os.environ, {}, clear=True)
    def test_instruments_app_when_given(
        self, mock_configure_logging: Mock, mock_setup_observability: Mock
    ) -> None:
        app = MagicMock()

        initialize_lambda_environment(app)

        mock_configure_logging.assert_called_once_with("INFO")
        mock_setup_observability.assert_called_once_with(app)
