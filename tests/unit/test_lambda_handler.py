"""Unit tests for AWS Lambda handler."""

from typing import Any
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from src.lambda_handler import handle_eventbridge_event, is_eventbridge_event, lambda_handler


def _sweep_event(task: str = "expire_reservations") -> dict[str, Any]:
    return {
        "version": "0",
        "id": "event-id",
        "source": "com.restaurant.settlement.schedule",
        "detail-type": "SweepRequested",
        "detail": {"task": task},
    }


@pytest.mark.unit
class TestIsEventBridgeEvent:
    """Tests for is_eventbridge_event function."""

    def test_returns_true_for_eventbridge_event(self) -> None:
        assert is_eventbridge_event(_sweep_event()) is True

    def test_returns_false_for_api_gateway_http_event(self) -> None:
        """Test that API Gateway HTTP events are correctly identified."""
        event = {
            "version": "2.0",
            "requestContext": {
                "http": {"method": "POST", "path": "/webhooks/razorpay"},
                "requestId": "request-id",
            },
            "rawPath": "/webhooks/razorpay",
        }

        assert is_eventbridge_event(event) is False

    def test_returns_false_for_api_gateway_rest_event(self) -> None:
        event = {
            "requestContext": {"requestId": "request-id", "apiId": "api-id"},
            "path": "/health",
            "httpMethod": "GET",
        }

        assert is_eventbridge_event(event) is False

    def test_returns_false_when_detail_missing(self) -> None:
        event = _sweep_event()
        del event["detail"]

        assert is_eventbridge_event(event) is False


@pytest.mark.unit
class TestHandleEventBridgeEvent:
    """Tests for handle_eventbridge_event function."""

    @patch("src.lambda_handler.get_sweep_handler")
    def test_runs_requested_sweep(self, mock_get_handler: Mock) -> None:
        """Test that the sweep handler's response is returned as is."""
        mock_handler = MagicMock()
        mock_handler.handle_eventbridge_event = AsyncMock(
            return_value={
                "statusCode": 200,
                "body": '{"task": "expire_reservations", "examined": 2, "processed": 2, "failed": 0}',
            }
        )
        mock_get_handler.return_value = mock_handler
        event = _sweep_event()

        result = handle_eventbridge_event(event)

        assert result["statusCode"] == 200
        assert "expire_reservations" in result["body"]
        mock_handler.handle_eventbridge_event.assert_awaited_once_with(event, None)

    @patch("src.lambda_handler.get_sweep_handler")
    def test_returns_rejection_for_unknown_event(self, mock_get_handler: Mock) -> None:
        mock_handler = MagicMock()
        mock_handler.handle_eventbridge_event = AsyncMock(
            return_value={"statusCode": 400, "body": "Unsupported event"}
        )
        mock_get_handler.return_value = mock_handler

        result = handle_eventbridge_event(_sweep_event("drop_tables"))

        assert result["statusCode"] == 400


@pytest.mark.unit
class TestLambdaHandler:
    """Tests for main lambda_handler function."""

    @patch("src.lambda_handler.handle_eventbridge_event")
    def test_routes_eventbridge_events_to_handler(self, mock_handle_eventbridge: Mock) -> None:
        """Test that EventBridge events are routed to the sweep handler."""
        mock_handle_eventbridge.return_value = {"statusCode": 200, "body": "{}"}
        event = _sweep_event()
        context = MagicMock()
        context.aws_request_id = "test-request-id"

        result = lambda_handler(event, context)

        assert result["statusCode"] == 200
        mock_handle_eventbridge.assert_called_once_with(event, context)

    @patch("src.lambda_handler.mangum_handler")
    def test_routes_api_gateway_events_to_mangum(self, mock_mangum_handler: Mock) -> None:
        """Test that API Gateway events are routed to Mangum."""
        mock_mangum_handler.return_value = {"statusCode": 200, "body": '{"status": "healthy"}'}
        event = {
            "version": "2.0",
            "requestContext": {
                "http": {"method": "GET", "path": "/health"},
                "requestId": "request-id",
            },
            "rawPath": "/health",
        }
        context = MagicMock()

        result = lambda_handler(event, context)

        assert result["statusCode"] == 200
        mock_mangum_handler.assert_called_once_with(event, context)

    @patch("src.lambda_handler.handle_eventbridge_event")
    def test_returns_500_on_unhandled_error(self, mock_handle_eventbridge: Mock) -> None:
        mock_handle_eventbridge.side_effect = RuntimeError("boom")

        result = lambda_handler(_sweep_event(), MagicMock())

        assert result == {"statusCode": 500, "body": "Internal server error"}
