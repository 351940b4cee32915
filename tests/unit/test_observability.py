"""Unit tests for tracing decorators."""

from typing import Any
from unittest.mock import MagicMock, Mock, patch

import pytest

from order_settlement_service.observability.decorators import traced


def _span(mock_get_tracer: Mock) -> MagicMock:
    span: MagicMock = mock_get_tracer.return_value.start_as_current_span.return_value.__enter__.return_value
    return span


@pytest.mark.unit
class TestTracedDecorator:
    """Test suite for the traced decorator."""

    @patch("order_settlement_service.observability.decorators.trace.get_tracer")
    def test_records_identifier_arguments(self, mock_get_tracer: Mock) -> None:
        @traced("settlement.payment_captured", id_arguments=("payment_intent_id", "payment_id"))
        def capture(payment_intent_id: str, payment_id: str | None = None) -> str:
            return "settled"

        assert capture("order_intent_1", payment_id="pay_1") == "settled"

        mock_get_tracer.return_value.start_as_current_span.assert_called_once_with(
            "settlement.payment_captured"
        )
        span = _span(mock_get_tracer)
        span.set_attribute.assert_any_call("payment_intent_id", "order_intent_1")
        span.set_attribute.assert_any_call("payment_id", "pay_1")
        span.set_attribute.assert_any_call("success", True)

    @patch("order_settlement_service.observability.decorators.trace.get_tracer")
    def test_skips_missing_identifiers(self, mock_get_tracer: Mock) -> None:
        @traced(id_arguments=("payment_id",))
        def capture(payment_intent_id: str, payment_id: str | None = None) -> None:
            return None

        capture("order_intent_1")

        recorded = [call.args[0] for call in _span(mock_get_tracer).set_attribute.call_args_list]
        assert "payment_id" not in recorded
        mock_get_tracer.return_value.start_as_current_span.assert_called_once_with(
            capture.__qualname__
        )

    @pytest.mark.asyncio
    @patch("order_settlement_service.observability.decorators.trace.get_tracer")
    async def test_async_error_recorded_and_raised(self, mock_get_tracer: Mock) -> None:
        error = RuntimeError("gateway down")

        @traced("checkout.start")
        async def start_checkout(**_kwargs: Any) -> None:
            raise error

        with pytest.raises(RuntimeError, match="gateway down"):
            await start_checkout(user_id="user_42")

        span = _span(mock_get_tracer)
        span.set_attribute.assert_any_call("success", False)
        span.set_attribute.assert_any_call("error.type", "RuntimeError")
        span.record_exception.assert_called_once_with(error)
