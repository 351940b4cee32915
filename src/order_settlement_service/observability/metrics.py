"""Custom metrics for the order settlement service."""

from opentelemetry import metrics

# Get meter for settlement service
meter = metrics.get_meter("settlement-svc")

reservation_created_counter = meter.create_counter(
    name="stock_reservation_created_total",
    description="Total number of stock reservations created",
    unit="1",
)

reservation_rejected_counter = meter.create_counter(
    name="stock_reservation_rejected_total",
    description="Total number of checkout attempts rejected by stock checks, by reason",
    unit="1",
)

reservation_transition_counter = meter.create_counter(
    name="stock_reservation_transition_total",
    description="Reservations leaving the active state, by terminal status",
    unit="1",
)

stock_counter_drift_counter = meter.create_counter(
    name="stock_counter_drift_total",
    description="Counter mutations rejected because stored counters were too low",
    unit="1",
)

settlement_counter = meter.create_counter(
    name="payment_settlement_total",
    description="Payment signals processed, by event and outcome",
    unit="1",
)

order_archived_counter = meter.create_counter(
    name="order_archived_total",
    description="Orders moved to history, by terminal status",
    unit="1",
)

# Reconciliation queue depth gauge
reconciliation_queue_depth = meter.create_up_down_counter(
    name="settlement_reconciliation_queue_depth",
    description="Current number of unresolved settlement errors",
    unit="1",
)

# Gateway API response time histogram
gateway_api_response_time = meter.create_histogram(
    name="payment_gateway_response_time_seconds",
    description="Response time for payment gateway calls",
    unit="s",
)


def record_reservation_created(line_count: int) -> None:  # noqa: ARG001
    """Record a successful reservation.

    Args:
        line_count: Number of item lines reserved
    """
    reservation_created_counter.add(1)


def record_reservation_rejected(reason: str) -> None:
    """Record a rejected reservation attempt.

    Args:
        reason: Rejection reason (e.g., "insufficient_stock")
    """
    reservation_rejected_counter.add(1, {"reason": reason})


def record_reservation_transition(status: str) -> None:
    reservation_transition_counter.add(1, {"status": status})


def record_stock_counter_drift(item_id: str, operation: str) -> None:  # noqa: ARG001
    """Record a release or commit rejected by the stored counters.

    Args:
        item_id: Menu item whose counters drifted (logged, not used as a label)
        operation: "release" or "commit"
    """
    stock_counter_drift_counter.add(1, {"operation": operation})


def record_settlement(event: str, outcome: str) -> None:
    """Record a processed payment signal.

    Args:
        event: Gateway event (e.g., "payment.captured")
        outcome: Settlement outcome (e.g., "settled", "duplicate")
    """
    settlement_counter.add(1, {"event": event, "outcome": outcome})


def record_order_archived(status: str) -> None:
    order_archived_counter.add(1, {"status": status})


def record_reconciliation_queue_change(change: int) -> None:
    """Record a change in the reconciliation queue depth.

    Args:
        change: Change in error count (positive for additions, negative for resolutions)
    """
    reconciliation_queue_depth.add(change)


def record_gateway_api_call(operation: str, duration_seconds: float) -> None:
    """Record a payment gateway API call.

    Args:
        operation: The operation performed (e.g., "create_order", "fetch_payment")
        duration_seconds: Duration in seconds
    """
    gateway_api_response_time.record(duration_seconds, {"operation": operation})
