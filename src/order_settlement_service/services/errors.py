"""Exception taxonomy for the settlement service.

Expected business outcomes (insufficient stock, duplicate gateway callbacks,
invalid payment signatures) are returned as typed results and never raised.
The classes below cover infrastructure failures, configuration problems and
programming-level misuse.
"""


class SettlementServiceError(Exception):
    """Base class for all errors raised by the settlement service."""

    retryable = False


class TransientError(SettlementServiceError):
    """Infrastructure failure that is safe to retry for idempotent operations."""

    retryable = True


class StoreUnavailableError(TransientError):
    """The document store rejected or failed a request."""


class StockContentionError(TransientError):
    """Optimistic-lock retries on a stock counter were exhausted."""

    def __init__(self, item_id: str, attempts: int) -> None:
        super().__init__(f"Stock counter for item {item_id} still contended after {attempts} attempts")
        self.item_id = item_id
        self.attempts = attempts


class GatewayTimeoutError(TransientError):
    """The payment gateway did not answer within the configured timeout."""


class GatewayUnavailableError(TransientError):
    """The payment gateway could not be reached or returned a server error."""


class GatewayError(SettlementServiceError):
    """The payment gateway rejected a request (non-retryable)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(ValueError):
    """Required configuration is missing or invalid."""


class OrderNotFoundError(SettlementServiceError):
    """No live order exists with the given identifier."""

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidTransitionError(SettlementServiceError):
    """An order status change is not allowed from the order's current state."""

    def __init__(self, order_id: str, current: str, target: str, reason: str | None = None) -> None:
        message = f"Order {order_id} cannot move from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.order_id = order_id
        self.current = current
        self.target = target
