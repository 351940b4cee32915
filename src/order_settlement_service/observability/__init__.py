"""OpenTelemetry instrumentation and observability utilities."""

from order_settlement_service.observability.config import configure_logging, setup_observability
from order_settlement_service.observability.decorators import traced

__all__ = ["setup_observability", "configure_logging", "traced"]
