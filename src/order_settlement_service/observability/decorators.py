"""OpenTelemetry tracing decorators."""

import functools
import inspect
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Span

# Type variable for generic function signatures
F = TypeVar("F", bound=Callable[..., Any])


def traced(
    span_name: str | None = None,
    service_name: str = "settlement-svc",
    id_arguments: Iterable[str] = (),
) -> Callable[[F], F]:
    """Decorator to add OpenTelemetry tracing to a function.

    Creates a new span for the decorated function with automatic error tracking.
    Async functions are supported. Identifier arguments named in
    ``id_arguments`` are copied onto the span so a settlement can be followed
    across handlers by its payment intent, payment or order id.

    Args:
        span_name: Name for the span (defaults to function name if not provided)
        service_name: Service name for span attributes
        id_arguments: Names of keyword or positional arguments to record

    Returns:
        Decorated function with tracing

    Example:
        @traced("settlement.payment_captured", id_arguments=("payment_intent_id",))
        async def on_payment_captured(self, payment_intent_id: str, ...) -> SettlementOutcome:
            ...
    """
    recorded = tuple(id_arguments)

    def decorator(func: F) -> F:
        name = span_name or func.__qualname__
        tracer = trace.get_tracer(service_name)
        signature = inspect.signature(func)

        def start(span: Span, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
            span.set_attribute("service.name", service_name)
            if span_name:
                span.set_attribute("function.name", func.__name__)
            if recorded:
                bound = signature.bind_partial(*args, **kwargs).arguments
                for argument in recorded:
                    value = bound.get(argument)
                    if value is not None:
                        span.set_attribute(argument, str(value))

        def fail(span: Span, error: Exception) -> None:
            span.set_attribute("success", False)
            span.set_attribute("error.type", type(error).__name__)
            span.set_attribute("error.message", str(error))
            span.record_exception(error)

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with tracer.start_as_current_span(name) as span:
                start(span, args, kwargs)
                try:
                    result = await func(*args, **kwargs)
                    span.set_attribute("success", True)
                    return result
                except Exception as e:
                    fail(span, e)
                    raise

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with tracer.start_as_current_span(name) as span:
                start(span, args, kwargs)
                try:
                    result = func(*args, **kwargs)
                    span.set_attribute("success", True)
                    return result
                except Exception as e:
                    fail(span, e)
                    raise

        if inspect.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator
