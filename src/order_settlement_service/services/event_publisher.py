"""Notification events published to EventBridge.

The notification dispatcher subscribes to these events. Publishing is best
effort: a failure is logged and never interrupts settlement or order updates.
"""

import json
import logging
from enum import Enum
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from order_settlement_service.models.order_models import Order
from order_settlement_service.models.timestamps import to_iso, utc_now

logger = logging.getLogger(__name__)

EVENT_SOURCE = "com.restaurant.settlement"


class NotificationEvent(str, Enum):
    """Event types consumed by the notification dispatcher."""

    ORDER_CREATED = "OrderCreated"
    ORDER_STATUS_CHANGED = "OrderStatusChanged"
    PAYMENT_CAPTURED = "PaymentCaptured"
    PAYMENT_FAILED = "PaymentFailed"


class EventPublisher:
    """Publishes notification events to an EventBridge bus.

    With no bus configured the publisher only logs, which is the behaviour
    used locally and in tests.
    """

    def __init__(self, events_client: Any = None, event_bus_name: str | None = None) -> None:
        """Initialize the publisher.

        Args:
            events_client: Boto3 EventBridge client
            event_bus_name: Target bus; publishing is disabled when None
        """
        self.events_client = events_client
        self.event_bus_name = event_bus_name

    @property
    def enabled(self) -> bool:
        return self.events_client is not None and bool(self.event_bus_name)

    def publish(self, event: NotificationEvent, detail: dict[str, Any]) -> bool:
        """Publish one event.

        Returns:
            bool: True if EventBridge accepted the event, False otherwise
        """
        if not self.enabled:
            logger.debug(f"Event publishing disabled, dropping {event.value}")
            return False

        try:
            response = self.events_client.put_events(
                Entries=[
                    {
                        "Source": EVENT_SOURCE,
                        "DetailType": event.value,
                        "Detail": json.dumps(detail),
                        "EventBusName": self.event_bus_name,
                    }
                ]
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to publish {event.value}: {e}")
            return False

        if response.get("FailedEntryCount", 0):
            entry = response.get("Entries", [{}])[0]
            logger.error(f"EventBridge rejected {event.value}: {entry.get('ErrorMessage')}")
            return False

        return True

    def order_event(self, event: NotificationEvent, order: Order, **extra: Any) -> bool:
        """Publish an event describing an order."""
        detail: dict[str, Any] = {
            "order_id": order.order_id,
            "user_id": order.user_id,
            "status": order.status.value,
            "payment_intent_id": order.payment_intent_id,
            "total_amount": order.total_amount,
            "currency": order.currency,
            "occurred_at": to_iso(utc_now()),
        }
        detail.update({key: value for key, value in extra.items() if value is not None})
        return self.publish(event, detail)
