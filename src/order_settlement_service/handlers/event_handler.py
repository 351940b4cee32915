"""EventBridge handler for scheduled sweep events."""

import logging
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from order_settlement_service.services.errors import SettlementServiceError
from order_settlement_service.services.sweepers import (
    AbandonedOrderSweeper,
    ReservationExpirySweeper,
    StalePickupSweeper,
    SweepReport,
)

logger = logging.getLogger(__name__)

SWEEP_DETAIL_TYPE = "SweepRequested"


class SweepTask(str, Enum):
    """Sweeps that can be triggered by a schedule or an admin."""

    EXPIRE_RESERVATIONS = "expire_reservations"
    COLLECT_RESERVATIONS = "collect_reservations"
    TERMINATE_STALE_PICKUPS = "terminate_stale_pickups"
    EXPIRE_ABANDONED_ORDERS = "expire_abandoned_orders"


class SweepRequestedEvent(BaseModel):
    """Detail of a ``SweepRequested`` event.

    Attributes:
        task: Sweep to run
    """

    task: SweepTask


def parse_sweep_event(event: dict[str, Any]) -> SweepRequestedEvent | None:
    """Parse an EventBridge event into a SweepRequestedEvent.

    Args:
        event: Raw EventBridge event dictionary

    Returns:
        SweepRequestedEvent if parsing succeeds, None otherwise
    """
    if event.get("detail-type") != SWEEP_DETAIL_TYPE:
        logger.error(f"Unsupported event type: {event.get('source')}/{event.get('detail-type')}")
        return None

    try:
        return SweepRequestedEvent(**(event.get("detail") or {}))
    except (ValidationError, TypeError) as e:
        logger.error(f"Failed to parse sweep event: {e}")
        return None


class SweepEventHandler:
    """Runs sweeps requested by the EventBridge schedule.

    Each schedule tick is independent: a failed sweep is retried by the next
    tick, so failures are reported in the response instead of raised.
    """

    def __init__(
        self,
        expiry_sweeper: ReservationExpirySweeper,
        stale_pickup_sweeper: StalePickupSweeper,
        abandoned_order_sweeper: AbandonedOrderSweeper,
    ) -> None:
        self.expiry_sweeper = expiry_sweeper
        self.stale_pickup_sweeper = stale_pickup_sweeper
        self.abandoned_order_sweeper = abandoned_order_sweeper

    async def run_task(self, task: SweepTask, now: datetime | None = None) -> SweepReport:
        """Run one sweep.

        Raises:
            StoreUnavailableError: If the sweep could not query its records
        """
        logger.info(f"Running sweep {task.value}")

        if task is SweepTask.EXPIRE_RESERVATIONS:
            return await self.expiry_sweeper.run(now)
        if task is SweepTask.COLLECT_RESERVATIONS:
            return await self.expiry_sweeper.collect_garbage(now)
        if task is SweepTask.TERMINATE_STALE_PICKUPS:
            return await self.stale_pickup_sweeper.run(now)
        return await self.abandoned_order_sweeper.run(now)

    async def handle_eventbridge_event(
        self, event: dict[str, Any], _context: Any
    ) -> dict[str, Any]:
        """Lambda handler for EventBridge sweep events.

        Args:
            event: EventBridge event dictionary
            _context: Lambda context object (unused)

        Returns:
            Dictionary with statusCode and body for Lambda response
        """
        sweep_event = parse_sweep_event(event)
        if sweep_event is None:
            return {
                "statusCode": 400,
                "body": "Invalid event format",
            }

        try:
            report = await self.run_task(sweep_event.task)
        except SettlementServiceError as e:
            logger.error(f"Sweep {sweep_event.task.value} failed: {e}")
            return {
                "statusCode": 500,
                "body": f"Sweep {sweep_event.task.value} failed: {e}",
            }

        return {
            "statusCode": 200,
            "body": asdict(report),
        }
