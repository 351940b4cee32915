"""Timer-driven sweeps over reservations and orders.

Each sweep is a bounded number of query-then-act batches. A reservation or
order that fails is logged and left for the next tick; every individual
transition is guarded by a conditional write, so a sweep racing the settlement
path or another sweep is harmless.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from order_settlement_service.models.order_models import (
    ABANDONED_ORDER_TTL,
    STALE_PICKUP_GRACE,
    OrderStatus,
)
from order_settlement_service.models.reservation_models import RESERVATION_RETENTION
from order_settlement_service.models.timestamps import utc_now
from order_settlement_service.observability.decorators import traced
from order_settlement_service.repositories.order_repository import (
    ORDERS_PER_ARCHIVE_TRANSACTION,
    ArchiveRequest,
    OrderRepository,
)
from order_settlement_service.repositories.reservation_ledger import ReservationLedger
from order_settlement_service.services.errors import SettlementServiceError
from order_settlement_service.services.event_publisher import EventPublisher, NotificationEvent

logger = logging.getLogger(__name__)

STALE_PICKUP_REASON = "stale_pickup"
ABANDONED_REASON = "abandoned"


@dataclass
class SweepReport:
    """Result of one sweep run.

    Attributes:
        task: Sweep that ran
        examined: Records returned by the sweep's queries
        processed: Records this run transitioned, archived or deleted
        failed: Records that raised and were left for the next run
    """

    task: str
    examined: int = 0
    processed: int = 0
    failed: int = 0


class ReservationExpirySweeper:
    """Expires lapsed reservations and garbage-collects old terminal ones."""

    def __init__(
        self,
        ledger: ReservationLedger,
        batch_size: int = 100,
        max_batches: int = 10,
        retention: timedelta = RESERVATION_RETENTION,
    ) -> None:
        """Initialize the sweeper.

        Args:
            ledger: Reservation ledger
            batch_size: Reservations fetched per query
            max_batches: Upper bound on queries per run
            retention: How long terminal reservations are kept past their expiry
        """
        self.ledger = ledger
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.retention = retention

    @traced("sweep.expire_reservations")
    async def run(self, now: datetime | None = None) -> SweepReport:
        """Expire every active reservation whose ``expires_at`` has passed.

        Raises:
            StoreUnavailableError: If the due reservations cannot be queried
        """
        now = now or utc_now()
        report = SweepReport(task="expire_reservations")
        seen: set[str] = set()

        for _ in range(self.max_batches):
            due = [r for r in self.ledger.find_due_for_expiry(now, self.batch_size) if r.reservation_id not in seen]
            if not due:
                break

            for reservation in due:
                seen.add(reservation.reservation_id)
                report.examined += 1
                try:
                    if self.ledger.expire(reservation.reservation_id):
                        report.processed += 1
                except SettlementServiceError as e:
                    report.failed += 1
                    logger.error(f"Failed to expire reservation {reservation.reservation_id}: {e}")

            if len(due) < self.batch_size:
                break

        logger.info(
            f"Reservation expiry sweep: {report.processed} expired, {report.failed} failed, "
            f"{report.examined} examined"
        )
        return report

    @traced("sweep.collect_reservations")
    async def collect_garbage(self, now: datetime | None = None) -> SweepReport:
        """Delete reservations that have been terminal past the retention window.

        Raises:
            StoreUnavailableError: If reservations cannot be queried or deleted
        """
        cutoff = (now or utc_now()) - self.retention
        report = SweepReport(task="collect_reservations")
        seen: set[str] = set()

        for _ in range(self.max_batches):
            ids = [
                r.reservation_id
                for r in self.ledger.find_terminal_before(cutoff, self.batch_size)
                if r.reservation_id not in seen
            ]
            if not ids:
                break

            seen.update(ids)
            report.examined += len(ids)
            report.processed += self.ledger.delete_reservations(ids)

            if len(ids) < self.batch_size:
                break

        logger.info(f"Reservation garbage collection: {report.processed} deleted")
        return report


class _OrderArchiveSweeper:
    """Moves orders stuck in a status past a deadline into a terminal status."""

    task = ""

    def __init__(
        self,
        order_repository: OrderRepository,
        event_publisher: EventPublisher,
        batch_size: int = ORDERS_PER_ARCHIVE_TRANSACTION,
        max_batches: int = 10,
    ) -> None:
        self.order_repository = order_repository
        self.event_publisher = event_publisher
        self.batch_size = batch_size
        self.max_batches = max_batches

    def _sweep(
        self,
        report: SweepReport,
        status: OrderStatus,
        cutoff: datetime,
        target: OrderStatus,
        reason: str,
        now: datetime,
    ) -> None:
        seen: set[str] = set()

        for _ in range(self.max_batches):
            orders = [
                order
                for order in self.order_repository.find_in_status_since(status, cutoff, self.batch_size)
                if order.order_id not in seen
            ]
            if not orders:
                break

            seen.update(order.order_id for order in orders)
            report.examined += len(orders)
            requests = [
                ArchiveRequest(order=order, target=target, changed_at=now, reason=reason)
                for order in orders
            ]
            archived = self.order_repository.archive_many(requests)
            report.processed += len(archived)
            report.failed += len(orders) - len(archived)

            for order in archived:
                self.event_publisher.order_event(
                    NotificationEvent.ORDER_STATUS_CHANGED, order, previous_status=status.value
                )

            if len(orders) < self.batch_size:
                break


class StalePickupSweeper(_OrderArchiveSweeper):
    """Terminates orders left in ``Pick Up`` longer than the grace period."""

    task = "terminate_stale_pickups"

    def __init__(
        self,
        order_repository: OrderRepository,
        event_publisher: EventPublisher,
        grace: timedelta = STALE_PICKUP_GRACE,
        **kwargs: int,
    ) -> None:
        super().__init__(order_repository, event_publisher, **kwargs)
        self.grace = grace

    @traced("sweep.terminate_stale_pickups")
    async def run(self, now: datetime | None = None) -> SweepReport:
        """Terminate and archive stale pickups.

        Raises:
            StoreUnavailableError: If orders cannot be queried or archived
        """
        now = now or utc_now()
        report = SweepReport(task=self.task)
        self._sweep(
            report, OrderStatus.PICK_UP, now - self.grace, OrderStatus.TERMINATED, STALE_PICKUP_REASON, now
        )
        logger.info(f"Stale pickup sweep: terminated {report.processed} orders")
        return report


class AbandonedOrderSweeper(_OrderArchiveSweeper):
    """Expires orders that sat in ``Placed`` or ``Pick Up`` past the order TTL."""

    task = "expire_abandoned_orders"

    def __init__(
        self,
        order_repository: OrderRepository,
        event_publisher: EventPublisher,
        ttl: timedelta = ABANDONED_ORDER_TTL,
        **kwargs: int,
    ) -> None:
        super().__init__(order_repository, event_publisher, **kwargs)
        self.ttl = ttl

    @traced("sweep.expire_abandoned_orders")
    async def run(self, now: datetime | None = None) -> SweepReport:
        """Expire and archive abandoned orders.

        Raises:
            StoreUnavailableError: If orders cannot be queried or archived
        """
        now = now or utc_now()
        report = SweepReport(task=self.task)
        for status in (OrderStatus.PLACED, OrderStatus.PICK_UP):
            self._sweep(report, status, now - self.ttl, OrderStatus.EXPIRED, ABANDONED_REASON, now)
        logger.info(f"Abandoned order sweep: expired {report.processed} orders")
        return report
