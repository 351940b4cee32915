"""Reconciliation queue for settlement steps that failed after the payment was recorded."""

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from order_settlement_service.models.payment_models import SettlementError
from order_settlement_service.models.timestamps import utc_now
from order_settlement_service.observability.metrics import record_reconciliation_queue_change
from order_settlement_service.repositories.settlement_error_repository import (
    SettlementErrorRepository,
)
from order_settlement_service.services.errors import SettlementServiceError

if TYPE_CHECKING:
    from order_settlement_service.services.settlement_coordinator import SettlementCoordinator

logger = logging.getLogger(__name__)


@dataclass
class RetryResult:
    """Result of retrying one queued settlement error.

    Attributes:
        error_id: The queued error
        resolved: Whether settlement completed this time
        message: Human-readable summary for the admin dashboard
    """

    error_id: str
    resolved: bool
    message: str


class ReconciliationService:
    """Service for recording and retrying failed settlement steps.

    Every entry carries the payment id, so a retry re-runs settlement from the
    stored payment record. Retries are triggered manually through the admin API.
    """

    def __init__(self, error_repository: SettlementErrorRepository) -> None:
        """Initialize the ReconciliationService.

        Args:
            error_repository: Repository for storing settlement errors
        """
        self.error_repository = error_repository

    async def record_error(
        self,
        payment_intent_id: str,
        payment_id: str | None,
        stage: str,
        error_details: str,
    ) -> str:
        """Record a failed settlement step.

        Args:
            payment_intent_id: Intent whose settlement is incomplete
            payment_id: Payment whose record drives the retry
            stage: Settlement step that failed (e.g., "complete_reservation")
            error_details: Description of the error

        Returns:
            The error ID

        Raises:
            StoreUnavailableError: If the error cannot be stored
        """
        error = SettlementError(
            error_id=f"err_{uuid.uuid4().hex[:12]}",
            created_at=utc_now(),
            payment_intent_id=payment_intent_id,
            payment_id=payment_id,
            stage=stage,
            error_details=error_details,
        )
        self.error_repository.save_error(error)
        record_reconciliation_queue_change(1)

        logger.error(
            f"Settlement of intent {payment_intent_id} (payment {payment_id}) queued for "
            f"reconciliation at stage {stage}: {error_details}"
        )
        return error.error_id

    async def get_error(self, error_id: str) -> SettlementError | None:
        return self.error_repository.get_error(error_id)

    async def list_open_errors(self, limit: int = 50) -> list[SettlementError]:
        """List unresolved errors, oldest first."""
        return self.error_repository.list_open_errors(limit=limit)

    async def retry_error(
        self, error_id: str, coordinator: "SettlementCoordinator"
    ) -> RetryResult | None:
        """Re-run settlement for a queued error.

        Increments the retry count and marks the error resolved when settlement
        completes.

        Args:
            error_id: The error ID to retry
            coordinator: Coordinator that re-runs settlement from the payment record

        Returns:
            RetryResult, or None if no such error exists
        """
        error = self.error_repository.get_error(error_id)
        if error is None:
            return None

        if error.resolved:
            return RetryResult(error_id=error_id, resolved=True, message="Already resolved")

        if error.payment_id is None:
            return RetryResult(
                error_id=error_id, resolved=False, message="No payment recorded for this error"
            )

        logger.info(f"Retrying settlement error {error_id} for payment {error.payment_id}")

        try:
            outcome = await coordinator.reconcile_payment(error.payment_id)
            resolved = True
            message = f"Settlement re-run finished with outcome {outcome.value}"
        except SettlementServiceError as e:
            resolved = False
            message = f"Retry failed: {e}"

        self.error_repository.update_retry(error_id, error.retry_count + 1, resolved)
        if resolved:
            record_reconciliation_queue_change(-1)

        return RetryResult(error_id=error_id, resolved=resolved, message=message)
