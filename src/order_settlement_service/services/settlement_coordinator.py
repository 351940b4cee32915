"""Settlement coordinator: applies payment gateway signals to reservations and orders.

The payment record is always written first. Later steps (ledger transition,
order update, refund) are idempotent, so any of them can be re-run from the
payment record. A step that keeps failing with a transient error is retried a
bounded number of times and then queued for reconciliation instead of being
dropped.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from order_settlement_service.adapters.base_adapter import PaymentGateway
from order_settlement_service.models.order_models import Order
from order_settlement_service.models.payment_models import (
    GatewayPayment,
    PaymentStatus,
    RefundStatus,
)
from order_settlement_service.models.reservation_models import ReservationStatus
from order_settlement_service.models.timestamps import utc_now
from order_settlement_service.observability.decorators import traced
from order_settlement_service.observability.metrics import record_settlement
from order_settlement_service.repositories.payment_repository import PaymentRepository
from order_settlement_service.repositories.reservation_ledger import ReservationLedger
from order_settlement_service.services.errors import (
    GatewayError,
    SettlementServiceError,
    TransientError,
)
from order_settlement_service.services.event_publisher import EventPublisher, NotificationEvent
from order_settlement_service.services.order_service import OrderService
from order_settlement_service.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

PAYMENT_FAILED_REASON = "payment_failed"
RESERVATION_LAPSED_REASON = "reservation_lapsed"


class SettlementOutcome(str, Enum):
    """Result of processing one payment signal."""

    SETTLED = "settled"
    AUTHORIZED = "authorized"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"
    DUPLICATE = "duplicate"
    SIGNATURE_INVALID = "signature_invalid"
    IGNORED = "ignored"
    RECONCILIATION_PENDING = "reconciliation_pending"


class _StepQueued(Exception):
    """A settlement step exhausted its retries and was queued for reconciliation."""


class SettlementCoordinator:
    """Coordinates payment signals with the reservation ledger and orders.

    Entry points are the checkout verification call, gateway webhooks and
    reconciliation retries. Each signal is idempotent: replaying a webhook or
    re-running settlement from a payment record never applies stock or order
    effects twice.
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        payment_repository: PaymentRepository,
        order_service: OrderService,
        gateway: PaymentGateway,
        event_publisher: EventPublisher,
        reconciliation_service: ReconciliationService,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1,
    ) -> None:
        """Initialize the SettlementCoordinator.

        Args:
            ledger: Reservation ledger
            payment_repository: Repository for payment records
            order_service: Service owning order state
            gateway: Payment gateway adapter
            event_publisher: Publisher for notification events
            reconciliation_service: Queue for steps that keep failing
            max_attempts: Attempts per settlement step on transient errors
            retry_delay_seconds: Seconds to wait between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.ledger = ledger
        self.payment_repository = payment_repository
        self.order_service = order_service
        self.gateway = gateway
        self.event_publisher = event_publisher
        self.reconciliation_service = reconciliation_service
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds

    @traced("settlement.payment_authorized", id_arguments=("payment_intent_id", "payment_id"))
    async def on_payment_authorized(
        self,
        payment_intent_id: str,
        payment_id: str,
        amount: int,
        method: str | None = None,
        currency: str = "INR",
    ) -> SettlementOutcome:
        """Record an authorized payment. Capture follows asynchronously.

        Raises:
            StoreUnavailableError: If the payment record cannot be written
        """
        recorded = self.payment_repository.record_authorized(
            payment_id, payment_intent_id, amount, method, utc_now(), currency
        )
        outcome = SettlementOutcome.AUTHORIZED if recorded else SettlementOutcome.DUPLICATE
        record_settlement("payment.authorized", outcome.value)
        return outcome

    @traced("settlement.payment_captured", id_arguments=("payment_intent_id", "payment_id"))
    async def on_payment_captured(
        self,
        payment_intent_id: str,
        payment_id: str,
        amount: int,
        method: str | None = None,
        currency: str = "INR",
    ) -> SettlementOutcome:
        """Settle a captured payment.

        Records the capture, completes the reservation (committing its stock)
        and confirms the order. A capture for a reservation that already
        expired or failed terminates the order and refunds the payment once.

        Raises:
            StoreUnavailableError: If the payment record cannot be written
        """
        outcome = await self._captured(
            payment_intent_id, payment_id, amount, method, currency, queue_failures=True
        )
        record_settlement("payment.captured", outcome.value)
        return outcome

    @traced("settlement.payment_failed", id_arguments=("payment_intent_id", "payment_id"))
    async def on_payment_failed(
        self,
        payment_intent_id: str,
        payment_id: str,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> SettlementOutcome:
        """Record a failed payment, release the reservation and terminate the order.

        Raises:
            StoreUnavailableError: If the payment record cannot be written
        """
        outcome = await self._failed(
            payment_intent_id, payment_id, error_code, error_description, queue_failures=True
        )
        record_settlement("payment.failed", outcome.value)
        return outcome

    @traced("settlement.verify", id_arguments=("payment_intent_id", "payment_id"))
    async def verify_and_settle(
        self, payment_intent_id: str, payment_id: str, signature: str
    ) -> SettlementOutcome:
        """Verify the checkout callback signature and settle from the gateway's state.

        Returns:
            SettlementOutcome: SIGNATURE_INVALID on mismatch, otherwise the
            outcome of applying the fetched payment status

        Raises:
            GatewayTimeoutError: If the gateway did not answer in time; the
                reservation is left untouched for the webhook to settle
            GatewayUnavailableError: If the gateway could not be reached
            GatewayError: If the gateway rejected the lookup
        """
        if not self.gateway.verify_payment_signature(payment_intent_id, payment_id, signature):
            logger.warning(
                f"Invalid payment signature for intent {payment_intent_id}, payment {payment_id}"
            )
            await self.on_payment_failed(
                payment_intent_id,
                payment_id,
                error_code="SIGNATURE_INVALID",
                error_description="payment signature mismatch",
            )
            record_settlement("verify", SettlementOutcome.SIGNATURE_INVALID.value)
            return SettlementOutcome.SIGNATURE_INVALID

        payment = await self.gateway.fetch_payment(payment_id)
        if payment.order_id is not None and payment.order_id != payment_intent_id:
            raise GatewayError(
                f"Payment {payment_id} belongs to gateway order {payment.order_id}, "
                f"not {payment_intent_id}"
            )

        return await self._apply_payment(payment_intent_id, payment)

    async def handle_webhook(self, raw_body: bytes, signature: str) -> SettlementOutcome:
        """Verify and dispatch a gateway webhook.

        Args:
            raw_body: Request body exactly as received
            signature: Value of the signature header

        Returns:
            SettlementOutcome: SIGNATURE_INVALID, IGNORED for unhandled events,
            otherwise the outcome of the dispatched signal

        Raises:
            ValueError: If the signed body is not a well-formed event
            StoreUnavailableError: If the payment record cannot be written
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            record_settlement("webhook", SettlementOutcome.SIGNATURE_INVALID.value)
            return SettlementOutcome.SIGNATURE_INVALID

        try:
            envelope: dict[str, Any] = json.loads(raw_body)
        except ValueError as e:
            raise ValueError("Webhook body is not valid JSON") from e

        event = envelope.get("event")
        payload = envelope.get("payload") or {}
        entity = (payload.get("payment") or {}).get("entity")
        logger.info(f"Webhook received: {event}")

        if event not in ("payment.authorized", "payment.captured", "payment.failed", "order.paid"):
            logger.info(f"Ignoring unhandled webhook event {event}")
            return SettlementOutcome.IGNORED

        if entity is None:
            if event == "order.paid":
                order_entity = (payload.get("order") or {}).get("entity") or {}
                logger.info(f"Order {order_entity.get('id')} paid without payment entity, ignoring")
                return SettlementOutcome.IGNORED
            raise ValueError(f"Webhook event {event} has no payment entity")

        payment = GatewayPayment.model_validate(entity)
        if payment.order_id is None:
            raise ValueError(f"Payment {payment.id} in webhook has no order id")

        if event == "payment.authorized":
            return await self.on_payment_authorized(
                payment.order_id, payment.id, payment.amount, payment.method, payment.currency
            )
        if event == "payment.failed":
            return await self.on_payment_failed(
                payment.order_id, payment.id, payment.error_code, payment.error_description
            )
        return await self.on_payment_captured(
            payment.order_id, payment.id, payment.amount, payment.method, payment.currency
        )

    async def reconcile_payment(self, payment_id: str) -> SettlementOutcome:
        """Re-run settlement from a stored payment record.

        Transient failures are raised instead of being queued again.

        Raises:
            SettlementServiceError: If there is no record or a step still fails
        """
        record = self.payment_repository.get(payment_id)
        if record is None:
            raise SettlementServiceError(f"No payment record for payment {payment_id}")

        if record.status is PaymentStatus.CAPTURED:
            return await self._captured(
                record.payment_intent_id,
                payment_id,
                record.amount,
                record.method,
                record.currency,
                queue_failures=False,
            )
        if record.status is PaymentStatus.FAILED:
            return await self._failed(
                record.payment_intent_id,
                payment_id,
                record.error_code,
                record.error_description,
                queue_failures=False,
            )
        return SettlementOutcome.AUTHORIZED

    async def _apply_payment(self, payment_intent_id: str, payment: GatewayPayment) -> SettlementOutcome:
        if payment.status == "captured" or payment.captured:
            return await self.on_payment_captured(
                payment_intent_id, payment.id, payment.amount, payment.method, payment.currency
            )
        if payment.status == "failed":
            return await self.on_payment_failed(
                payment_intent_id, payment.id, payment.error_code, payment.error_description
            )
        if payment.status == "authorized":
            return await self.on_payment_authorized(
                payment_intent_id, payment.id, payment.amount, payment.method, payment.currency
            )

        logger.info(f"Payment {payment.id} is {payment.status}, nothing to settle yet")
        return SettlementOutcome.PENDING

    async def _captured(
        self,
        payment_intent_id: str,
        payment_id: str,
        amount: int,
        method: str | None,
        currency: str,
        queue_failures: bool,
    ) -> SettlementOutcome:
        now = utc_now()
        self.payment_repository.record_captured(
            payment_id, payment_intent_id, amount, method, now, currency
        )

        def step(stage: str, operation: Callable[[], Any]) -> Any:
            return self._run_step(stage, payment_intent_id, payment_id, operation, queue_failures)

        try:
            completed = await step("complete_reservation", lambda: self.ledger.complete(payment_intent_id))
            reservation = (
                None if completed else await step("read_reservation", lambda: self.ledger.get(payment_intent_id))
            )

            if completed or (reservation is not None and reservation.status is ReservationStatus.COMPLETED):
                order = await step(
                    "confirm_order",
                    lambda: self.order_service.confirm_payment(payment_intent_id, payment_id, method, now),
                )
                if order is not None and order.payment_id not in (None, payment_id):
                    logger.error(
                        f"Payment {payment_id} captured for intent {payment_intent_id} already "
                        f"settled by payment {order.payment_id}; refunding"
                    )
                    return await self._refund(payment_intent_id, payment_id, amount, queue_failures)

                if not completed:
                    logger.info(f"Duplicate capture signal for intent {payment_intent_id}")
                    return SettlementOutcome.DUPLICATE

                self._publish_payment(NotificationEvent.PAYMENT_CAPTURED, payment_intent_id, payment_id, order)
                logger.info(f"Payment {payment_id} settled intent {payment_intent_id}")
                return SettlementOutcome.SETTLED

            state = reservation.status.value if reservation else "missing"
            logger.warning(
                f"Payment {payment_id} captured but reservation {payment_intent_id} is {state}; "
                "terminating order and refunding"
            )
            await step(
                "terminate_order",
                lambda: self.order_service.terminate_for_payment(payment_intent_id, RESERVATION_LAPSED_REASON),
            )
            return await self._refund(payment_intent_id, payment_id, amount, queue_failures)

        except _StepQueued:
            return SettlementOutcome.RECONCILIATION_PENDING

    async def _failed(
        self,
        payment_intent_id: str,
        payment_id: str,
        error_code: str | None,
        error_description: str | None,
        queue_failures: bool,
    ) -> SettlementOutcome:
        self.payment_repository.record_failed(
            payment_id, payment_intent_id, utc_now(), error_code, error_description
        )
        reason = error_description or error_code or PAYMENT_FAILED_REASON

        def step(stage: str, operation: Callable[[], Any]) -> Any:
            return self._run_step(stage, payment_intent_id, payment_id, operation, queue_failures)

        try:
            failed = await step("fail_reservation", lambda: self.ledger.fail(payment_intent_id, reason))
            if not failed:
                reservation = await step("read_reservation", lambda: self.ledger.get(payment_intent_id))
                if reservation is not None and reservation.status is ReservationStatus.COMPLETED:
                    logger.info(
                        f"Payment {payment_id} failed after intent {payment_intent_id} settled, "
                        "leaving order untouched"
                    )
                    return SettlementOutcome.DUPLICATE

            order = await step(
                "terminate_order",
                lambda: self.order_service.terminate_for_payment(payment_intent_id, PAYMENT_FAILED_REASON),
            )
        except _StepQueued:
            return SettlementOutcome.RECONCILIATION_PENDING

        if not failed and order is None:
            return SettlementOutcome.DUPLICATE

        self._publish_payment(
            NotificationEvent.PAYMENT_FAILED, payment_intent_id, payment_id, order, reason=reason
        )
        return SettlementOutcome.FAILED

    async def _refund(
        self, payment_intent_id: str, payment_id: str, amount: int, queue_failures: bool
    ) -> SettlementOutcome:
        claimed = await self._run_step(
            "claim_refund",
            payment_intent_id,
            payment_id,
            lambda: self.payment_repository.claim_refund(payment_id),
            queue_failures,
        )
        if not claimed:
            return SettlementOutcome.DUPLICATE

        try:
            refund = await self.gateway.refund(payment_id, amount or None)
        except SettlementServiceError as e:
            self.payment_repository.finish_refund(payment_id, RefundStatus.FAILED)
            if not queue_failures:
                raise
            await self.reconciliation_service.record_error(payment_intent_id, payment_id, "refund", str(e))
            return SettlementOutcome.RECONCILIATION_PENDING

        self.payment_repository.finish_refund(payment_id, RefundStatus.PROCESSED, refund.id)
        logger.info(f"Payment {payment_id} refunded as {refund.id}")
        return SettlementOutcome.REFUNDED

    async def _run_step(
        self,
        stage: str,
        payment_intent_id: str,
        payment_id: str,
        operation: Callable[[], Any],
        queue_failures: bool,
    ) -> Any:
        """Run one idempotent settlement step with bounded retries.

        Raises:
            _StepQueued: If retries ran out and the failure was queued
            TransientError: If retries ran out and ``queue_failures`` is False
        """
        attempt = 1
        while True:
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                return result

            except TransientError as e:
                logger.warning(
                    f"Settlement step {stage} for intent {payment_intent_id} failed "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt >= self.max_attempts:
                    if not queue_failures:
                        raise
                    await self.reconciliation_service.record_error(
                        payment_intent_id, payment_id, stage, str(e)
                    )
                    raise _StepQueued(stage) from e

            attempt += 1
            await asyncio.sleep(self.retry_delay_seconds)

    def _publish_payment(
        self,
        event: NotificationEvent,
        payment_intent_id: str,
        payment_id: str,
        order: Order | None,
        reason: str | None = None,
    ) -> None:
        if order is not None:
            self.event_publisher.order_event(event, order, payment_id=payment_id, reason=reason)
            return

        detail: dict[str, Any] = {"payment_intent_id": payment_intent_id, "payment_id": payment_id}
        if reason is not None:
            detail["reason"] = reason
        self.event_publisher.publish(event, detail)
