"""Order service: the order status state machine.

Non-terminal transitions are conditional updates guarded by the status the
order was read in. Transitions into a terminal status archive the order in the
same transaction.
"""

import logging
import uuid
from datetime import datetime

from order_settlement_service.models.order_models import (
    Order,
    OrderItem,
    OrderStatus,
    can_transition,
)
from order_settlement_service.models.timestamps import utc_now
from order_settlement_service.observability.decorators import traced
from order_settlement_service.repositories.order_repository import ArchiveRequest, OrderRepository
from order_settlement_service.services.errors import (
    InvalidTransitionError,
    OrderNotFoundError,
    SettlementServiceError,
)
from order_settlement_service.services.event_publisher import EventPublisher, NotificationEvent

logger = logging.getLogger(__name__)


class OrderService:
    """Service for creating orders and moving them through their lifecycle.

    Kitchen staff drive Placed -> Cooking -> Cooked -> Pick Up -> PickedUp;
    the settlement coordinator confirms payment and terminates orders whose
    payment failed; sweepers terminate or expire neglected orders.
    """

    def __init__(self, order_repository: OrderRepository, event_publisher: EventPublisher) -> None:
        """Initialize the OrderService.

        Args:
            order_repository: Repository for live and archived orders
            event_publisher: Publisher for notification events
        """
        self.order_repository = order_repository
        self.event_publisher = event_publisher

    async def place_order(
        self,
        user_id: str,
        items: list[OrderItem],
        total_amount: int,
        currency: str,
        payment_intent_id: str,
        now: datetime | None = None,
    ) -> Order:
        """Create a ``Placed`` order awaiting payment.

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        created_at = now or utc_now()
        order = Order(
            order_id=f"ord_{uuid.uuid4().hex[:16]}",
            user_id=user_id,
            items=items,
            total_amount=total_amount,
            currency=currency,
            status=OrderStatus.PLACED,
            payment_intent_id=payment_intent_id,
            created_at=created_at,
            status_updated_at=created_at,
        )

        if not self.order_repository.create(order):
            raise SettlementServiceError(f"Order id {order.order_id} already in use")

        logger.info(f"Order {order.order_id} placed for user {user_id}, intent {payment_intent_id}")
        self.event_publisher.order_event(NotificationEvent.ORDER_CREATED, order)
        return order

    async def get_order(self, order_id: str) -> Order:
        """Get a live order.

        Raises:
            OrderNotFoundError: If no live order has this id
        """
        order = self.order_repository.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def find_order(self, order_id: str) -> Order:
        """Get an order, falling back to its archived copy once it is terminal.

        Raises:
            OrderNotFoundError: If the order is neither live nor archived
        """
        order = self.order_repository.get(order_id) or self.order_repository.get_archived(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @traced("order.transition", id_arguments=("order_id",))
    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Order:
        """Move an order to ``target``.

        Args:
            order_id: Live order identifier
            target: Requested status
            reason: Termination reason, recorded for terminal transitions
            now: Transition time (defaults to the current time)

        Returns:
            Order: The order after the transition (the archived copy for terminal states)

        Raises:
            OrderNotFoundError: If no live order has this id
            InvalidTransitionError: If the state machine forbids the change or
                the order changed concurrently
        """
        order = await self.get_order(order_id)
        changed_at = now or utc_now()

        if not can_transition(order.status, target):
            raise InvalidTransitionError(order_id, order.status.value, target.value)

        if target is OrderStatus.COOKING and not order.payment_captured:
            raise InvalidTransitionError(
                order_id, order.status.value, target.value, reason="payment not captured"
            )

        if target.is_terminal:
            archived = self.order_repository.archive(
                ArchiveRequest(order=order, target=target, changed_at=changed_at, reason=reason)
            )
            if archived is None:
                raise InvalidTransitionError(
                    order_id, order.status.value, target.value, reason="order changed concurrently"
                )
            self.event_publisher.order_event(
                NotificationEvent.ORDER_STATUS_CHANGED, archived, previous_status=order.status.value
            )
            return archived

        if not self.order_repository.update_status(order_id, order.status, target, changed_at):
            raise InvalidTransitionError(
                order_id, order.status.value, target.value, reason="order changed concurrently"
            )

        updated = order.model_copy(update={"status": target, "status_updated_at": changed_at})
        logger.info(f"Order {order_id} moved from {order.status.value} to {target.value}")
        self.event_publisher.order_event(
            NotificationEvent.ORDER_STATUS_CHANGED, updated, previous_status=order.status.value
        )
        return updated

    async def confirm_payment(
        self,
        payment_intent_id: str,
        payment_id: str,
        method: str | None,
        now: datetime | None = None,
    ) -> Order | None:
        """Mark the order paid against ``payment_intent_id`` as payment captured.

        Returns:
            Order: The live order after confirmation, or None if there is no live order

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        order = self.order_repository.find_by_payment_intent(payment_intent_id)
        if order is None:
            logger.warning(f"No live order for intent {payment_intent_id} to confirm payment {payment_id}")
            return None

        captured_at = now or utc_now()
        if self.order_repository.mark_payment_captured(order.order_id, payment_id, method, captured_at):
            logger.info(f"Order {order.order_id} payment {payment_id} confirmed")
            return order.model_copy(
                update={
                    "payment_captured": True,
                    "payment_id": payment_id,
                    "payment_method": method or order.payment_method,
                    "payment_captured_at": captured_at,
                }
            )

        return self.order_repository.get(order.order_id)

    async def terminate_for_payment(
        self, payment_intent_id: str, reason: str, now: datetime | None = None
    ) -> Order | None:
        """Terminate and archive the live order paid against ``payment_intent_id``.

        Returns:
            Order: The archived copy, or None if there was no live order to terminate

        Raises:
            StoreUnavailableError: If DynamoDB fails
        """
        order = self.order_repository.find_by_payment_intent(payment_intent_id)
        if order is None:
            logger.info(f"No live order for intent {payment_intent_id} to terminate")
            return None

        archived = self.order_repository.archive(
            ArchiveRequest(
                order=order,
                target=OrderStatus.TERMINATED,
                changed_at=now or utc_now(),
                reason=reason,
            )
        )
        if archived is not None:
            self.event_publisher.order_event(
                NotificationEvent.ORDER_STATUS_CHANGED, archived, previous_status=order.status.value
            )
        return archived

    async def get_user_history(self, user_id: str, limit: int = 50) -> list[Order]:
        return self.order_repository.list_user_history(user_id, limit=limit)

    async def get_admin_history(self, limit: int = 100) -> list[Order]:
        return self.order_repository.list_admin_history(limit=limit)
