"""FastAPI application for checkout, payment, order and admin endpoints."""

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from order_settlement_service.auth.api_dependencies import get_api_key_from_header
from order_settlement_service.auth.api_key_validator import APIKeyValidator, Role
from order_settlement_service.handlers.event_handler import SweepEventHandler, SweepTask
from order_settlement_service.models.inventory_models import MenuItem
from order_settlement_service.models.order_models import Order, OrderStatus
from order_settlement_service.models.payment_models import PaymentRecord, SettlementError
from order_settlement_service.models.reservation_models import Reservation
from order_settlement_service.repositories.inventory_store import InventoryStore
from order_settlement_service.repositories.payment_repository import PaymentRepository
from order_settlement_service.repositories.reservation_ledger import ReservationLedger
from order_settlement_service.services.checkout_service import CheckoutLine, CheckoutService
from order_settlement_service.services.errors import (
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    OrderNotFoundError,
    TransientError,
)
from order_settlement_service.services.order_service import OrderService
from order_settlement_service.services.reconciliation_service import ReconciliationService
from order_settlement_service.services.settlement_coordinator import (
    SettlementCoordinator,
    SettlementOutcome,
)

logger = logging.getLogger(__name__)

# Checkout rejection reasons and the status each is reported with
CHECKOUT_REJECTION_STATUS = {
    "insufficient_stock": 409,
    "duplicate_intent": 409,
    "unknown_item": 422,
}


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str


class CheckoutRequest(BaseModel):
    """Basket submitted at checkout."""

    items: list[CheckoutLine] = Field(..., min_length=1)
    currency: str = "INR"


class CheckoutResponse(BaseModel):
    """Payment details the client opens the gateway checkout with."""

    payment_intent_id: str
    order_id: str
    amount: int
    currency: str
    expires_at: datetime
    gateway_key_id: str


class VerifyPaymentRequest(BaseModel):
    """Checkout callback forwarded by the client after paying."""

    payment_intent_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class SettlementResponse(BaseModel):
    """Outcome of applying a payment signal."""

    outcome: SettlementOutcome


class OrderStatusUpdate(BaseModel):
    """Requested order status change."""

    status: OrderStatus
    reason: str | None = None


class MenuItemUpdate(BaseModel):
    """Catalogue fields of a menu item."""

    name: str = Field(..., min_length=1)
    price: int = Field(..., ge=0)
    available_quantity: int = Field(default=0, ge=0)
    has_unlimited_stock: bool = False


class RestockRequest(BaseModel):
    """Quantity added to an item's stock."""

    quantity: int = Field(..., gt=0)


class InitializeReservedQuantityResponse(BaseModel):
    """Result of the reserved-quantity migration."""

    updated: int


class ErrorRetryResponse(BaseModel):
    """Response model for settlement error retry."""

    error_id: str
    success: bool
    message: str


class SweepResponse(BaseModel):
    """Result of a manually triggered sweep."""

    task: str
    examined: int
    processed: int
    failed: int


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})


def create_app(
    *,
    checkout_service: CheckoutService,
    settlement_coordinator: SettlementCoordinator,
    order_service: OrderService,
    inventory: InventoryStore,
    ledger: ReservationLedger,
    payment_repository: PaymentRepository,
    reconciliation_service: ReconciliationService,
    sweep_handler: SweepEventHandler,
    admin_api_keys: list[str],
    staff_api_keys: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        checkout_service: Service starting checkouts
        settlement_coordinator: Coordinator applying payment signals
        order_service: Service owning order state
        inventory: Menu item and stock store
        ledger: Reservation ledger (read-only here)
        payment_repository: Payment records (read-only here)
        reconciliation_service: Queue of failed settlement steps
        sweep_handler: Runs sweeps on demand
        admin_api_keys: Valid keys for the admin surface
        staff_api_keys: Valid keys for kitchen staff endpoints

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Order Settlement Service API",
        description="Checkout, payment settlement, order lifecycle and admin endpoints",
        version="1.0.0",
    )

    app.state.checkout_service = checkout_service
    app.state.settlement_coordinator = settlement_coordinator
    app.state.order_service = order_service
    app.state.inventory = inventory
    app.state.ledger = ledger
    app.state.payment_repository = payment_repository
    app.state.reconciliation_service = reconciliation_service
    app.state.sweep_handler = sweep_handler
    app.state.api_key_validator = APIKeyValidator(
        admin_keys=admin_api_keys, staff_keys=staff_api_keys
    )

    @app.middleware("http")
    async def log_unhandled_errors(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        start = time.perf_counter()
        try:
            return await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                f"Unhandled error on {request.method} {request.url.path} after {elapsed_ms:.1f}ms"
            )
            return _error_response(500, "internal_error", "An unexpected error occurred")

    @app.exception_handler(GatewayTimeoutError)
    async def gateway_timeout_handler(_request: Request, exc: GatewayTimeoutError) -> JSONResponse:
        return _error_response(504, "gateway_timeout", str(exc))

    @app.exception_handler(TransientError)
    async def transient_error_handler(_request: Request, exc: TransientError) -> JSONResponse:
        return _error_response(503, "service_unavailable", str(exc))

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(_request: Request, exc: GatewayError) -> JSONResponse:
        return _error_response(502, "gateway_error", str(exc))

    @app.exception_handler(OrderNotFoundError)
    async def not_found_handler(_request: Request, exc: OrderNotFoundError) -> JSONResponse:
        return _error_response(404, "not_found", str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        _request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        return _error_response(409, "invalid_transition", str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Request, exc: ValueError) -> JSONResponse:
        return _error_response(422, "invalid_request", str(exc))

    def validate_admin_key(x_api_key: str | None = Header(None)) -> str:
        """Dependency requiring an admin key."""
        return get_api_key_from_header(
            x_api_key=x_api_key, validator=app.state.api_key_validator, required_role=Role.ADMIN
        )

    def validate_staff_key(x_api_key: str | None = Header(None)) -> str:
        """Dependency requiring a staff or admin key."""
        return get_api_key_from_header(
            x_api_key=x_api_key, validator=app.state.api_key_validator, required_role=Role.STAFF
        )

    def require_user(x_user_id: str | None = Header(None)) -> str:
        """Dependency returning the authenticated user id."""
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing user identity")
        return x_user_id

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy")

    @app.post(
        "/checkout",
        response_model=CheckoutResponse,
        status_code=201,
        tags=["Checkout"],
    )
    async def start_checkout(
        request: CheckoutRequest,
        user_id: str = Depends(require_user),
    ) -> CheckoutResponse | JSONResponse:
        """Reserve stock for the basket and open a payment intent.

        Returns 409 when stock is short or the intent is already reserved and
        422 when an item does not exist.
        """
        result = await app.state.checkout_service.start_checkout(
            user_id, request.items, request.currency
        )

        if not result.success:
            return JSONResponse(
                status_code=CHECKOUT_REJECTION_STATUS.get(result.reason, 409),
                content={"reason": result.reason, "rejected_item_ids": result.rejected_item_ids},
            )

        return CheckoutResponse(
            payment_intent_id=result.payment_intent_id,
            order_id=result.order_id,
            amount=result.amount,
            currency=result.currency,
            expires_at=result.expires_at,
            gateway_key_id=result.gateway_key_id,
        )

    @app.post("/payments/verify", response_model=SettlementResponse, tags=["Payments"])
    async def verify_payment(request: VerifyPaymentRequest) -> SettlementResponse | JSONResponse:
        """Verify the checkout callback signature and settle from the gateway's state."""
        outcome = await app.state.settlement_coordinator.verify_and_settle(
            request.payment_intent_id, request.payment_id, request.signature
        )

        if outcome is SettlementOutcome.SIGNATURE_INVALID:
            return JSONResponse(status_code=401, content={"outcome": outcome.value})

        return SettlementResponse(outcome=outcome)

    @app.post("/webhooks/razorpay", response_model=SettlementResponse, tags=["Payments"])
    async def razorpay_webhook(
        request: Request,
        x_razorpay_signature: str | None = Header(None),
    ) -> SettlementResponse:
        """Receive a gateway webhook.

        Returns 200 once the event is verified and dispatched; steps that failed
        after the payment was recorded are queued for reconciliation. A store
        outage on the payment record itself returns 503 so the gateway redelivers.
        """
        if not x_razorpay_signature:
            raise HTTPException(status_code=400, detail="Missing webhook signature")

        raw_body = await request.body()
        try:
            outcome = await app.state.settlement_coordinator.handle_webhook(
                raw_body, x_razorpay_signature
            )
        except ValueError as e:
            logger.warning(f"Rejected malformed webhook: {e}")
            raise HTTPException(status_code=400, detail=str(e)) from e

        if outcome is SettlementOutcome.SIGNATURE_INVALID:
            raise HTTPException(status_code=400, detail="Invalid webhook signature")

        return SettlementResponse(outcome=outcome)

    @app.get("/orders/{order_id}", response_model=Order, tags=["Orders"])
    async def get_order(
        order_id: str,
        _api_key: str = Depends(validate_staff_key),
    ) -> Order:
        """Get an order, live or archived."""
        order: Order = await app.state.order_service.find_order(order_id)
        return order

    @app.post("/orders/{order_id}/status", response_model=Order, tags=["Orders"])
    async def update_order_status(
        order_id: str,
        update: OrderStatusUpdate,
        _api_key: str = Depends(validate_staff_key),
    ) -> Order:
        """Move an order through its lifecycle.

        Terminal statuses return the archived copy of the order.
        """
        logger.info(f"Status change to {update.status.value} requested for order {order_id}")
        order: Order = await app.state.order_service.transition(
            order_id, update.status, reason=update.reason
        )
        return order

    @app.get("/users/{user_id}/order-history", response_model=list[Order], tags=["Orders"])
    async def get_user_order_history(
        user_id: str,
        limit: int = 50,
        caller_id: str = Depends(require_user),
    ) -> list[Order]:
        """Get a user's completed, terminated and expired orders."""
        if caller_id != user_id:
            raise HTTPException(status_code=403, detail="Cannot read another user's orders")

        orders: list[Order] = await app.state.order_service.get_user_history(user_id, limit=limit)
        return orders

    @app.get("/admin/inventory", response_model=list[MenuItem], tags=["Inventory"])
    async def list_inventory(
        limit: int = 100,
        _api_key: str = Depends(validate_admin_key),
    ) -> list[MenuItem]:
        """List menu items with their stock counters."""
        items: list[MenuItem] = app.state.inventory.list_items(limit=limit)
        return items

    @app.post(
        "/admin/inventory/initialize-reserved-quantity",
        response_model=InitializeReservedQuantityResponse,
        tags=["Inventory"],
    )
    async def initialize_reserved_quantity(
        _api_key: str = Depends(validate_admin_key),
    ) -> InitializeReservedQuantityResponse:
        """Add ``reserved_quantity = 0`` to items that predate reservations."""
        updated = app.state.inventory.initialize_reserved_quantities()
        return InitializeReservedQuantityResponse(updated=updated)

    @app.get("/admin/inventory/{item_id}", response_model=MenuItem, tags=["Inventory"])
    async def get_inventory_item(
        item_id: str,
        _api_key: str = Depends(validate_admin_key),
    ) -> MenuItem:
        """Get a menu item with its stock counters."""
        item: MenuItem | None = app.state.inventory.get_item(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail=f"Menu item {item_id} not found")
        return item

    @app.put("/admin/inventory/{item_id}", response_model=MenuItem, tags=["Inventory"])
    async def save_inventory_item(
        item_id: str,
        update: MenuItemUpdate,
        _api_key: str = Depends(validate_admin_key),
    ) -> MenuItem:
        """Create or update a menu item. Reserved stock is preserved."""
        logger.info(f"Saving menu item {item_id}")
        item: MenuItem = app.state.inventory.save_item(
            MenuItem(item_id=item_id, **update.model_dump())
        )
        return item

    @app.post("/admin/inventory/{item_id}/restock", response_model=MenuItem, tags=["Inventory"])
    async def restock_inventory_item(
        item_id: str,
        request: RestockRequest,
        _api_key: str = Depends(validate_admin_key),
    ) -> MenuItem:
        """Add stock to a menu item."""
        item: MenuItem | None = app.state.inventory.restock(item_id, request.quantity)
        if item is None:
            raise HTTPException(status_code=404, detail=f"Menu item {item_id} not found")
        logger.info(f"Restocked menu item {item_id} by {request.quantity}")
        return item

    @app.get(
        "/admin/reservations/{payment_intent_id}",
        response_model=Reservation,
        tags=["Reservations"],
    )
    async def get_reservation(
        payment_intent_id: str,
        _api_key: str = Depends(validate_admin_key),
    ) -> Reservation:
        """Get the reservation held for a payment intent."""
        reservation: Reservation | None = app.state.ledger.get(payment_intent_id)
        if reservation is None:
            raise HTTPException(
                status_code=404, detail=f"Reservation {payment_intent_id} not found"
            )
        return reservation

    @app.get(
        "/admin/reservations/{payment_intent_id}/payments",
        response_model=list[PaymentRecord],
        tags=["Reservations"],
    )
    async def list_reservation_payments(
        payment_intent_id: str,
        _api_key: str = Depends(validate_admin_key),
    ) -> list[PaymentRecord]:
        """List payment attempts made against a payment intent."""
        records: list[PaymentRecord] = app.state.payment_repository.list_for_intent(
            payment_intent_id
        )
        return records

    @app.get("/admin/payments/{payment_id}", response_model=PaymentRecord, tags=["Payments"])
    async def get_payment(
        payment_id: str,
        _api_key: str = Depends(validate_admin_key),
    ) -> PaymentRecord:
        """Get a payment record."""
        record: PaymentRecord | None = app.state.payment_repository.get(payment_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Payment {payment_id} not found")
        return record

    @app.get("/admin/order-history", response_model=list[Order], tags=["Orders"])
    async def get_admin_order_history(
        limit: int = 100,
        _api_key: str = Depends(validate_admin_key),
    ) -> list[Order]:
        """Get archived orders across all users."""
        orders: list[Order] = await app.state.order_service.get_admin_history(limit=limit)
        return orders

    @app.get(
        "/admin/settlement-errors",
        response_model=list[SettlementError],
        tags=["Errors"],
    )
    async def list_settlement_errors(
        limit: int = 50,
        _api_key: str = Depends(validate_admin_key),
    ) -> list[SettlementError]:
        """List unresolved settlement errors, oldest first."""
        errors: list[SettlementError] = await app.state.reconciliation_service.list_open_errors(
            limit=limit
        )
        return errors

    @app.post(
        "/admin/settlement-errors/{error_id}/retry",
        response_model=ErrorRetryResponse,
        tags=["Errors"],
    )
    async def retry_settlement_error(
        error_id: str,
        _api_key: str = Depends(validate_admin_key),
    ) -> ErrorRetryResponse:
        """Re-run settlement for a queued error."""
        logger.info(f"Retrying settlement error {error_id}")
        result = await app.state.reconciliation_service.retry_error(
            error_id, app.state.settlement_coordinator
        )
        if result is None:
            raise HTTPException(status_code=404, detail=f"Error {error_id} not found")

        return ErrorRetryResponse(
            error_id=result.error_id, success=result.resolved, message=result.message
        )

    @app.post("/admin/sweeps/{task}", response_model=SweepResponse, tags=["Sweeps"])
    async def run_sweep(
        task: SweepTask,
        _api_key: str = Depends(validate_admin_key),
    ) -> SweepResponse:
        """Run a sweep immediately instead of waiting for the schedule."""
        logger.info(f"Manual sweep {task.value} triggered")
        report = await app.state.sweep_handler.run_task(task)
        return SweepResponse(
            task=report.task,
            examined=report.examined,
            processed=report.processed,
            failed=report.failed,
        )

    return app

