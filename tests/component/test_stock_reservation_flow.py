"""Component tests for stock reservations against emulated DynamoDB."""

from datetime import datetime, timedelta
from typing import Any

import pytest

from order_settlement_service.models.inventory_models import MenuItem, ReserveOutcome
from order_settlement_service.models.reservation_models import (
    CreateReservationStatus,
    ReservationLine,
    ReservationStatus,
)
from order_settlement_service.repositories.inventory_store import InventoryStore
from order_settlement_service.repositories.reservation_ledger import ReservationLedger
from order_settlement_service.services.sweepers import ReservationExpirySweeper


def _lines(**quantities: int) -> list[ReservationLine]:
    return [ReservationLine(item_id=item_id, quantity=qty) for item_id, qty in quantities.items()]


@pytest.mark.component
class TestInventoryCounters:
    """Counter behaviour of the inventory store."""

    def test_stale_snapshot_cannot_oversell(
        self, inventory: InventoryStore, stock_item: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Two reserves of 3 against a stock of 5 from the same snapshot: one wins."""
        stock_item(inventory, "item_thali", available=5)
        stale = inventory.get_item("item_thali")
        assert stale is not None

        assert inventory.reserve("item_thali", 3) is ReserveOutcome.RESERVED

        # The second caller read the item before the first reserve was written
        real_get = inventory.get_item
        snapshots: list[MenuItem] = [stale]

        def get_item(item_id: str) -> MenuItem | None:
            return snapshots.pop() if snapshots else real_get(item_id)

        monkeypatch.setattr(inventory, "get_item", get_item)

        assert inventory.reserve("item_thali", 3) is ReserveOutcome.INSUFFICIENT_STOCK

        item = real_get("item_thali")
        assert item is not None
        assert item.reserved_quantity == 3
        assert item.sellable_quantity == 2

    def test_reserve_unknown_item(self, inventory: InventoryStore) -> None:
        assert inventory.reserve("ghost", 1) is ReserveOutcome.ITEM_NOT_FOUND

    def test_unlimited_item_is_never_mutated(self, inventory: InventoryStore, stock_item: Any) -> None:
        saved = stock_item(inventory, "item_water", available=0, unlimited=True)

        assert inventory.reserve("item_water", 100) is ReserveOutcome.UNLIMITED
        assert inventory.commit("item_water", 100) is True

        item = inventory.get_item("item_water")
        assert item is not None
        assert item.version == saved.version
        assert item.reserved_quantity == 0

    def test_release_more_than_reserved_is_drift(
        self, inventory: InventoryStore, stock_item: Any
    ) -> None:
        """A release the counters cannot satisfy changes nothing and reports False."""
        stock_item(inventory, "item_idli", available=4)
        inventory.reserve("item_idli", 1)

        assert inventory.release("item_idli", 2) is False

        item = inventory.get_item("item_idli")
        assert item is not None
        assert item.reserved_quantity == 1

    def test_restock_and_initialize_reserved_quantity(
        self, inventory: InventoryStore, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_vada", available=2)
        inventory.table.put_item(Item={"item_id": "item_legacy", "name": "Legacy", "price": 500,
                                       "available_quantity": 7})

        restocked = inventory.restock("item_vada", 3)
        assert restocked is not None
        assert restocked.available_quantity == 5
        assert inventory.restock("ghost", 1) is None

        assert inventory.initialize_reserved_quantities() == 1
        assert inventory.initialize_reserved_quantities() == 0
        raw = inventory.table.get_item(Key={"item_id": "item_legacy"})["Item"]
        assert raw["reserved_quantity"] == 0


@pytest.mark.component
class TestReservationLedger:
    """Reservation lifecycle and its effect on stock counters."""

    def test_multi_line_rollback_restores_counters(
        self, inventory: InventoryStore, ledger: ReservationLedger, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)
        stock_item(inventory, "item_lassi", available=1)

        result = ledger.create("order_intent_1", "user_42", _lines(item_dosa=2, item_lassi=3), 50000)

        assert result.status is CreateReservationStatus.INSUFFICIENT_STOCK
        assert result.rejected_item_ids == ["item_lassi"]
        assert ledger.get("order_intent_1") is None
        for item_id in ("item_dosa", "item_lassi"):
            item = inventory.get_item(item_id)
            assert item is not None
            assert item.reserved_quantity == 0

    def test_unknown_item_rolls_back(
        self, inventory: InventoryStore, ledger: ReservationLedger, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)

        result = ledger.create("order_intent_1", "user_42", _lines(item_dosa=1, ghost=1), 10000)

        assert result.status is CreateReservationStatus.ITEM_NOT_FOUND
        assert result.rejected_item_ids == ["ghost"]
        item = inventory.get_item("item_dosa")
        assert item is not None
        assert item.reserved_quantity == 0

    def test_duplicate_lines_are_merged(
        self, inventory: InventoryStore, ledger: ReservationLedger, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)

        result = ledger.create(
            "order_intent_1",
            "user_42",
            [ReservationLine(item_id="item_dosa", quantity=1), ReservationLine(item_id="item_dosa", quantity=2)],
            30000,
        )

        assert result.success
        assert result.reservation is not None
        assert [(line.item_id, line.quantity) for line in result.reservation.lines] == [("item_dosa", 3)]

    def test_second_reservation_for_intent_is_refused(
        self, inventory: InventoryStore, ledger: ReservationLedger, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)

        first = ledger.create("order_intent_1", "user_42", _lines(item_dosa=2), 20000)
        second = ledger.create("order_intent_1", "user_42", _lines(item_dosa=2), 20000)

        assert first.success
        assert second.status is CreateReservationStatus.DUPLICATE_INTENT
        item = inventory.get_item("item_dosa")
        assert item is not None
        assert item.reserved_quantity == 2

    def test_at_most_one_completion(
        self, inventory: InventoryStore, ledger: ReservationLedger, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)
        ledger.create("order_intent_1", "user_42", _lines(item_dosa=2), 20000)

        assert ledger.complete("order_intent_1") is True
        assert ledger.complete("order_intent_1") is False
        assert ledger.fail("order_intent_1", "payment_failed") is False
        assert ledger.expire("order_intent_1") is False

        item = inventory.get_item("item_dosa")
        assert item is not None
        assert item.available_quantity == 3
        assert item.reserved_quantity == 0
        reservation = ledger.get("order_intent_1")
        assert reservation is not None
        assert reservation.status is ReservationStatus.COMPLETED
        assert reservation.completed_at is not None

    def test_complete_losing_to_expiry_leaves_counters_released(
        self,
        inventory: InventoryStore,
        ledger: ReservationLedger,
        stock_item: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Both callers saw the reservation active; only the expiry takes effect."""
        stock_item(inventory, "item_dosa", available=5)
        ledger.create("order_intent_1", "user_42", _lines(item_dosa=2), 20000)
        stale = ledger.get("order_intent_1")

        assert ledger.expire("order_intent_1") is True

        real_get = ledger.get
        snapshots = [stale]
        monkeypatch.setattr(
            ledger, "get", lambda intent: snapshots.pop() if snapshots else real_get(intent)
        )

        assert ledger.complete("order_intent_1") is False

        item = inventory.get_item("item_dosa")
        assert item is not None
        assert item.available_quantity == 5
        assert item.reserved_quantity == 0
        reservation = real_get("order_intent_1")
        assert reservation is not None
        assert reservation.status is ReservationStatus.EXPIRED

    def test_counter_drift_still_finishes_reservation(
        self, inventory: InventoryStore, ledger: ReservationLedger, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)
        ledger.create("order_intent_1", "user_42", _lines(item_dosa=2), 20000)
        inventory.table.update_item(
            Key={"item_id": "item_dosa"},
            UpdateExpression="SET reserved_quantity = :zero",
            ExpressionAttributeValues={":zero": 0},
        )

        assert ledger.fail("order_intent_1", "payment_failed") is True

        reservation = ledger.get("order_intent_1")
        assert reservation is not None
        assert reservation.status is ReservationStatus.FAILED
        assert reservation.failure_reason == "payment_failed"
        item = inventory.get_item("item_dosa")
        assert item is not None
        assert item.reserved_quantity == 0

    def test_unlimited_lines_are_not_tracked(
        self, inventory: InventoryStore, ledger: ReservationLedger, stock_item: Any
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)
        stock_item(inventory, "item_water", available=0, unlimited=True)

        result = ledger.create("order_intent_1", "user_42", _lines(item_dosa=1, item_water=4), 12000)

        assert result.reservation is not None
        tracked = {line.item_id: line.stock_tracked for line in result.reservation.lines}
        assert tracked == {"item_dosa": True, "item_water": False}
        assert ledger.complete("order_intent_1") is True


@pytest.mark.component
class TestReservationExpirySweeper:
    """Expiry and garbage collection sweeps."""

    @pytest.mark.asyncio
    async def test_expires_only_lapsed_reservations(
        self,
        inventory: InventoryStore,
        ledger: ReservationLedger,
        stock_item: Any,
        fixed_now: datetime,
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)
        ledger.create("order_old", "user_1", _lines(item_dosa=2), 20000, now=fixed_now - timedelta(minutes=10))
        ledger.create("order_new", "user_2", _lines(item_dosa=1), 10000, now=fixed_now - timedelta(minutes=1))

        report = await ReservationExpirySweeper(ledger).run(now=fixed_now)

        assert report.processed == 1
        assert report.failed == 0
        old = ledger.get("order_old")
        new = ledger.get("order_new")
        assert old is not None and old.status is ReservationStatus.EXPIRED
        assert new is not None and new.status is ReservationStatus.ACTIVE
        item = inventory.get_item("item_dosa")
        assert item is not None
        assert item.reserved_quantity == 1

    @pytest.mark.asyncio
    async def test_completed_reservation_is_not_expired(
        self,
        inventory: InventoryStore,
        ledger: ReservationLedger,
        stock_item: Any,
        fixed_now: datetime,
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)
        ledger.create("order_intent_1", "user_1", _lines(item_dosa=2), 20000, now=fixed_now - timedelta(minutes=10))
        ledger.complete("order_intent_1")

        report = await ReservationExpirySweeper(ledger).run(now=fixed_now)

        assert report.processed == 0
        item = inventory.get_item("item_dosa")
        assert item is not None
        assert item.available_quantity == 3

    @pytest.mark.asyncio
    async def test_collects_terminal_reservations_after_retention(
        self,
        inventory: InventoryStore,
        ledger: ReservationLedger,
        stock_item: Any,
        fixed_now: datetime,
    ) -> None:
        stock_item(inventory, "item_dosa", available=5)
        ledger.create("order_done", "user_1", _lines(item_dosa=1), 10000, now=fixed_now)
        ledger.create("order_live", "user_2", _lines(item_dosa=1), 10000, now=fixed_now)
        ledger.expire("order_done")

        sweeper = ReservationExpirySweeper(ledger)
        too_early = await sweeper.collect_garbage(now=fixed_now + timedelta(hours=1))
        report = await sweeper.collect_garbage(now=fixed_now + timedelta(hours=25))

        assert too_early.processed == 0
        assert report.processed == 1
        assert ledger.get("order_done") is None
        assert ledger.get("order_live") is not None
