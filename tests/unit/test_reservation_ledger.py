"""Unit tests for ReservationLedger."""

from datetime import datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from order_settlement_service.models.inventory_models import ReserveOutcome
from order_settlement_service.models.reservation_models import (
    CreateReservationStatus,
    Reservation,
    ReservationLine,
    ReservationStatus,
)
from order_settlement_service.repositories.inventory_store import InventoryStore
from order_settlement_service.repositories.reservation_ledger import ReservationLedger, merge_lines
from order_settlement_service.services.errors import StockContentionError, StoreUnavailableError


def _reservation(status: ReservationStatus, now: datetime) -> Reservation:
    return Reservation(
        reservation_id="order_intent_1",
        user_id="user_42",
        lines=[
            ReservationLine(item_id="item_dosa", quantity=2),
            ReservationLine(item_id="item_water", quantity=1, stock_tracked=False),
        ],
        total_amount=26000,
        status=status,
        created_at=now,
        expires_at=now + timedelta(minutes=5),
    )


@pytest.mark.unit
class TestMergeLines:
    """Test suite for merge_lines."""

    def test_combines_quantities_in_first_seen_order(self) -> None:
        merged = merge_lines(
            [
                ReservationLine(item_id="b", quantity=1),
                ReservationLine(item_id="a", quantity=2),
                ReservationLine(item_id="b", quantity=3),
            ]
        )

        assert [(line.item_id, line.quantity) for line in merged] == [("b", 4), ("a", 2)]


@pytest.mark.unit
class TestReservationLedger:
    """Test suite for ReservationLedger with a mocked table and inventory."""

    @pytest.fixture
    def table(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture
    def inventory(self) -> MagicMock:
        inventory = MagicMock(spec=InventoryStore)
        inventory.release_operation.side_effect = lambda item_id, qty: {"release": item_id, "qty": qty}
        inventory.commit_operation.side_effect = lambda item_id, qty: {"commit": item_id, "qty": qty}
        return inventory

    @pytest.fixture
    def ledger(self, table: MagicMock, inventory: MagicMock) -> ReservationLedger:
        dynamodb = MagicMock()
        dynamodb.Table.return_value = table
        return ReservationLedger(dynamodb_resource=dynamodb, table_name="stock-reservations", inventory=inventory)

    def test_create_sets_expiry_from_ttl(
        self, ledger: ReservationLedger, table: MagicMock, inventory: MagicMock, fixed_now: datetime
    ) -> None:
        inventory.reserve.return_value = ReserveOutcome.RESERVED

        result = ledger.create(
            "order_intent_1", "user_42", [ReservationLine(item_id="item_dosa", quantity=2)], 24000, now=fixed_now
        )

        assert result.status is CreateReservationStatus.CREATED
        assert result.reservation is not None
        assert result.reservation.expires_at == fixed_now + timedelta(minutes=5)
        assert table.put_item.call_args.kwargs["ConditionExpression"] == "attribute_not_exists(reservation_id)"

    def test_create_rejects_empty_lines(self, ledger: ReservationLedger) -> None:
        with pytest.raises(ValueError):
            ledger.create("order_intent_1", "user_42", [], 0)

    def test_contention_releases_held_lines_and_raises(
        self, ledger: ReservationLedger, table: MagicMock, inventory: MagicMock
    ) -> None:
        inventory.reserve.side_effect = [
            ReserveOutcome.RESERVED,
            ReserveOutcome.UNLIMITED,
            StockContentionError("item_c", 5),
        ]
        lines = [
            ReservationLine(item_id="item_a", quantity=1),
            ReservationLine(item_id="item_b", quantity=1),
            ReservationLine(item_id="item_c", quantity=1),
        ]

        with pytest.raises(StockContentionError):
            ledger.create("order_intent_1", "user_42", lines, 3000)

        inventory.release.assert_called_once_with("item_a", 1)
        table.put_item.assert_not_called()

    def test_failed_put_releases_held_lines(
        self, ledger: ReservationLedger, table: MagicMock, inventory: MagicMock, client_error: Any
    ) -> None:
        inventory.reserve.return_value = ReserveOutcome.RESERVED
        table.put_item.side_effect = client_error("InternalServerError", "PutItem")

        with pytest.raises(StoreUnavailableError):
            ledger.create("order_intent_1", "user_42", [ReservationLine(item_id="item_a", quantity=2)], 2000)

        inventory.release.assert_called_once_with("item_a", 2)

    def test_complete_transacts_status_and_tracked_lines(
        self, ledger: ReservationLedger, table: MagicMock, fixed_now: datetime
    ) -> None:
        table.get_item.return_value = {"Item": _reservation(ReservationStatus.ACTIVE, fixed_now).to_dynamodb_item()}

        with patch(
            "order_settlement_service.repositories.reservation_ledger.transact_write", return_value=True
        ) as transact:
            assert ledger.complete("order_intent_1") is True

        actions = transact.call_args.args[1]
        assert len(actions) == 2
        assert actions[0]["Update"]["ConditionExpression"] == "#status = :active"
        assert actions[1] == {"commit": "item_dosa", "qty": 2}

    def test_fail_records_reason(self, ledger: ReservationLedger, table: MagicMock, fixed_now: datetime) -> None:
        table.get_item.return_value = {"Item": _reservation(ReservationStatus.ACTIVE, fixed_now).to_dynamodb_item()}

        with patch(
            "order_settlement_service.repositories.reservation_ledger.transact_write", return_value=True
        ) as transact:
            ledger.fail("order_intent_1", "payment_failed")

        status_update = transact.call_args.args[1][0]["Update"]
        assert "failure_reason = :reason" in status_update["UpdateExpression"]
        assert status_update["ExpressionAttributeValues"][":reason"] == "payment_failed"

    def test_terminal_reservation_is_not_touched(
        self, ledger: ReservationLedger, table: MagicMock, fixed_now: datetime
    ) -> None:
        table.get_item.return_value = {"Item": _reservation(ReservationStatus.EXPIRED, fixed_now).to_dynamodb_item()}

        with patch("order_settlement_service.repositories.reservation_ledger.transact_write") as transact:
            assert ledger.complete("order_intent_1") is False

        transact.assert_not_called()

    def test_missing_reservation(self, ledger: ReservationLedger, table: MagicMock) -> None:
        table.get_item.return_value = {}

        assert ledger.expire("order_intent_1") is False

    def test_counter_drift_falls_back_to_status_only(
        self, ledger: ReservationLedger, table: MagicMock, inventory: MagicMock, fixed_now: datetime
    ) -> None:
        active = {"Item": _reservation(ReservationStatus.ACTIVE, fixed_now).to_dynamodb_item()}
        table.get_item.return_value = active

        with patch(
            "order_settlement_service.repositories.reservation_ledger.transact_write",
            side_effect=[False, True],
        ) as transact:
            assert ledger.expire("order_intent_1") is True

        assert len(transact.call_args_list[1].args[1]) == 1
        inventory.release.assert_called_once_with("item_dosa", 2)

    def test_lost_race_applies_nothing(
        self, ledger: ReservationLedger, table: MagicMock, inventory: MagicMock, fixed_now: datetime
    ) -> None:
        table.get_item.side_effect = [
            {"Item": _reservation(ReservationStatus.ACTIVE, fixed_now).to_dynamodb_item()},
            {"Item": _reservation(ReservationStatus.COMPLETED, fixed_now).to_dynamodb_item()},
        ]

        with patch(
            "order_settlement_service.repositories.reservation_ledger.transact_write", return_value=False
        ) as transact:
            assert ledger.expire("order_intent_1") is False

        assert transact.call_count == 1
        inventory.release.assert_not_called()

    def test_drift_fallback_keeps_applying_after_a_line_fails(
        self, ledger: ReservationLedger, table: MagicMock, inventory: MagicMock, fixed_now: datetime
    ) -> None:
        """One unreachable counter must not strand the remaining lines."""
        reservation = _reservation(ReservationStatus.ACTIVE, fixed_now).model_copy(
            update={
                "lines": [
                    ReservationLine(item_id="item_dosa", quantity=2),
                    ReservationLine(item_id="item_idli", quantity=3),
                ]
            }
        )
        table.get_item.return_value = {"Item": reservation.to_dynamodb_item()}
        inventory.commit.side_effect = [StoreUnavailableError("DynamoDB UpdateItem failed"), True]

        with (
            patch(
                "order_settlement_service.repositories.reservation_ledger.transact_write",
                side_effect=[False, True],
            ),
            patch(
                "order_settlement_service.repositories.reservation_ledger.record_stock_counter_drift"
            ) as record_drift,
        ):
            assert ledger.complete("order_intent_1") is True

        assert [call.args for call in inventory.commit.call_args_list] == [("item_dosa", 2), ("item_idli", 3)]
        record_drift.assert_called_once_with("item_dosa", "commit")
