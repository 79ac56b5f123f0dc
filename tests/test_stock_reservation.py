"""
Tests for the stock reservation manager.
"""
import asyncio
import logging
import random
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from checkout_engine.core.exceptions import ProductNotFoundError
from checkout_engine.models import ReservationStatus, StockReservation
from checkout_engine.services.cart import CartLine
from checkout_engine.services.stock_reservation import (
    StockReservationManager,
    aggregate_quantities,
    find_stock_violations,
    lock_products_query,
    reserved_quantity_query,
)


def line(product_id, quantity, price=500, seller="S1"):
    return CartLine(product_id=product_id, quantity=quantity, unit_price_cents=price, seller_id=seller)


def existing_reservation(product_id, quantity, expires_at, status=ReservationStatus.PENDING, session="chk_old"):
    return StockReservation(
        product_id=product_id,
        payment_session_id=session,
        quantity=quantity,
        status=status,
        expires_at=expires_at,
    )


class TestCheckAndReserve:
    @pytest.mark.asyncio
    async def test_insufficient_stock_writes_nothing(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=1))

        result = await manager.check_and_reserve([line("P1", 2)], "chk_1")

        assert not result.success
        assert result.insufficient_stock == [
            {"product_id": "P1", "requested": 2, "available": 1, "title": "Product P1"}
        ]
        assert store.reservations == []
        assert manager.sessions[0].rollbacks >= 1
        assert manager.sessions[0].commits == 0

    @pytest.mark.asyncio
    async def test_collects_every_violation(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(
            product_factory("P1", stock=1),
            product_factory("P2", stock=0),
            product_factory("P3", stock=10),
        )

        result = await manager.check_and_reserve([line("P1", 2), line("P2", 1), line("P3", 1)], "chk_1")

        assert not result.success
        assert [v["product_id"] for v in result.insufficient_stock] == ["P1", "P2"]
        assert result.insufficient_stock[1]["available"] == 0
        assert store.reservations == []

    @pytest.mark.asyncio
    async def test_success_creates_pending_rows(self, reservation_store_factory, product_factory, now):
        store, manager = reservation_store_factory(product_factory("P1", stock=5), product_factory("P2", stock=3))

        result = await manager.check_and_reserve([line("P1", 2), line("P2", 3)], "chk_1", now=now)

        assert result.success
        assert result.expires_at == now + timedelta(minutes=15)
        assert len(store.reservations) == 2
        assert all(r.status == ReservationStatus.PENDING for r in store.reservations)
        assert all(r.payment_session_id == "chk_1" for r in store.reservations)
        assert {r.product_id: r.quantity for r in store.reservations} == {"P1": 2, "P2": 3}

    @pytest.mark.asyncio
    async def test_active_reservations_reduce_availability(self, reservation_store_factory, product_factory, now):
        store, manager = reservation_store_factory(product_factory("P1", stock=5))
        store.reservations.append(existing_reservation("P1", 4, now + timedelta(minutes=5)))

        result = await manager.check_and_reserve([line("P1", 2)], "chk_1", now=now)

        assert not result.success
        assert result.insufficient_stock[0]["available"] == 1

    @pytest.mark.asyncio
    async def test_expired_pending_reservation_does_not_count(self, reservation_store_factory, product_factory, now):
        store, manager = reservation_store_factory(product_factory("P1", stock=5))
        store.reservations.append(existing_reservation("P1", 5, now - timedelta(seconds=1)))

        result = await manager.check_and_reserve([line("P1", 5)], "chk_1", now=now)

        assert result.success

    @pytest.mark.asyncio
    async def test_cancelled_and_confirmed_rows_do_not_count(self, reservation_store_factory, product_factory, now):
        store, manager = reservation_store_factory(product_factory("P1", stock=2))
        later = now + timedelta(minutes=10)
        store.reservations.append(existing_reservation("P1", 2, later, status=ReservationStatus.CANCELLED))
        store.reservations.append(existing_reservation("P1", 2, later, status=ReservationStatus.CONFIRMED))

        result = await manager.check_and_reserve([line("P1", 2)], "chk_1", now=now)

        assert result.success

    @pytest.mark.asyncio
    async def test_lines_for_same_product_are_aggregated(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=2))

        result = await manager.check_and_reserve([line("P1", 1), line("P1", 2)], "chk_1")

        assert not result.success
        assert result.insufficient_stock[0]["requested"] == 3

    @pytest.mark.asyncio
    async def test_unlimited_product_gets_no_reservation(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=None, max_stock=None))

        result = await manager.check_and_reserve([line("P1", 1000)], "chk_1")

        assert result.success
        assert store.reservations == []

    @pytest.mark.asyncio
    async def test_max_stock_is_ceiling_when_stock_unset(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=None, max_stock=3))

        result = await manager.check_and_reserve([line("P1", 4)], "chk_1")

        assert not result.success
        assert result.insufficient_stock[0]["available"] == 3

    @pytest.mark.asyncio
    async def test_missing_product_raises_and_releases_locks(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=5))

        with pytest.raises(ProductNotFoundError) as exc_info:
            await manager.check_and_reserve([line("P1", 1), line("GONE", 1)], "chk_1")

        assert exc_info.value.details["product_ids"] == ["GONE"]
        assert store.reservations == []
        assert not store.locks["P1"].locked()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_no_oversell_under_concurrent_checkouts(self, reservation_store_factory, product_factory):
        stock = 7
        store, manager = reservation_store_factory(product_factory("P1", stock=stock))
        rng = random.Random(42)
        quantities = [rng.randint(1, 3) for _ in range(25)]

        results = await asyncio.gather(*[
            manager.check_and_reserve([line("P1", qty)], f"chk_{i}")
            for i, qty in enumerate(quantities)
        ])

        reserved = sum(q for q, r in zip(quantities, results) if r.success)
        assert reserved <= stock
        assert sum(r.quantity for r in store.reservations) == reserved
        assert any(r.success for r in results)
        assert any(not r.success for r in results)

    @pytest.mark.asyncio
    async def test_overlapping_carts_do_not_deadlock(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("A", stock=10), product_factory("B", stock=10))

        results = await asyncio.wait_for(
            asyncio.gather(*[
                manager.check_and_reserve(
                    [line("A", 1), line("B", 1)] if i % 2 else [line("B", 1), line("A", 1)],
                    f"chk_{i}",
                )
                for i in range(12)
            ]),
            timeout=5,
        )

        assert sum(r.success for r in results) == 10
        assert sum(r.quantity for r in store.reservations if r.product_id == "A") == 10


class TestTransitions:
    @pytest.mark.asyncio
    async def test_cancel_frees_stock_immediately(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=2))
        assert (await manager.check_and_reserve([line("P1", 2)], "chk_1")).success

        cancelled = await manager.cancel_reservations("chk_1")
        retry = await manager.check_and_reserve([line("P1", 2)], "chk_2")

        assert cancelled == 1
        assert retry.success

    @pytest.mark.asyncio
    async def test_confirm_only_touches_own_pending_rows(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=5))
        await manager.check_and_reserve([line("P1", 1)], "chk_1")
        await manager.check_and_reserve([line("P1", 1)], "chk_2")

        confirmed = await manager.confirm_reservations("chk_1")

        assert confirmed == 1
        statuses = {r.payment_session_id: r.status for r in store.reservations}
        assert statuses == {"chk_1": ReservationStatus.CONFIRMED, "chk_2": ReservationStatus.PENDING}

    @pytest.mark.asyncio
    async def test_get_reserved_quantity(self, reservation_store_factory, product_factory):
        store, manager = reservation_store_factory(product_factory("P1", stock=5))
        await manager.check_and_reserve([line("P1", 3)], "chk_1")

        assert await manager.get_reserved_quantity("P1") == 3


class TestQueries:
    def test_reserved_query_filters_active_pending(self, now):
        sql = str(reserved_quantity_query(["P1"], now).compile(dialect=postgresql.dialect()))

        assert "stock_reservations.status = " in sql
        assert "stock_reservations.expires_at > " in sql
        assert "GROUP BY stock_reservations.product_id" in sql

    def test_lock_query_is_ordered_for_update(self):
        sql = str(lock_products_query(["P2", "P1"]).compile(dialect=postgresql.dialect()))

        assert "ORDER BY products.id" in sql
        assert sql.rstrip().endswith("FOR UPDATE")

    @pytest.mark.asyncio
    async def test_sql_path_commits_rows(self, mock_db, mock_session_factory, product_factory):
        products_result = MagicMock()
        products_result.scalars.return_value.all.return_value = [product_factory("P1", stock=5)]
        reserved_result = MagicMock()
        reserved_result.all.return_value = [("P1", 2)]
        mock_db.execute.side_effect = [products_result, reserved_result]

        manager = StockReservationManager(mock_session_factory)
        result = await manager.check_and_reserve([line("P1", 3)], "chk_1")

        assert result.success
        mock_db.add_all.assert_called_once()
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sql_path_rolls_back_on_violation(self, mock_db, mock_session_factory, product_factory):
        products_result = MagicMock()
        products_result.scalars.return_value.all.return_value = [product_factory("P1", stock=5)]
        reserved_result = MagicMock()
        reserved_result.all.return_value = [("P1", 4)]
        mock_db.execute.side_effect = [products_result, reserved_result]

        manager = StockReservationManager(mock_session_factory)
        result = await manager.check_and_reserve([line("P1", 3)], "chk_1")

        assert not result.success
        assert result.insufficient_stock[0]["available"] == 1
        mock_db.add_all.assert_not_called()
        mock_db.commit.assert_not_awaited()
        mock_db.rollback.assert_awaited()


def test_find_stock_violations_pure(product_factory):
    products = {"P1": product_factory("P1", stock=3), "P2": product_factory("P2", stock=None)}
    requested = aggregate_quantities([line("P1", 2), line("P2", 50), line("P1", 1)])

    assert requested == {"P1": 3, "P2": 50}
    assert find_stock_violations(requested, products, {"P1": 0}) == []
    assert find_stock_violations(requested, products, {"P1": 1})[0]["available"] == 2


@pytest.mark.asyncio
async def test_store_failure_logged_with_payment_session_id(mock_db, mock_session_factory, caplog):
    mock_db.execute.side_effect = ConnectionResetError("connection reset by peer")
    manager = StockReservationManager(mock_session_factory)

    with caplog.at_level(logging.ERROR, logger="checkout_engine.services.stock_reservation"):
        with pytest.raises(ConnectionResetError):
            await manager.check_and_reserve([line("P1", 1)], "chk_store_down")

    mock_db.rollback.assert_awaited_once()
    mock_db.commit.assert_not_awaited()
    records = [r for r in caplog.records if "chk_store_down" in r.getMessage()]
    assert records and records[0].exc_info is not None
