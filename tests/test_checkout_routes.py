"""
Tests for checkout API routes.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from checkout_engine.api.deps import Services
from checkout_engine.core.exceptions import (
    GatewaySessionFailedError,
    InsufficientStockError,
    SellersNotPayableError,
)
from checkout_engine.main import create_app, run_stock_cleanup
from checkout_engine.schemas.checkout import CheckoutResponse, DeliveryQuoteResponse, PricingOut

PRICING = PricingOut(
    products_total_cents=1000,
    delivery_fee_cents=0,
    notification_fee_cents=0,
    processor_fee_cents=40,
    subtotal_cents=1000,
    grand_total_cents=1040,
)

CHECKOUT_PAYLOAD = {
    "buyer_id": "buyer-1",
    "items": [{"product_id": "P1", "quantity": 2}],
    "delivery_mode": "PICKUP",
}


@pytest.fixture
def db():
    db = AsyncMock()
    db.execute = AsyncMock()
    return db


@pytest.fixture
def services(db):
    @asynccontextmanager
    async def session_factory():
        yield db

    return Services(
        session_factory=session_factory,
        reservations=AsyncMock(),
        checkout=AsyncMock(),
    )


@pytest.fixture
def client(settings, services):
    app = create_app(settings, services=services)
    with TestClient(app) as client:
        yield client


class TestCreateCheckout:
    def test_success(self, client, services):
        services.checkout.create_checkout.return_value = CheckoutResponse(
            session_id="cs_test_1",
            url="https://checkout.stripe.com/c/pay/cs_test_1",
            payment_session_id="chk_1",
            reservation_expires_at=datetime(2026, 10, 18, 12, 15, tzinfo=timezone.utc),
            reservation_ttl_minutes=15,
            pricing=PRICING,
        )

        response = client.post("/api/checkout", json=CHECKOUT_PAYLOAD)

        assert response.status_code == 200
        body = response.json()
        assert body["url"] == "https://checkout.stripe.com/c/pay/cs_test_1"
        assert body["pricing"]["grand_total_cents"] == 1040
        request = services.checkout.create_checkout.await_args.args[0]
        assert request.items[0].quantity == 2

    def test_insufficient_stock_is_structured(self, client, services):
        violations = [
            {"product_id": "P1", "requested": 2, "available": 1, "title": "Product P1"},
            {"product_id": "P2", "requested": 1, "available": 0, "title": "Product P2"},
        ]
        services.checkout.create_checkout.side_effect = InsufficientStockError(violations)

        response = client.post("/api/checkout", json=CHECKOUT_PAYLOAD)

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert body["details"]["insufficient_stock"] == violations

    def test_sellers_not_payable(self, client, services):
        services.checkout.create_checkout.side_effect = SellersNotPayableError(
            [{"id": "S1", "name": "Comic Corner", "email": "s1@example.com"}]
        )

        response = client.post("/api/checkout", json=CHECKOUT_PAYLOAD)

        assert response.status_code == 400
        assert response.json()["details"]["sellers"][0]["name"] == "Comic Corner"

    def test_gateway_failure_is_generic(self, client, services):
        services.checkout.create_checkout.side_effect = GatewaySessionFailedError(
            "Invalid API key sk_live_xxx", payment_session_id="chk_1"
        )

        response = client.post("/api/checkout", json=CHECKOUT_PAYLOAD)

        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "GATEWAY_SESSION_FAILED"
        assert "sk_live" not in body["error"]
        assert "details" not in body

    @pytest.mark.parametrize("items", [
        [{"product_id": "P1", "quantity": 0}],
        [{"product_id": "P1|2", "quantity": 1}],
        [{"product_id": "P1;P2", "quantity": 1}],
    ])
    def test_invalid_lines_rejected(self, client, services, items):
        response = client.post("/api/checkout", json={**CHECKOUT_PAYLOAD, "items": items})

        assert response.status_code == 422
        services.checkout.create_checkout.assert_not_awaited()

    def test_unknown_delivery_mode_rejected(self, client):
        response = client.post("/api/checkout", json={**CHECKOUT_PAYLOAD, "delivery_mode": "DRONE"})
        assert response.status_code == 422


class TestDeliveryFeeQuote:
    def test_quote(self, client, services):
        services.checkout.quote_delivery_fee.return_value = DeliveryQuoteResponse(pricing=PRICING, distance_km=None)

        response = client.post("/api/checkout/delivery-fee", json={"items": CHECKOUT_PAYLOAD["items"]})

        assert response.status_code == 200
        assert response.json()["pricing"]["processor_fee_cents"] == 40


class TestCancelReservation:
    def test_cancelled(self, client, services):
        services.reservations.cancel_reservations.return_value = 2

        response = client.post("/api/checkout/cancel-reservation", json={"payment_session_id": "chk_1"})

        assert response.json() == {"status": "cancelled", "reservations_released": 2}
        services.reservations.cancel_reservations.assert_awaited_once_with("chk_1")

    def test_nothing_to_cancel(self, client, services):
        services.reservations.cancel_reservations.return_value = 0

        response = client.post("/api/checkout/cancel-reservation", json={"payment_session_id": "chk_1"})

        assert response.json()["status"] == "no_reservation"


class TestReservationStats:
    def test_stats(self, client, db):
        result = MagicMock()
        result.one.return_value = (3, 1, 2, 1, 0, 1, 0)
        db.execute.return_value = result

        response = client.get("/api/checkout/reservations/stats")

        assert response.status_code == 200
        assert response.json()["active_reserved_quantity"] == 2


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_database_down(self, client, db):
        db.execute.side_effect = ConnectionRefusedError("connection refused")

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_run_stock_cleanup_updates_heartbeat(settings, services):
    app = create_app(settings, services=services)

    with patch(
        "checkout_engine.main.release_expired_reservations",
        AsyncMock(return_value={"reservations_expired": 2, "reservations_deleted": 1, "errors": 0}),
    ) as release:
        await run_stock_cleanup(app)

    release.assert_awaited_once()
    heartbeat = app.state.cleanup_heartbeat
    assert heartbeat["last_success"] is not None
    assert heartbeat["records_processed"] == 3
