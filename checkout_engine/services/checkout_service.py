"""
Checkout Service

SAFE CHECKOUT FLOW (single pass per attempt):
1. Validate request (cart not empty, coordinates for courier delivery)
2. Load catalog rows (no lock) and check delivery mode support
3. Check every seller can receive payouts
4. Check and reserve stock (FOR UPDATE, one transaction)
5. Price the cart
6. Delivery feasibility (DELIVERY / TEEN_DELIVERY only)
7. Build the Stripe session (never retried)

Any failure after step 4 cancels the attempt's reservations. If the caller
disappears mid-flight the PENDING rows simply expire.
"""
import logging
import time
import uuid
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from checkout_engine.core.config import Settings
from checkout_engine.core.exceptions import (
    CheckoutValidationError,
    DeliveryCoordinatesRequiredError,
    DeliveryModeNotSupportedError,
    DeliveryUnavailableError,
    EmptyCartError,
    InsufficientStockError,
    ProductNotFoundError,
)
from checkout_engine.models import Product, Seller
from checkout_engine.schemas.checkout import (
    CheckoutRequest,
    CheckoutResponse,
    DeliveryQuoteRequest,
    DeliveryQuoteResponse,
    PricingOut,
)
from checkout_engine.services.cart import CartLine
from checkout_engine.services.delivery_availability import DeliveryFeasibilityGate
from checkout_engine.services.distance import Coordinates
from checkout_engine.services.pricing import PricedCart, PricingEngine
from checkout_engine.services.session_builder import BuyerDetails, CheckoutSessionBuilder
from checkout_engine.services.stock_reservation import StockReservationManager

logger = logging.getLogger(__name__)


def new_payment_session_id() -> str:
    return f"chk_{uuid.uuid4().hex}"


def pricing_to_schema(priced: PricedCart) -> PricingOut:
    breakdown = priced.delivery_fee_breakdown
    return PricingOut(
        products_total_cents=priced.products_total_cents,
        delivery_fee_cents=priced.delivery_fee_cents,
        delivery_fee_breakdown=breakdown.to_dict() if breakdown else None,
        notification_fee_cents=priced.notification_fee_cents,
        processor_fee_cents=priced.processor_fee_cents,
        subtotal_cents=priced.subtotal_cents,
        grand_total_cents=priced.grand_total_cents,
    )


class CheckoutService:
    """
    Orchestrates a checkout attempt. All collaborators are injected.

    Usage:
        service = CheckoutService(session_factory, reservations, pricing, builder, gate, settings)
        response = await service.create_checkout(request)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        reservations: StockReservationManager,
        pricing: PricingEngine,
        builder: CheckoutSessionBuilder,
        gate: DeliveryFeasibilityGate,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.reservations = reservations
        self.pricing = pricing
        self.builder = builder
        self.gate = gate
        self.settings = settings

    async def load_catalog(self, product_ids: List[str]) -> Dict[str, Product]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Product)
                .options(selectinload(Product.seller))
                .where(Product.id.in_(product_ids))
            )
            return {p.id: p for p in result.scalars().all()}

    async def _cart_from_request(
        self, request: DeliveryQuoteRequest
    ) -> Tuple[List[CartLine], List[Seller]]:
        """Resolve request lines against the catalog. Returns (lines, unique sellers)."""
        if not request.items:
            raise EmptyCartError("Cart is empty")

        product_ids = list(dict.fromkeys(item.product_id for item in request.items))
        products = await self.load_catalog(product_ids)

        missing = [pid for pid in product_ids if pid not in products]
        if missing:
            raise ProductNotFoundError(missing)

        mode = request.delivery_mode
        unsupported = [
            products[pid].title for pid in product_ids
            if not products[pid].supports_delivery_mode(mode.value)
        ]
        if unsupported:
            raise DeliveryModeNotSupportedError(mode.value, unsupported)

        lines = []
        sellers: Dict[str, Seller] = {}
        for item in request.items:
            product = products[item.product_id]
            lines.append(CartLine(
                product_id=product.id,
                quantity=item.quantity,
                unit_price_cents=product.price_cents,
                seller_id=product.seller_id,
                title=product.title,
            ))
            if product.seller is not None:
                sellers.setdefault(product.seller.id, product.seller)

        return lines, list(sellers.values())

    async def _price(
        self,
        lines: List[CartLine],
        sellers: List[Seller],
        request: DeliveryQuoteRequest,
    ) -> PricedCart:
        seller_coordinates: Dict[str, Optional[Coordinates]] = {
            s.id: Coordinates(lat=s.lat, lng=s.lng) if s.has_location else None
            for s in sellers
        }
        return await self.pricing.price(
            lines,
            request.delivery_mode,
            seller_coordinates,
            request.coordinates.to_coordinates() if request.coordinates else None,
            notification_requested=request.notification_requested,
            unique_seller_count=len(sellers),
            seller_countries={s.id: s.country for s in sellers},
            buyer_country=request.country or self.settings.DEFAULT_BUYER_COUNTRY,
        )

    async def quote_delivery_fee(self, request: DeliveryQuoteRequest) -> DeliveryQuoteResponse:
        """Price a cart without reserving stock or contacting the gateway."""
        lines, sellers = await self._cart_from_request(request)
        priced = await self._price(lines, sellers, request)
        return DeliveryQuoteResponse(pricing=pricing_to_schema(priced), distance_km=priced.distance_km)

    async def _compensate(self, payment_session_id: str, error: Exception) -> None:
        if isinstance(error, CheckoutValidationError):
            logger.info(f"Checkout {payment_session_id} rejected after reservation: {error.code}")
        else:
            logger.error(
                f"Checkout {payment_session_id} failed after reservation: {type(error).__name__}",
                exc_info=error,
            )

        try:
            await self.reservations.cancel_reservations(payment_session_id)
        except Exception as cleanup_error:
            # Rows stay PENDING and expire on their own
            logger.error(
                f"Reservation cancellation failed for {payment_session_id}: {cleanup_error}",
                exc_info=True,
            )

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResponse:
        """
        Run one checkout attempt.

        Raises:
            CheckoutValidationError: buyer-fixable problem (structured details)
            CheckoutInfrastructureError: gateway failure, after compensation
        """
        start_time = time.time()
        mode = request.delivery_mode

        if mode.requires_coordinates and request.coordinates is None:
            raise DeliveryCoordinatesRequiredError(mode.value)

        lines, sellers = await self._cart_from_request(request)
        self.builder.check_sellers_payable(sellers)

        payment_session_id = new_payment_session_id()
        reservation = await self.reservations.check_and_reserve(lines, payment_session_id)
        if not reservation.success:
            raise InsufficientStockError(reservation.insufficient_stock)

        try:
            priced = await self._price(lines, sellers, request)

            feasibility = None
            if mode.requires_feasibility_check:
                feasibility = await self.gate.check_feasible(
                    request.coordinates.to_coordinates(),
                    request.delivery_date,
                    request.delivery_time,
                )
                if not feasibility.available:
                    raise DeliveryUnavailableError()

            session = await self.builder.build_session(
                lines,
                priced,
                mode,
                sellers,
                BuyerDetails(
                    buyer_id=request.buyer_id,
                    address=request.address,
                    notes=request.notes,
                    pickup_date=request.pickup_date,
                    delivery_date=request.delivery_date,
                    delivery_time=request.delivery_time,
                    coordinates=request.coordinates.to_coordinates() if request.coordinates else None,
                    notification_requested=request.notification_requested,
                    customer_email=request.customer_email,
                ),
                payment_session_id,
                feasibility=feasibility,
            )
        except Exception as e:
            await self._compensate(payment_session_id, e)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"CHECKOUT_METRIC: checkout_session_created "
            f"buyer_id={request.buyer_id} "
            f"payment_session_id={payment_session_id} "
            f"session_id={session.session_id} "
            f"delivery_mode={mode.value} "
            f"amount_cents={priced.grand_total_cents} "
            f"item_count={len(lines)} "
            f"seller_count={len(sellers)} "
            f"duration_ms={duration_ms:.2f}"
        )

        return CheckoutResponse(
            session_id=session.session_id,
            url=session.url,
            payment_session_id=payment_session_id,
            reservation_expires_at=reservation.expires_at,
            reservation_ttl_minutes=self.reservations.ttl_minutes,
            pricing=pricing_to_schema(priced),
            delivery_check_failed=feasibility is not None and not feasibility.checked,
        )
