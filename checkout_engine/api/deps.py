"""
Service wiring for the API

Collaborators are built once per application from Settings and stored on
`app.state.services`. Routes receive them through FastAPI dependencies, so
tests can hand the app a container of fakes.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from checkout_engine.core.config import Settings
from checkout_engine.core.database import create_engine_from_settings, create_session_factory
from checkout_engine.services.checkout_service import CheckoutService
from checkout_engine.services.delivery_availability import DeliveryAvailabilityClient, DeliveryFeasibilityGate
from checkout_engine.services.distance import GoogleRouteDistanceProvider, HaversineDistanceProvider
from checkout_engine.services.fees import StripeFeeSchedule
from checkout_engine.services.payment_gateway import StripePaymentGateway
from checkout_engine.services.pricing import PricingEngine
from checkout_engine.services.session_builder import CheckoutSessionBuilder
from checkout_engine.services.stock_reservation import StockReservationManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: async_sessionmaker
    reservations: StockReservationManager
    checkout: CheckoutService
    engine: Optional[AsyncEngine] = None
    closers: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def close(self) -> None:
        for close in self.closers:
            await close()
        if self.engine is not None:
            await self.engine.dispose()


def build_services(settings: Settings) -> Services:
    engine = create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)

    if settings.GOOGLE_MAPS_API_KEY:
        distance_provider = GoogleRouteDistanceProvider(
            settings.GOOGLE_MAPS_API_KEY,
            timeout=settings.DISTANCE_TIMEOUT_SECONDS,
            cache_ttl_seconds=settings.DISTANCE_CACHE_TTL_SECONDS,
            cache_max_entries=settings.DISTANCE_CACHE_MAX_ENTRIES,
        )
        logger.info("Distance provider: Google Distance Matrix with haversine fallback")
    else:
        distance_provider = HaversineDistanceProvider()
        logger.info("Distance provider: haversine")

    availability_client = DeliveryAvailabilityClient(
        settings.DELIVERY_AVAILABILITY_URL,
        timeout=settings.DELIVERY_AVAILABILITY_TIMEOUT_SECONDS,
    )

    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not set, checkout session creation will fail")
    gateway = StripePaymentGateway(
        settings.STRIPE_SECRET_KEY,
        currency=settings.checkout_currency,
        timeout=settings.STRIPE_TIMEOUT_SECONDS,
        minimum_charge_cents=settings.STRIPE_MINIMUM_CHARGE_CENTS,
    )

    reservations = StockReservationManager(session_factory, ttl_minutes=settings.RESERVATION_TTL_MINUTES)
    pricing = PricingEngine(
        distance_provider,
        StripeFeeSchedule(
            percent=settings.PROCESSOR_FEE_PERCENT,
            fixed_cents=settings.PROCESSOR_FEE_FIXED_CENTS,
            gross_up=settings.PROCESSOR_FEE_GROSS_UP,
        ),
        sms_fee_cents=settings.SMS_NOTIFICATION_FEE_CENTS,
        default_delivery_fee_cents=settings.DEFAULT_DELIVERY_FEE_CENTS,
    )
    checkout = CheckoutService(
        session_factory,
        reservations,
        pricing,
        CheckoutSessionBuilder(gateway, settings),
        DeliveryFeasibilityGate(availability_client),
        settings,
    )

    return Services(
        session_factory=session_factory,
        reservations=reservations,
        checkout=checkout,
        engine=engine,
        closers=[distance_provider.close, availability_client.close],
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_checkout_service(request: Request) -> CheckoutService:
    return get_services(request).checkout


def get_reservation_manager(request: Request) -> StockReservationManager:
    return get_services(request).reservations
