"""
Pricing Engine

Turns a cart, delivery mode and coordinates into a PricedCart:

    products + delivery + notification = subtotal
    subtotal + processor fee          = grand total

Integer cents throughout. The processor fee is computed exactly once, on the
subtotal, so fees never compound.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from checkout_engine.services.cart import CartLine, DeliveryMode, products_total_cents
from checkout_engine.services.delivery_pricing import (
    DeliveryFeeBreakdown,
    DeliveryType,
    default_delivery_fee,
    price_delivery,
)
from checkout_engine.services.distance import Coordinates, round_km
from checkout_engine.services.fees import StripeFeeSchedule

logger = logging.getLogger(__name__)


@dataclass
class PricedCart:
    products_total_cents: int
    delivery_fee_cents: int
    delivery_fee_breakdown: Optional[DeliveryFeeBreakdown]
    notification_fee_cents: int
    processor_fee_cents: int
    subtotal_cents: int
    grand_total_cents: int

    @property
    def distance_km(self) -> Optional[float]:
        if self.delivery_fee_breakdown is None:
            return None
        return self.delivery_fee_breakdown.distance_km


def delivery_type_for_mode(delivery_mode: DeliveryMode) -> DeliveryType:
    if delivery_mode == DeliveryMode.LOCAL_DELIVERY:
        return DeliveryType.SELLER_DELIVERY
    return DeliveryType.PLATFORM_COURIERS


class PricingEngine:
    """
    Prices a cart.

    Args:
        distance_provider: object with `async distance_km(origin, destination)`
        fee_schedule: processor fee schedule, invoked once per cart
        sms_fee_cents: notification surcharge per unique seller
        default_delivery_fee_cents: flat fee when coordinates are missing
    """

    def __init__(
        self,
        distance_provider,
        fee_schedule: Optional[StripeFeeSchedule] = None,
        sms_fee_cents: int = 6,
        default_delivery_fee_cents: int = 250,
    ):
        self.distance_provider = distance_provider
        self.fee_schedule = fee_schedule or StripeFeeSchedule()
        self.sms_fee_cents = sms_fee_cents
        self.default_delivery_fee_cents = default_delivery_fee_cents

    async def max_seller_distance_km(
        self,
        seller_coordinates: Mapping[str, Optional[Coordinates]],
        buyer_coordinates: Coordinates,
    ) -> Optional[float]:
        """Farthest seller from the buyer, rounded to one decimal. None if no seller has a location."""
        distances: List[float] = []
        for seller_id, origin in seller_coordinates.items():
            if origin is None:
                logger.warning(f"Seller {seller_id} has no location, excluded from distance")
                continue
            distances.append(await self.distance_provider.distance_km(origin, buyer_coordinates))

        if not distances:
            return None
        return round_km(max(distances))

    async def price_delivery(
        self,
        delivery_mode: DeliveryMode,
        seller_coordinates: Mapping[str, Optional[Coordinates]],
        buyer_coordinates: Optional[Coordinates],
        seller_countries: Optional[Dict[str, str]] = None,
        buyer_country: str = "NL",
    ) -> Optional[DeliveryFeeBreakdown]:
        if not delivery_mode.is_delivery:
            return None

        if buyer_coordinates is None:
            logger.info(f"No buyer coordinates for {delivery_mode.value}, using default delivery fee")
            return default_delivery_fee(self.default_delivery_fee_cents)

        distance_km = await self.max_seller_distance_km(seller_coordinates, buyer_coordinates)
        if distance_km is None:
            logger.info("No seller coordinates available, using default delivery fee")
            return default_delivery_fee(self.default_delivery_fee_cents)

        foreign = sorted({
            country.upper()
            for country in (seller_countries or {}).values()
            if country and country.upper() != buyer_country.upper()
        })
        seller_country = foreign[0] if foreign else None

        return price_delivery(
            distance_km,
            delivery_type_for_mode(delivery_mode),
            is_international=bool(foreign),
            seller_country=seller_country,
            buyer_country=buyer_country.upper() if foreign else None,
        )

    async def price(
        self,
        cart_lines: List[CartLine],
        delivery_mode: DeliveryMode,
        seller_coordinates: Mapping[str, Optional[Coordinates]],
        buyer_coordinates: Optional[Coordinates],
        notification_requested: bool,
        unique_seller_count: int,
        seller_countries: Optional[Dict[str, str]] = None,
        buyer_country: str = "NL",
    ) -> PricedCart:
        products_total = products_total_cents(cart_lines)

        breakdown = await self.price_delivery(
            delivery_mode,
            seller_coordinates,
            buyer_coordinates,
            seller_countries=seller_countries,
            buyer_country=buyer_country,
        )
        delivery_fee = breakdown.total_cents if breakdown else 0

        notification_fee = self.sms_fee_cents * unique_seller_count if notification_requested else 0

        subtotal = products_total + delivery_fee + notification_fee
        processor_fee = self.fee_schedule.processor_fee_cents(subtotal)

        return PricedCart(
            products_total_cents=products_total,
            delivery_fee_cents=delivery_fee,
            delivery_fee_breakdown=breakdown,
            notification_fee_cents=notification_fee,
            processor_fee_cents=processor_fee,
            subtotal_cents=subtotal,
            grand_total_cents=subtotal + processor_fee,
        )
