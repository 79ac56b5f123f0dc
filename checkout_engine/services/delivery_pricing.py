"""
Delivery fee tiers

Standard tier (<= 30 km) depends on who delivers:
- PLATFORM_COURIERS: EUR 2.50 base covers the first 3 km, then EUR 0.50/km
- SELLER_DELIVERY:   EUR 1.50 base covers the first 2 km, then EUR 0.35/km

Long-distance tier (> 30 km, or any cross-border delivery):
- EUR 5.00 base + EUR 0.45/km over the whole distance
- cross-border adds a EUR 5.00 surcharge to the distance fee

Every fee is split courier 88% / platform remainder. The courier share is
rounded half-up and the platform share takes whatever is left, so the two
always add up to the total.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

LONG_DISTANCE_THRESHOLD_KM = 30.0
COURIER_SHARE_PERCENT = 88
INTERNATIONAL_SURCHARGE_CENTS = 500


class DeliveryType(str, enum.Enum):
    PLATFORM_COURIERS = "PLATFORM_COURIERS"
    SELLER_DELIVERY = "SELLER_DELIVERY"


class DeliveryTier(str, enum.Enum):
    STANDARD = "STANDARD"
    LONG_DISTANCE = "LONG_DISTANCE"
    DEFAULT = "DEFAULT"  # no coordinates, flat fallback


@dataclass(frozen=True)
class TierRates:
    base_fee_cents: int
    included_km: float
    per_km_cents: int


STANDARD_RATES = {
    DeliveryType.PLATFORM_COURIERS: TierRates(base_fee_cents=250, included_km=3.0, per_km_cents=50),
    DeliveryType.SELLER_DELIVERY: TierRates(base_fee_cents=150, included_km=2.0, per_km_cents=35),
}
LONG_DISTANCE_RATES = TierRates(base_fee_cents=500, included_km=0.0, per_km_cents=45)


@dataclass
class DeliveryFeeBreakdown:
    base_fee_cents: int
    distance_fee_cents: int
    total_cents: int
    courier_share_cents: int
    platform_share_cents: int
    distance_km: Optional[float]
    tier: DeliveryTier
    is_international: bool = False
    seller_country: Optional[str] = None
    buyer_country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Compact camelCase form stored in gateway metadata."""
        data = {
            "baseFeeCents": self.base_fee_cents,
            "distanceFeeCents": self.distance_fee_cents,
            "totalCents": self.total_cents,
            "courierShareCents": self.courier_share_cents,
            "platformShareCents": self.platform_share_cents,
            "distanceKm": self.distance_km,
            "tier": self.tier.value,
            "isInternational": self.is_international,
        }
        if self.seller_country:
            data["sellerCountry"] = self.seller_country
        if self.buyer_country:
            data["buyerCountry"] = self.buyer_country
        return data


def split_fee(total_cents: int) -> Tuple[int, int]:
    """Split a fee into (courier, platform) shares without losing a cent."""
    courier = int(
        (Decimal(total_cents) * COURIER_SHARE_PERCENT / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return courier, total_cents - courier


def _distance_fee_cents(distance_km: float, rates: TierRates) -> int:
    billable_km = max(Decimal("0"), Decimal(str(distance_km)) - Decimal(str(rates.included_km)))
    return int((billable_km * rates.per_km_cents).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _breakdown(
    base_fee_cents: int,
    distance_fee_cents: int,
    distance_km: Optional[float],
    tier: DeliveryTier,
    **extra,
) -> DeliveryFeeBreakdown:
    total = base_fee_cents + distance_fee_cents
    courier, platform = split_fee(total)
    return DeliveryFeeBreakdown(
        base_fee_cents=base_fee_cents,
        distance_fee_cents=distance_fee_cents,
        total_cents=total,
        courier_share_cents=courier,
        platform_share_cents=platform,
        distance_km=distance_km,
        tier=tier,
        **extra,
    )


def calculate_delivery_fee(distance_km: float, delivery_type: DeliveryType) -> DeliveryFeeBreakdown:
    """Standard tier fee. Zero distance still pays the base fee."""
    rates = STANDARD_RATES[delivery_type]
    return _breakdown(
        rates.base_fee_cents,
        _distance_fee_cents(distance_km, rates),
        distance_km,
        DeliveryTier.STANDARD,
    )


def calculate_long_distance_delivery_fee(
    distance_km: float,
    is_international: bool = False,
    seller_country: Optional[str] = None,
    buyer_country: Optional[str] = None,
) -> DeliveryFeeBreakdown:
    distance_fee = _distance_fee_cents(distance_km, LONG_DISTANCE_RATES)
    if is_international:
        distance_fee += INTERNATIONAL_SURCHARGE_CENTS
    return _breakdown(
        LONG_DISTANCE_RATES.base_fee_cents,
        distance_fee,
        distance_km,
        DeliveryTier.LONG_DISTANCE,
        is_international=is_international,
        seller_country=seller_country,
        buyer_country=buyer_country,
    )


def default_delivery_fee(fee_cents: int) -> DeliveryFeeBreakdown:
    """Flat fallback used when coordinates are unavailable."""
    return _breakdown(fee_cents, 0, None, DeliveryTier.DEFAULT)


def price_delivery(
    distance_km: float,
    delivery_type: DeliveryType,
    is_international: bool = False,
    seller_country: Optional[str] = None,
    buyer_country: Optional[str] = None,
) -> DeliveryFeeBreakdown:
    """Pick the tier for a (rounded) distance. 30.0 km is still standard."""
    if is_international or distance_km > LONG_DISTANCE_THRESHOLD_KM:
        return calculate_long_distance_delivery_fee(
            distance_km,
            is_international=is_international,
            seller_country=seller_country,
            buyer_country=buyer_country,
        )
    breakdown = calculate_delivery_fee(distance_km, delivery_type)
    breakdown.seller_country = seller_country
    breakdown.buyer_country = buyer_country
    return breakdown
