"""
Pydantic Schemas for checkout

Request/response schemas for the checkout API endpoints. Prices and sellers
always come from the catalog, never from the request.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator

from checkout_engine.services.cart import DeliveryMode
from checkout_engine.services.distance import Coordinates

# Reserved by the compact metadata encoding
METADATA_SEPARATORS = ("|", ";")


# ==================== Request Schemas ====================

class CartLineIn(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., gt=0, le=1000)

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("product_id must not be blank")
        if any(sep in v for sep in METADATA_SEPARATORS):
            raise ValueError("product_id must not contain '|' or ';'")
        return v


class CoordinatesIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


class DeliveryQuoteRequest(BaseModel):
    """Price a cart without reserving anything."""
    items: List[CartLineIn] = Field(default_factory=list, max_length=200)
    delivery_mode: DeliveryMode = DeliveryMode.PICKUP
    coordinates: Optional[CoordinatesIn] = None
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    notification_requested: bool = False

    @field_validator("country")
    @classmethod
    def normalize_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class CheckoutRequest(DeliveryQuoteRequest):
    buyer_id: str = Field(..., min_length=1, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = Field(None, max_length=2000)
    notes: Optional[str] = Field(None, max_length=2000)
    pickup_date: Optional[str] = Field(None, max_length=50)
    delivery_date: Optional[str] = Field(None, max_length=50)
    delivery_time: Optional[str] = Field(None, max_length=50)


class CancelReservationRequest(BaseModel):
    payment_session_id: str = Field(..., min_length=1, max_length=255)


# ==================== Response Schemas ====================

class PricingOut(BaseModel):
    products_total_cents: int
    delivery_fee_cents: int
    delivery_fee_breakdown: Optional[Dict[str, Any]] = None
    notification_fee_cents: int
    processor_fee_cents: int
    subtotal_cents: int
    grand_total_cents: int


class DeliveryQuoteResponse(BaseModel):
    pricing: PricingOut
    distance_km: Optional[float] = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: str
    payment_session_id: str
    reservation_expires_at: Optional[datetime] = None
    reservation_ttl_minutes: int
    pricing: PricingOut
    delivery_check_failed: bool = False


class CancelReservationResponse(BaseModel):
    status: str
    reservations_released: int
