"""
Checkout routes

POST /api/checkout                     create a hosted payment session
POST /api/checkout/delivery-fee        price a cart without reserving
POST /api/checkout/cancel-reservation  release an attempt's reservations
GET  /api/checkout/reservations/stats  reservation monitoring
"""
import logging

from fastapi import APIRouter, Depends, Request

from checkout_engine.api.deps import get_checkout_service, get_reservation_manager, get_services, Services
from checkout_engine.core.error_handler import checkout_error_response
from checkout_engine.core.exceptions import CheckoutEngineError, CheckoutInfrastructureError
from checkout_engine.core.rate_limit import limiter, checkout_limit
from checkout_engine.schemas.checkout import (
    CancelReservationRequest,
    CancelReservationResponse,
    CheckoutRequest,
    CheckoutResponse,
    DeliveryQuoteRequest,
    DeliveryQuoteResponse,
)
from checkout_engine.services.checkout_service import CheckoutService
from checkout_engine.services.stock_cleanup import get_reservation_stats
from checkout_engine.services.stock_reservation import StockReservationManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=CheckoutResponse)
@limiter.limit(checkout_limit)
async def create_checkout(
    request: Request,
    payload: CheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Reserve stock, price the cart and create a Stripe Checkout Session.

    Buyer-fixable problems (stock, payouts, delivery) come back as
    {error, code, details} with a 4xx status.
    """
    try:
        return await service.create_checkout(payload)
    except CheckoutEngineError as e:
        if isinstance(e, CheckoutInfrastructureError):
            logger.error(f"Checkout failed for buyer {payload.buyer_id}: {e.to_dict()}")
        return checkout_error_response(e)


@router.post("/delivery-fee", response_model=DeliveryQuoteResponse)
async def quote_delivery_fee(
    payload: DeliveryQuoteRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        return await service.quote_delivery_fee(payload)
    except CheckoutEngineError as e:
        return checkout_error_response(e)


@router.post("/cancel-reservation", response_model=CancelReservationResponse)
async def cancel_reservation(
    payload: CancelReservationRequest,
    reservations: StockReservationManager = Depends(get_reservation_manager),
):
    """Buyer left the hosted page. Released stock is available immediately."""
    released = await reservations.cancel_reservations(payload.payment_session_id)
    if not released:
        return CancelReservationResponse(status="no_reservation", reservations_released=0)
    return CancelReservationResponse(status="cancelled", reservations_released=released)


@router.get("/reservations/stats")
async def reservation_stats(services: Services = Depends(get_services)):
    return await get_reservation_stats(services.session_factory)
