from checkout_engine.models.seller import Seller
from checkout_engine.models.product import Product, ProductDelivery
from checkout_engine.models.stock_reservation import (
    StockReservation,
    ReservationStatus,
    RESERVATION_TTL_MINUTES,
)
