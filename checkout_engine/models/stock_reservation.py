"""
Stock Reservation model

Temporarily holds stock between checkout-session creation and payment
confirmation. Stock itself is never decremented here: availability is
`ceiling - SUM(active PENDING reservations)`, and a PENDING row stops
counting the moment `expires_at` passes, whether or not the reaper has run.
"""
import enum
from datetime import datetime, timedelta, timezone
from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship

from checkout_engine.core.database import Base

# Default reservation TTL in minutes
RESERVATION_TTL_MINUTES = 15


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class StockReservation(Base):
    """
    Lifecycle:
    1. Created PENDING when the checkout session is built
    2. CONFIRMED by the payment webhook
    3. CANCELLED when the checkout attempt fails after reserving
    4. Otherwise logically expired once now > expires_at
    """
    __tablename__ = "stock_reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
        Index("ix_stock_reservations_active", "product_id", "status", "expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False, index=True)
    payment_session_id = Column(String(255), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    status = Column(
        Enum(ReservationStatus, name="reservation_status"),
        nullable=False,
        default=ReservationStatus.PENDING,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    product = relationship("Product")

    def is_active(self, now: datetime) -> bool:
        """True while this row still counts toward reserved stock."""
        return self.status == ReservationStatus.PENDING and self.expires_at > now

    @classmethod
    def create_expiry(cls, ttl_minutes: int = RESERVATION_TTL_MINUTES, now: datetime = None) -> datetime:
        """Calculate expiry timestamp from now."""
        return (now or datetime.now(timezone.utc)) + timedelta(minutes=ttl_minutes)
