"""
Seller model

Read-only for checkout: location drives delivery distance, payout fields
decide whether the seller can be paid through the gateway.
"""
from sqlalchemy import Column, String, Float, Boolean

from checkout_engine.core.database import Base


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)

    # Pickup location
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    country = Column(String(2), nullable=False, default="NL")

    # Gateway payout account (Stripe Connect)
    payout_account_id = Column(String(255), nullable=True)
    payout_onboarding_completed = Column(Boolean, nullable=False, default=False)

    @property
    def is_payable(self) -> bool:
        return bool(self.payout_account_id) and bool(self.payout_onboarding_completed)

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lng is not None
