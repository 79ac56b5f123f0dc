"""
Product model

Products are owned by the catalog; the checkout engine only reads them.
`stock` is the authoritative ceiling, `max_stock` is used when `stock` is
unset, and a product with neither is unlimited.
"""
import enum
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from checkout_engine.core.database import Base


class ProductDelivery(str, enum.Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"
    BOTH = "BOTH"


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock IS NULL OR stock >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)

    # Inventory (NULL = unmanaged)
    stock = Column(Integer, nullable=True)
    max_stock = Column(Integer, nullable=True)

    delivery = Column(Enum(ProductDelivery, name="product_delivery"), nullable=False, default=ProductDelivery.BOTH)

    seller_id = Column(String(64), ForeignKey("sellers.id"), nullable=True, index=True)
    seller = relationship("Seller")

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def stock_ceiling(self) -> Optional[int]:
        """Finite stock ceiling, or None when the product is unlimited."""
        if self.stock is not None:
            return self.stock
        return self.max_stock

    def supports_delivery_mode(self, delivery_mode: str) -> bool:
        if self.delivery == ProductDelivery.BOTH:
            return True
        if delivery_mode == "PICKUP":
            return self.delivery == ProductDelivery.PICKUP
        return self.delivery == ProductDelivery.DELIVERY
