"""
Cart types shared by the checkout services.
"""
import enum
from dataclasses import dataclass
from typing import Iterable, Optional


class DeliveryMode(str, enum.Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"
    TEEN_DELIVERY = "TEEN_DELIVERY"
    LOCAL_DELIVERY = "LOCAL_DELIVERY"

    @property
    def is_delivery(self) -> bool:
        return self != DeliveryMode.PICKUP

    @property
    def requires_coordinates(self) -> bool:
        return self in (DeliveryMode.DELIVERY, DeliveryMode.TEEN_DELIVERY)

    @property
    def requires_feasibility_check(self) -> bool:
        return self in (DeliveryMode.DELIVERY, DeliveryMode.TEEN_DELIVERY)


@dataclass
class CartLine:
    product_id: str
    quantity: int
    unit_price_cents: int
    seller_id: Optional[str] = None
    title: Optional[str] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Cart line quantity must be positive, got {self.quantity}")

    @property
    def total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def products_total_cents(lines: Iterable[CartLine]) -> int:
    return sum(line.total_cents for line in lines)
