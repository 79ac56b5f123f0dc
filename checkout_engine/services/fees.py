"""
Payment processor fee schedule

The buyer pays the processor fee as a visible line item. It is computed once,
on the full subtotal (products + delivery + notification), never on a total
that already contains a processor fee.

Two policies:
- flat (default): round_half_up(subtotal * percent) + fixed
- gross_up: the fee that leaves exactly `subtotal` after the processor takes
  percent + fixed of the grand total
"""
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple


class StripeFeeSchedule:
    def __init__(self, percent: float = 1.5, fixed_cents: int = 25, gross_up: bool = False):
        self.percent = Decimal(str(percent))
        self.fixed_cents = fixed_cents
        self.gross_up = gross_up

    def processor_fee_cents(self, subtotal_cents: int) -> int:
        if subtotal_cents <= 0:
            return 0

        if self.gross_up:
            rate = self.percent / 100
            total = Decimal(subtotal_cents + self.fixed_cents) / (1 - rate)
            return int(math.ceil(total)) - subtotal_cents

        variable = (Decimal(subtotal_cents) * self.percent / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(variable) + self.fixed_cents

    def buyer_total(self, subtotal_cents: int) -> Tuple[int, int]:
        """Return (buyer_total_cents, processor_fee_cents)."""
        fee = self.processor_fee_cents(subtotal_cents)
        return subtotal_cents + fee, fee
