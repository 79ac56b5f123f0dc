"""
Tests for the processor fee schedule.
"""
from checkout_engine.services.fees import StripeFeeSchedule


class TestFlatSchedule:
    def test_percent_plus_fixed(self):
        schedule = StripeFeeSchedule(percent=1.5, fixed_cents=25)
        assert schedule.processor_fee_cents(1000) == 40

    def test_rounds_half_up(self):
        schedule = StripeFeeSchedule(percent=1.5, fixed_cents=25)
        # 1.5% of 1100 = 16.5
        assert schedule.processor_fee_cents(1100) == 42
        # 1.5% of 1030 = 15.45
        assert schedule.processor_fee_cents(1030) == 40

    def test_zero_subtotal_has_no_fee(self):
        assert StripeFeeSchedule().processor_fee_cents(0) == 0

    def test_buyer_total(self):
        total, fee = StripeFeeSchedule().buyer_total(1000)
        assert fee == 40
        assert total == 1040


class TestGrossUpSchedule:
    def test_net_after_processor_covers_subtotal(self):
        schedule = StripeFeeSchedule(percent=1.5, fixed_cents=25, gross_up=True)
        for subtotal in (100, 1000, 4321, 99999):
            fee = schedule.processor_fee_cents(subtotal)
            total = subtotal + fee
            net = total - (total * 0.015 + 25)
            assert net >= subtotal
            assert net - subtotal < 1.1

    def test_gross_up_exceeds_flat_fee(self):
        flat = StripeFeeSchedule().processor_fee_cents(1000)
        gross = StripeFeeSchedule(gross_up=True).processor_fee_cents(1000)
        assert gross == 41
        assert gross >= flat
