"""
定价引擎测试
"""
from decimal import Decimal

import pytest

from mf_core.models.enums import ChargeScenario, PaymentMethod, ReturnReason
from mf_core.services.pricing import (
    ChargeAllocation,
    assert_allocation_consistent,
    assert_commission_consistent,
    classify_size_issue,
    compute_commission,
    compute_order_totals,
    compute_return_charge_allocation,
    effective_commission,
    rescale_allocation,
    resolve_return_scenario,
    split_discount,
)
from mf_core.utils.errors import FinancialInvariantViolation


class TestOrderTotals:

    def test_sums_items_shipping_and_tax(self):
        totals = compute_order_totals(
            [(Decimal("500.00"), 2), (Decimal("250.50"), 1)],
            discount=Decimal("50"),
            shipping_price=Decimal("40"),
            tax_price=Decimal("12.345"),
        )
        assert totals.items_price == Decimal("1250.50")
        assert totals.tax_price == Decimal("12.35")
        assert totals.total_price == Decimal("1252.85")

    def test_discount_is_clamped(self):
        """折扣超过总额时总价为 0，负折扣按 0 处理"""
        over = compute_order_totals([(Decimal("100"), 1)], discount=Decimal("500"))
        assert over.discount == Decimal("100.00")
        assert over.total_price == Decimal("0.00")

        negative = compute_order_totals([(Decimal("100"), 1)], discount=Decimal("-10"))
        assert negative.discount == Decimal("0.00")
        assert negative.total_price == Decimal("100.00")

    def test_float_prices_do_not_drift(self):
        totals = compute_order_totals([(0.1, 3)])
        assert totals.items_price == Decimal("0.30")


class TestCommission:

    def test_standard_rate(self):
        result = compute_commission(Decimal("1000.00"))
        assert result.commission == Decimal("70.00")
        assert result.seller_earnings == Decimal("930.00")

    def test_rounding_half_up(self):
        result = compute_commission(Decimal("333.33"))
        assert result.commission == Decimal("23.33")
        assert result.commission + result.seller_earnings == Decimal("333.33")

        half = compute_commission(Decimal("0.50"), rate=Decimal("0.07"))
        assert half.commission == Decimal("0.04")

    def test_explicit_rate(self):
        assert compute_commission(Decimal("200"), rate=Decimal("0.10")).commission == Decimal("20.00")

    def test_effective_commission_prefers_stored_values(self):
        class _Order:
            items_price = Decimal("1000.00")
            commission = Decimal("50.00")
            seller_earnings = Decimal("950.00")

        stored = effective_commission(_Order())
        assert stored.commission == Decimal("50.00")

        _Order.commission = None
        _Order.seller_earnings = None
        recomputed = effective_commission(_Order())
        assert recomputed.seller_earnings == Decimal("930.00")

    def test_zero_stored_earnings_recomputed(self):
        class _Order:
            items_price = Decimal("1000.00")
            commission = Decimal("0.00")
            seller_earnings = Decimal("0.00")

        earnings = effective_commission(_Order())
        assert earnings.commission == Decimal("70.00")
        assert earnings.seller_earnings == Decimal("930.00")


class TestSplitDiscount:

    def test_proportional_split(self):
        assert split_discount([Decimal("600"), Decimal("400")], Decimal("100")) == [
            Decimal("60.00"), Decimal("40.00")
        ]

    def test_remainder_goes_to_last_share(self):
        shares = split_discount([Decimal("100")] * 3, Decimal("100"))
        assert shares == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert sum(shares) == Decimal("100.00")

    def test_zero_and_empty(self):
        assert split_discount([], Decimal("10")) == []
        assert split_discount([Decimal("100"), Decimal("50")], Decimal("0")) == [
            Decimal("0.00"), Decimal("0.00")
        ]

    def test_discount_capped_at_subtotal_sum(self):
        shares = split_discount([Decimal("30"), Decimal("20")], Decimal("80"))
        assert sum(shares) == Decimal("50.00")


class TestReturnScenario:

    @pytest.mark.parametrize("text,expected", [
        ("Received wrong size, ordered M", ChargeScenario.SIZE_ISSUE_VENDOR_FAULT),
        ("my mistake, picked L instead of M", ChargeScenario.SIZE_ISSUE_CUSTOMER_FAULT),
        ("doesn't fit", ChargeScenario.SIZE_ISSUE_VENDOR_FAULT),
        (None, ChargeScenario.SIZE_ISSUE_VENDOR_FAULT),
    ])
    def test_size_issue_classification(self, text, expected):
        assert classify_size_issue(text) == expected

    def test_vendor_keywords_win_over_customer_keywords(self):
        assert classify_size_issue("my mistake? no, wrong size sent") == ChargeScenario.SIZE_ISSUE_VENDOR_FAULT

    def test_rto_cod_has_highest_priority(self):
        scenario = resolve_return_scenario(
            ReturnReason.WRONG_ITEM, None,
            order_cancelled=True, payment_method=PaymentMethod.COD, is_returning=True,
        )
        assert scenario == ChargeScenario.RTO_COD

    def test_returning_shipment_is_rto_online(self):
        scenario = resolve_return_scenario(
            "defective", None,
            order_cancelled=True, payment_method="online", is_returning=True,
        )
        assert scenario == ChargeScenario.RTO_ONLINE

    @pytest.mark.parametrize("category,text,expected", [
        ("wrong_item", None, ChargeScenario.WRONG_ITEM),
        ("defective", None, ChargeScenario.DEFECTIVE),
        ("not_as_described", "colour differs", ChargeScenario.NOT_AS_DESCRIBED),
        ("size_issue", "I ordered wrong", ChargeScenario.SIZE_ISSUE_CUSTOMER_FAULT),
        ("other", "Changed my mind", ChargeScenario.CUSTOMER_CHANGED_MIND),
        ("other", "packaging was torn", ChargeScenario.OTHER),
    ])
    def test_category_mapping(self, category, text, expected):
        scenario = resolve_return_scenario(
            category, text, order_cancelled=False, payment_method="online", is_returning=False,
        )
        assert scenario == expected


class TestChargeAllocation:

    def test_vendor_pays_full_for_vendor_fault(self):
        allocation = compute_return_charge_allocation(Decimal("100"), ChargeScenario.DEFECTIVE)
        assert allocation.vendor_charge == Decimal("100.00")
        assert allocation.platform_charge == Decimal("0.00")
        assert not allocation.is_shared

    def test_shared_split_rounds_vendor_share(self):
        allocation = compute_return_charge_allocation(Decimal("101"), ChargeScenario.CUSTOMER_CHANGED_MIND)
        assert allocation.vendor_charge == Decimal("51.00")
        assert allocation.platform_charge == Decimal("50.00")

        odd = compute_return_charge_allocation(Decimal("99.99"), "size_issue_customer_fault")
        assert odd.vendor_charge == Decimal("50.00")
        assert odd.platform_charge == Decimal("49.99")
        assert odd.vendor_charge + odd.platform_charge == odd.total

    def test_negative_charge_rejected(self):
        with pytest.raises(FinancialInvariantViolation):
            compute_return_charge_allocation(Decimal("-1"), ChargeScenario.OTHER)

    def test_rescale_shared(self):
        original = compute_return_charge_allocation(Decimal("100"), ChargeScenario.CUSTOMER_CHANGED_MIND)
        rescaled = rescale_allocation(original, Decimal("120"))
        assert rescaled.vendor_charge == Decimal("60.00")
        assert rescaled.platform_charge == Decimal("60.00")
        assert rescaled.total == Decimal("120.00")

    def test_rescale_vendor_only(self):
        original = compute_return_charge_allocation(Decimal("80"), ChargeScenario.WRONG_ITEM)
        rescaled = rescale_allocation(original, Decimal("95.50"))
        assert rescaled.vendor_charge == Decimal("95.50")
        assert rescaled.platform_charge == Decimal("0.00")

    def test_rescale_from_zero_total(self):
        original = ChargeAllocation(ChargeScenario.CUSTOMER_CHANGED_MIND, Decimal("0.00"), Decimal("0.00"), Decimal("0.00"))
        rescaled = rescale_allocation(original, Decimal("70"))
        assert rescaled.vendor_charge == Decimal("35.00")
        assert rescaled.platform_charge == Decimal("35.00")


class TestInvariants:

    def test_commission_tolerance(self):
        assert_commission_consistent(Decimal("100.00"), Decimal("7.00"), Decimal("93.01"))
        with pytest.raises(FinancialInvariantViolation):
            assert_commission_consistent(Decimal("100.00"), Decimal("7.00"), Decimal("90.00"))

    def test_allocation_must_sum_exactly(self):
        assert_allocation_consistent(Decimal("50"), Decimal("50"), Decimal("100"))
        with pytest.raises(FinancialInvariantViolation):
            assert_allocation_consistent(Decimal("50"), Decimal("49.99"), Decimal("100"))
        with pytest.raises(FinancialInvariantViolation):
            assert_allocation_consistent(Decimal("110"), Decimal("-10"), Decimal("100"))
