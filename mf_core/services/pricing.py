"""
定价引擎（纯计算，无副作用）

- 订单金额：items + shipping + tax - discount
- 平台佣金：round2(items × rate)，商家收益 = items - 佣金
- 退货运费分摊：按场景由商家全额承担或与平台五五分摊，
  商家份额取整，四舍五入的差额始终由平台承担
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from mf_core.config import get_settings
from mf_core.models.enums import (
    ChargeScenario, PaymentMethod, ReturnReason, SHARED_CHARGE_SCENARIOS
)
from mf_core.utils.errors import FinancialInvariantViolation
from mf_core.utils.money import ZERO, round2, round_unit, to_decimal

HALF = Decimal("0.5")
COMMISSION_TOLERANCE = Decimal("0.01")

# 尺码问题：商家发错尺码
SIZE_VENDOR_FAULT_KEYWORDS = (
    "wrong size sent", "wrong size", "size mismatch", "ordered different size but got",
    "vendor sent wrong", "wrong one sent", "not what ordered", "received wrong size",
    "sent wrong", "wrong variant", "different size received", "size sent wrong",
    "ordered one size but got", "wrong size delivered",
)

# 尺码问题：买家自己选错
SIZE_CUSTOMER_FAULT_KEYWORDS = (
    "ordered wrong", "my mistake", "i ordered wrong", "wrong selection",
    "mistake in order", "ordered different", "wrong choice", "my fault",
    "ordered by mistake", "chose wrong", "selected wrong",
)

# 买家改变主意
CHANGED_MIND_KEYWORDS = (
    "changed mind", "change mind", "not needed", "don't want", "dont want",
    "no longer need", "no longer want", "don't need", "dont need",
    "changed my mind", "not required", "not necessary", "ordered by mistake",
    "buyer's remorse", "buyers remorse", "unwanted", "not wanted", "no need",
    "unnecessary", "regret", "cancelled", "changed decision",
)


@dataclass(frozen=True)
class OrderTotals:
    items_price: Decimal
    shipping_price: Decimal
    tax_price: Decimal
    discount: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class Commission:
    commission: Decimal
    seller_earnings: Decimal


@dataclass(frozen=True)
class ChargeAllocation:
    scenario: ChargeScenario
    vendor_charge: Decimal
    platform_charge: Decimal
    total: Decimal

    @property
    def is_shared(self) -> bool:
        return self.scenario in SHARED_CHARGE_SCENARIOS


def default_commission_rate() -> Decimal:
    """平台统一佣金费率（唯一来源：配置）"""
    return to_decimal(get_settings().commission_rate)


def compute_items_price(items: Iterable[Tuple[Decimal, int]]) -> Decimal:
    """items 为 (单价, 数量) 序列"""
    total = ZERO
    for unit_price, quantity in items:
        total += to_decimal(unit_price) * int(quantity)
    return round2(total)


def compute_order_totals(
    items: Iterable[Tuple[Decimal, int]],
    discount=ZERO,
    shipping_price=ZERO,
    tax_price=ZERO,
) -> OrderTotals:
    """
    计算订单金额

    折扣被限制在 [0, items + shipping + tax] 之间，总价不会为负
    """
    items_price = compute_items_price(items)
    shipping = round2(shipping_price)
    tax = round2(tax_price)
    gross = items_price + shipping + tax
    applied_discount = min(max(round2(discount), ZERO), gross)
    return OrderTotals(
        items_price=items_price,
        shipping_price=shipping,
        tax_price=tax,
        discount=applied_discount,
        total_price=gross - applied_discount,
    )


def compute_commission(items_price, rate: Optional[Decimal] = None) -> Commission:
    """佣金 = round2(items × rate)，商家收益 = items - 佣金"""
    items = round2(items_price)
    commission_rate = default_commission_rate() if rate is None else to_decimal(rate)
    commission = round2(items * commission_rate)
    return Commission(commission=commission, seller_earnings=items - commission)


def effective_commission(order, rate: Optional[Decimal] = None) -> Commission:
    """
    订单的有效佣金与收益

    历史订单可能没有保存佣金或收益记为 0，按当前统一费率补算
    """
    if order.commission is not None and order.seller_earnings is not None and order.seller_earnings > ZERO:
        return Commission(commission=round2(order.commission), seller_earnings=round2(order.seller_earnings))
    return compute_commission(order.items_price, rate)


def split_discount(subtotals: Sequence[Decimal], discount) -> List[Decimal]:
    """
    按各商家小计比例拆分整单折扣

    每份保留两位小数，尾差计入最后一份，合计严格等于折扣（折扣不超过小计总和）
    """
    if not subtotals:
        return []
    gross = sum((round2(s) for s in subtotals), ZERO)
    total_discount = min(max(round2(discount), ZERO), gross)
    if total_discount == ZERO or gross == ZERO:
        return [ZERO for _ in subtotals]

    shares: List[Decimal] = []
    for subtotal in subtotals[:-1]:
        shares.append(round2(total_discount * round2(subtotal) / gross))
    shares.append(total_discount - sum(shares, ZERO))
    return shares


def classify_size_issue(reason_text: Optional[str]) -> ChargeScenario:
    """
    尺码问题归责

    先匹配商家责任关键词，再匹配买家责任关键词；都未命中时默认商家责任。
    已知限制：描述含糊（或同时命中两类关键词）时一律判为商家责任，
    买家无法通过自由文本以外的方式说明责任方。
    """
    text = (reason_text or "").lower()
    if any(keyword in text for keyword in SIZE_VENDOR_FAULT_KEYWORDS):
        return ChargeScenario.SIZE_ISSUE_VENDOR_FAULT
    if any(keyword in text for keyword in SIZE_CUSTOMER_FAULT_KEYWORDS):
        return ChargeScenario.SIZE_ISSUE_CUSTOMER_FAULT
    return ChargeScenario.SIZE_ISSUE_VENDOR_FAULT


def is_customer_changed_mind(reason_text: Optional[str]) -> bool:
    """自由文本是否表明买家改变主意（子串匹配，大小写不敏感）"""
    text = (reason_text or "").lower()
    return any(keyword in text for keyword in CHANGED_MIND_KEYWORDS)


def resolve_return_scenario(
    reason_category,
    reason_text: Optional[str],
    *,
    order_cancelled: bool,
    payment_method,
    is_returning: bool,
) -> ChargeScenario:
    """
    确定退货运费分摊场景，优先级（先命中先生效）：
    RTO 货到付款 > RTO 在线支付 > 发错货 > 质量问题 > 与描述不符 > 尺码问题 > 改变主意 > 其他
    """
    category = ReturnReason(reason_category)

    if order_cancelled and PaymentMethod(payment_method) == PaymentMethod.COD:
        return ChargeScenario.RTO_COD
    if is_returning:
        return ChargeScenario.RTO_ONLINE
    if category == ReturnReason.WRONG_ITEM:
        return ChargeScenario.WRONG_ITEM
    if category == ReturnReason.DEFECTIVE:
        return ChargeScenario.DEFECTIVE
    if category == ReturnReason.NOT_AS_DESCRIBED:
        return ChargeScenario.NOT_AS_DESCRIBED
    if category == ReturnReason.SIZE_ISSUE:
        return classify_size_issue(reason_text)
    if category == ReturnReason.OTHER and is_customer_changed_mind(reason_text):
        return ChargeScenario.CUSTOMER_CHANGED_MIND
    return ChargeScenario.OTHER


def compute_return_charge_allocation(return_charge, scenario) -> ChargeAllocation:
    """
    计算退货运费分摊

    五五分摊时商家份额四舍五入到整数货币单位，平台承担差额
    """
    scenario = ChargeScenario(scenario)
    total = round2(return_charge)
    if total < ZERO:
        raise FinancialInvariantViolation(f"Return charge cannot be negative: {total}")

    if scenario in SHARED_CHARGE_SCENARIOS:
        vendor = round_unit(total * HALF)
    else:
        vendor = total
    allocation = ChargeAllocation(
        scenario=scenario,
        vendor_charge=round2(vendor),
        platform_charge=total - round2(vendor),
        total=total,
    )
    assert_allocation_consistent(allocation.vendor_charge, allocation.platform_charge, allocation.total)
    return allocation


def rescale_allocation(allocation: ChargeAllocation, new_total) -> ChargeAllocation:
    """
    承运商回报实际运费后按比例重新分摊，合计严格等于新运费
    """
    total = round2(new_total)
    if not allocation.is_shared or allocation.total == ZERO:
        return compute_return_charge_allocation(total, allocation.scenario)

    ratio = total / allocation.total
    vendor = round2(round_unit(allocation.vendor_charge * ratio))
    vendor = min(vendor, total)
    rescaled = ChargeAllocation(
        scenario=allocation.scenario,
        vendor_charge=vendor,
        platform_charge=total - vendor,
        total=total,
    )
    assert_allocation_consistent(rescaled.vendor_charge, rescaled.platform_charge, rescaled.total)
    return rescaled


def assert_commission_consistent(items_price, commission, seller_earnings) -> None:
    """佣金 + 收益 必须等于商品金额（允许一个舍入单位误差）"""
    diff = abs(round2(commission) + round2(seller_earnings) - round2(items_price))
    if diff > COMMISSION_TOLERANCE:
        raise FinancialInvariantViolation(
            f"commission {commission} + seller earnings {seller_earnings} != items price {items_price}"
        )


def assert_allocation_consistent(vendor_charge, platform_charge, total) -> None:
    """商家份额 + 平台份额 必须严格等于退货运费"""
    if round2(vendor_charge) + round2(platform_charge) != round2(total):
        raise FinancialInvariantViolation(
            f"vendor charge {vendor_charge} + platform charge {platform_charge} != total {total}"
        )
    if round2(vendor_charge) < ZERO or round2(platform_charge) < ZERO:
        raise FinancialInvariantViolation("Charge shares cannot be negative")
