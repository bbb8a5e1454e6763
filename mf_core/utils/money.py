"""
金额工具
遵循约束：金额一律使用 Decimal，四舍五入采用 ROUND_HALF_UP
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
UNIT = Decimal("1")
ZERO = Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    """转换为 Decimal（float 先转字符串，避免二进制误差）"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round2(value: Any) -> Decimal:
    """保留两位小数"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_unit(value: Any) -> Decimal:
    """取整到货币单位（用于退货运费分摊）"""
    return to_decimal(value).quantize(UNIT, rounding=ROUND_HALF_UP)


def to_minor_units(value: Any) -> int:
    """转换为最小货币单位（支付网关使用分）"""
    return int((round2(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: Any) -> Decimal:
    return round2(to_decimal(value or 0) / 100)
