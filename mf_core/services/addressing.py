"""
订单 / 商家地址到承运商地址的转换
"""
from decimal import Decimal
from typing import Optional

from mf_core.config import get_settings
from mf_core.gateways.carrier import CarrierAddress
from mf_core.models import Order, SellerProfile, User
from mf_core.utils.money import to_decimal

BASE_PACKAGE_WEIGHT_KG = Decimal("0.5")


def buyer_address(order: Order, buyer: Optional[User] = None) -> CarrierAddress:
    """买家收货地址（逆向取件时即取件地址）"""
    address = order.shipping_address or {}
    return CarrierAddress(
        name=address.get("full_name") or (buyer.username if buyer else "") or "Customer",
        line1=address.get("line1") or "",
        line2=address.get("line2") or "",
        city=address.get("city") or "",
        state=address.get("state") or "",
        pincode=str(address.get("pincode") or ""),
        country=address.get("country") or "India",
        phone=address.get("phone") or (buyer.phone if buyer else "") or "",
        email=(buyer.email if buyer else "") or "",
    )


def seller_address(profile: SellerProfile) -> CarrierAddress:
    """商家发货地址（退回目的地）"""
    address = profile.address or {}
    return CarrierAddress(
        name=profile.contact_name or profile.shop_name,
        line1=address.get("line1") or "",
        line2=address.get("line2") or "",
        city=address.get("city") or "",
        state=address.get("state") or "",
        pincode=str(address.get("pincode") or ""),
        country=address.get("country") or "India",
        phone=profile.phone or "",
        email=profile.email or "",
    )


def package_weight(order: Order) -> Decimal:
    """包裹估重：基础重量 + 每件默认重量"""
    per_item = to_decimal(get_settings().default_item_weight_kg)
    units = sum(item.quantity for item in order.items)
    return BASE_PACKAGE_WEIGHT_KG + per_item * units
