"""
MarketFlow 数据模型包
"""
from .base import Base
from .users import User, SellerProfile
from .catalog import Product, Coupon, CouponRedemption
from .orders import Order, OrderItem
from .shipments import OrderShipment, ShipmentEvent
from .wallet import WalletTransaction
from .returns import ReturnRequest
from .withdrawals import Withdrawal

__all__ = [
    "Base",
    "User",
    "SellerProfile",
    "Product",
    "Coupon",
    "CouponRedemption",
    "Order",
    "OrderItem",
    "OrderShipment",
    "ShipmentEvent",
    "WalletTransaction",
    "ReturnRequest",
    "Withdrawal",
]
