"""
订单相关数据模型
一次结算按商家拆分为多张订单，订单永不物理删除
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mf_core.utils.datetime_utils import utcnow
from .base import Base, BigIntPK, JSONType, Money, enum_column
from .enums import (
    OrderStatus, PaymentMethod, PaymentStatus, RefundStatus, ShippingStatus
)

if TYPE_CHECKING:
    from .shipments import OrderShipment


class Order(Base):
    """订单表（每个商家一张）"""
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_buyer_created", "buyer_id", "created_at"),
        Index("ix_orders_seller_status", "seller_id", "order_status"),
        # 同一笔支付每个商家最多一张订单
        UniqueConstraint("payment_id", "seller_id", name="uq_orders_payment_seller"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, comment="对商家和承运商展示的订单号")

    buyer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False, comment="买家")
    seller_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("seller_profiles.id"), nullable=False, comment="商家")

    # 收货地址快照 {"full_name", "phone", "line1", "line2", "city", "state", "pincode", "country"}
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, comment="收货地址快照")

    payment_method: Mapped[PaymentMethod] = mapped_column(enum_column(PaymentMethod), nullable=False)

    # 金额
    items_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    shipping_price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(50))

    # 佣金与商家收益（历史订单可能为空，结算时按统一费率补算）
    commission: Mapped[Optional[Decimal]] = mapped_column(Money)
    seller_earnings: Mapped[Optional[Decimal]] = mapped_column(Money)
    seller_credited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, comment="收益是否已入账")

    # 状态
    order_status: Mapped[OrderStatus] = mapped_column(enum_column(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    payment_status: Mapped[PaymentStatus] = mapped_column(enum_column(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    shipping_status: Mapped[ShippingStatus] = mapped_column(enum_column(ShippingStatus), nullable=False, default=ShippingStatus.PENDING)

    # 支付网关引用
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(100))
    payment_id: Mapped[Optional[str]] = mapped_column(String(100))
    payment_signature: Mapped[Optional[str]] = mapped_column(String(256))

    # 取消
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_by: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id"))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column()
    cancellation_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancellation_request_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_requested_at: Mapped[Optional[datetime]] = mapped_column()
    cancellation_approved_by: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id"))
    cancellation_approved_at: Mapped[Optional[datetime]] = mapped_column()

    # 退款
    refund_status: Mapped[RefundStatus] = mapped_column(enum_column(RefundStatus), nullable=False, default=RefundStatus.NONE)
    refunded_amount: Mapped[Optional[Decimal]] = mapped_column(Money)
    refunded_at: Mapped[Optional[datetime]] = mapped_column()
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(100))

    delivered_at: Mapped[Optional[datetime]] = mapped_column()
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="OrderItem.id"
    )
    shipment: Mapped[Optional["OrderShipment"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", uselist=False, lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, number={self.order_number}, status={self.order_status})>"


class OrderItem(Base):
    """订单行（下单时的价格、名称快照）"""
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("products.id"))
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    image: Mapped[Optional[str]] = mapped_column(Text)
    sku: Mapped[Optional[str]] = mapped_column(String(100))
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")
