"""
商品与优惠券（仅保留订单核心所需字段）
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mf_core.utils.datetime_utils import utcnow
from .base import Base, BigIntPK, Money


class Product(Base):
    """商品表"""
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    seller_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("seller_profiles.id"), nullable=False, index=True, comment="商家ID"
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100))
    image: Mapped[Optional[str]] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="库存")
    total_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="累计销量")
    weight_kg: Mapped[Optional[Decimal]] = mapped_column(Money, comment="单件重量")

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class Coupon(Base):
    """优惠券"""
    __tablename__ = "coupons"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, comment="券码（大写）")
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, comment="总使用次数上限，空表示不限")
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)


class CouponRedemption(Base):
    """优惠券使用记录：每个用户每张券只能使用一次"""
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("coupon_id", "user_id", name="uq_coupon_redemption_user"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    coupon_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("coupons.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    redeemed_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
