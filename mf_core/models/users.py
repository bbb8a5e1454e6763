"""
用户与商家模型
钱包余额只能通过 WalletLedger 的原子递增语句修改
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mf_core.utils.datetime_utils import utcnow
from .base import Base, BigIntPK, JSONType, Money, enum_column
from .enums import UserRole


class User(Base):
    """用户表（买家 / 商家 / 管理员）"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, comment="用户名")
    email: Mapped[Optional[str]] = mapped_column(String(255), comment="邮箱")
    phone: Mapped[Optional[str]] = mapped_column(String(32), comment="手机号")
    role: Mapped[UserRole] = mapped_column(
        enum_column(UserRole), nullable=False, default=UserRole.BUYER, comment="角色"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # 钱包余额（商家收益 / 平台账户），允许为负
    wallet_balance: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00"), comment="钱包余额"
    )

    # 购物车（下单成功后清空）
    cart: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list, comment="购物车")

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    seller_profile: Mapped[Optional["SellerProfile"]] = relationship(
        back_populates="user", uselist=False, lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username}, role={self.role})>"


class SellerProfile(Base):
    """商家档案（店铺名称、发货地址、联系方式）"""
    __tablename__ = "seller_profiles"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    shop_name: Mapped[str] = mapped_column(String(200), nullable=False, comment="店铺名称")
    contact_name: Mapped[Optional[str]] = mapped_column(String(200))
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    # {"line1", "line2", "city", "state", "pincode", "country"}
    address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict, comment="发货地址")
    pickup_location_name: Mapped[Optional[str]] = mapped_column(Text, comment="承运商取件点名称")

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    user: Mapped[User] = relationship(back_populates="seller_profile", lazy="selectin")
