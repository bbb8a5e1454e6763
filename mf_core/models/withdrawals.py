"""
商家提现
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mf_core.utils.datetime_utils import utcnow
from .base import Base, BigIntPK, JSONType, Money, enum_column
from .enums import WithdrawalMethod, WithdrawalStatus


class Withdrawal(Base):
    """提现申请表"""
    __tablename__ = "withdrawals"
    __table_args__ = (
        Index("ix_withdrawals_seller_status", "seller_user_id", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    seller_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    method: Mapped[WithdrawalMethod] = mapped_column(enum_column(WithdrawalMethod), nullable=False)
    # 银行：account_number / ifsc_code / account_holder_name / bank_name
    # UPI：upi_id；钱包：wallet_type / wallet_id
    payment_details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)

    status: Mapped[WithdrawalStatus] = mapped_column(
        enum_column(WithdrawalStatus), nullable=False, default=WithdrawalStatus.PENDING
    )

    # 打款服务商标识（未配置或调用失败时为空，走人工打款）
    payout_contact_id: Mapped[Optional[str]] = mapped_column(String(100))
    payout_fund_account_id: Mapped[Optional[str]] = mapped_column(String(100))
    payout_id: Mapped[Optional[str]] = mapped_column(String(100))
    payout_status: Mapped[Optional[str]] = mapped_column(String(40), comment="服务商状态，人工打款为 manual")
    payout_utr: Mapped[Optional[str]] = mapped_column(String(100))
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100))

    seller_notes: Mapped[Optional[str]] = mapped_column(Text)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text)

    requested_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    approved_by: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id"))
    approved_at: Mapped[Optional[datetime]] = mapped_column()
    processed_by: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id"))
    processed_at: Mapped[Optional[datetime]] = mapped_column()
    rejected_at: Mapped[Optional[datetime]] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)
