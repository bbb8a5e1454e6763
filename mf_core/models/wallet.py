"""
钱包流水（只追加）
users.wallet_balance 是流水的物化余额
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mf_core.utils.datetime_utils import utcnow
from .base import Base, BigIntPK, Money, enum_column
from .enums import LedgerEntryKind


class WalletTransaction(Base):
    """钱包流水表"""
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_tx_user_created", "user_id", "created_at"),
        Index("ix_wallet_tx_reference", "reference_type", "reference_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    kind: Mapped[LedgerEntryKind] = mapped_column(enum_column(LedgerEntryKind), nullable=False)
    # 带符号金额：入账为正，扣款为负
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Optional[Decimal]] = mapped_column(Money, comment="本次变动后的余额")

    reference_type: Mapped[str] = mapped_column(String(40), nullable=False, comment="order / return_request / ...")
    reference_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    idempotency_key: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
