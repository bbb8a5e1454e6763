"""
退货 / 换货申请
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mf_core.utils.datetime_utils import utcnow
from .base import Base, BigIntPK, JSONType, Money, enum_column
from .enums import ChargeScenario, ReturnReason, ReturnStatus, ReturnType
from .orders import Order

_OPEN_STATUS_CLAUSE = text("status IN ('requested', 'approved', 'picked')")


class ReturnRequest(Base):
    """退货申请表"""
    __tablename__ = "return_requests"
    __table_args__ = (
        # 同一买家同一订单只能有一个进行中的申请
        Index(
            "uq_return_requests_open",
            "buyer_id",
            "order_id",
            unique=True,
            postgresql_where=_OPEN_STATUS_CLAUSE,
            sqlite_where=_OPEN_STATUS_CLAUSE,
        ),
        Index("ix_return_requests_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    buyer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("orders.id"), nullable=False, index=True)

    type: Mapped[ReturnType] = mapped_column(enum_column(ReturnType), nullable=False, default=ReturnType.RETURN)
    reason_category: Mapped[ReturnReason] = mapped_column(enum_column(ReturnReason), nullable=False)
    reason_text: Mapped[Optional[str]] = mapped_column(Text)
    # {"mode": "bank|upi|wallet", ...}
    refund_details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[ReturnStatus] = mapped_column(
        enum_column(ReturnStatus), nullable=False, default=ReturnStatus.REQUESTED
    )

    # 逆向取件
    reverse_shipment_id: Mapped[Optional[str]] = mapped_column(String(100))
    reverse_awb: Mapped[Optional[str]] = mapped_column(String(100))
    reverse_tracking_url: Mapped[Optional[str]] = mapped_column(Text)
    pickup_scheduled_at: Mapped[Optional[datetime]] = mapped_column()

    # 运费与分摊
    forward_shipping_charge: Mapped[Optional[Decimal]] = mapped_column(Money)
    return_shipping_charge: Mapped[Optional[Decimal]] = mapped_column(Money)
    charge_scenario: Mapped[Optional[ChargeScenario]] = mapped_column(enum_column(ChargeScenario))
    vendor_charge: Mapped[Optional[Decimal]] = mapped_column(Money)
    platform_charge: Mapped[Optional[Decimal]] = mapped_column(Money)
    total_return_charge: Mapped[Optional[Decimal]] = mapped_column(Money)
    allocation_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    admin_note: Mapped[Optional[str]] = mapped_column(Text)
    approved_by: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id"))
    approved_at: Mapped[Optional[datetime]] = mapped_column()
    rejected_at: Mapped[Optional[datetime]] = mapped_column()
    picked_at: Mapped[Optional[datetime]] = mapped_column()
    completed_at: Mapped[Optional[datetime]] = mapped_column()
    cancelled_at: Mapped[Optional[datetime]] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    order: Mapped[Order] = relationship(lazy="selectin")
