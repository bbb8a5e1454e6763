"""
发运记录与事件日志
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mf_core.utils.datetime_utils import utcnow
from .base import Base, BigIntPK, JSONType, Money
from .orders import Order


class OrderShipment(Base):
    """订单发运信息（与订单一对一，下单时创建）"""
    __tablename__ = "order_shipments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    # 承运商标识
    shipment_id: Mapped[Optional[str]] = mapped_column(String(100), index=True, comment="承运商运单ID")
    carrier_order_id: Mapped[Optional[str]] = mapped_column(String(100))
    awb: Mapped[Optional[str]] = mapped_column(String(100), index=True, comment="运单号")
    courier_name: Mapped[Optional[str]] = mapped_column(String(100))
    courier_code: Mapped[Optional[str]] = mapped_column(String(50))
    tracking_url: Mapped[Optional[str]] = mapped_column(Text)
    label_url: Mapped[Optional[str]] = mapped_column(Text)
    manifest_url: Mapped[Optional[str]] = mapped_column(Text)
    courier_cost: Mapped[Optional[Decimal]] = mapped_column(Money, comment="正向运费")

    # 承运商状态码原样保存（新状态码不能导致入库失败）
    status_code: Mapped[Optional[str]] = mapped_column(String(40))
    status_description: Mapped[Optional[str]] = mapped_column(String(200))
    is_returning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    pickup_scheduled_at: Mapped[Optional[datetime]] = mapped_column()
    pickup_reference: Mapped[Optional[str]] = mapped_column(String(100))

    # 退回（RTO）
    rto_shipment_id: Mapped[Optional[str]] = mapped_column(String(100))
    rto_awb: Mapped[Optional[str]] = mapped_column(String(100))
    rto_delivered_at: Mapped[Optional[datetime]] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    order: Mapped[Order] = relationship(back_populates="shipment")

    @property
    def has_carrier_booking(self) -> bool:
        return bool(self.shipment_id or self.awb)


class ShipmentEvent(Base):
    """发运事件日志，只追加不修改"""
    __tablename__ = "shipment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    raw: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)
    note: Mapped[Optional[str]] = mapped_column(Text)
