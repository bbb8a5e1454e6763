"""
承运商 Webhook 处理器

推送的状态按映射表合并到订单；同一推送重复处理得到相同的派生状态，
已送达订单不会被后续推送回退。匹配不到订单时仍然确认接收。
"""
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import get_db_manager
from mf_core.gateways.carrier import get_status_details, tracking_url_for
from mf_core.models import Order, OrderShipment
from mf_core.services.orders import OrderLifecycle, record_shipment_event
from mf_core.services.shipments import apply_carrier_status, ensure_shipment
from mf_core.utils.datetime_utils import parse_datetime
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_EVENT_TYPE = "webhook_event"


class CarrierWebhookHandler:
    """承运商 Webhook 处理器"""

    def __init__(self, lifecycle: Optional[OrderLifecycle] = None):
        self.lifecycle = lifecycle or OrderLifecycle()
        self.db_manager = get_db_manager()

    async def _resolve_order(self, session: AsyncSession, payload: Dict[str, Any]) -> Optional[Order]:
        """
        按 shipment_id -> order_id -> seller_order_id -> awb 的顺序查找订单
        """
        shipment_id = payload.get("shipment_id")
        if shipment_id:
            order = await self._by_shipment(session, OrderShipment.shipment_id == str(shipment_id))
            if order:
                return order

        order_id = payload.get("order_id")
        if order_id is not None and str(order_id).isdigit():
            order = await session.get(Order, int(order_id))
            if order:
                return order

        order_number = payload.get("seller_order_id") or (order_id if order_id and not str(order_id).isdigit() else None)
        if order_number:
            result = await session.execute(select(Order).where(Order.order_number == str(order_number)))
            order = result.scalar_one_or_none()
            if order:
                return order

        awb = payload.get("awb")
        if awb:
            return await self._by_shipment(session, OrderShipment.awb == str(awb))
        return None

    async def _by_shipment(self, session: AsyncSession, condition) -> Optional[Order]:
        result = await session.execute(
            select(Order).join(OrderShipment, OrderShipment.order_id == Order.id).where(condition).limit(1)
        )
        return result.scalar_one_or_none()

    async def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """处理一次推送，返回 {"matched": bool, ...}"""
        async with self.db_manager.get_transaction() as session:
            order = await self._resolve_order(session, payload)
            if order is None:
                logger.warning("Carrier webhook order not found", shipment_id=payload.get("shipment_id"),
                               order_id=payload.get("order_id"), awb=payload.get("awb"))
                return {"matched": False}

            event_type = payload.get("event_type") or DEFAULT_EVENT_TYPE
            await record_shipment_event(session, order.id, str(event_type), raw=payload)

            tracking = payload.get("tracking_data") if isinstance(payload.get("tracking_data"), dict) else {}
            delivered_at = parse_datetime(tracking.get("delivered_at"))

            status = payload.get("status")
            if status:
                await apply_carrier_status(session, order, status, self.lifecycle, delivered_at)
            elif tracking.get("current_status"):
                await apply_carrier_status(session, order, tracking["current_status"], self.lifecycle, delivered_at)

            self._apply_tracking_data(order, tracking, status)
            self._apply_awb(order, payload.get("awb"))

            logger.info("Carrier webhook processed", order_id=order.id, event_type=event_type,
                        status_code=order.shipment.status_code if order.shipment else None,
                        order_status=order.order_status.value)
            return {
                "matched": True,
                "order_id": order.id,
                "order_status": order.order_status.value,
                "shipping_status": order.shipping_status.value,
            }

    @staticmethod
    def _apply_tracking_data(order: Order, tracking: Dict[str, Any], status: Any) -> None:
        if not tracking:
            return
        shipment = ensure_shipment(order)
        if tracking.get("tracking_url"):
            shipment.tracking_url = tracking["tracking_url"]
        if tracking.get("current_status") and status:
            # 追踪数据中的当前状态只更新运单状态码，订单状态以 status 为准
            current = get_status_details(tracking["current_status"])
            shipment.status_code = current.code
            shipment.status_description = current.description
        estimated = parse_datetime(tracking.get("estimated_delivery"))
        if estimated:
            order.estimated_delivery = estimated
        delivered_at = parse_datetime(tracking.get("delivered_at"))
        if delivered_at:
            order.delivered_at = delivered_at

    @staticmethod
    def _apply_awb(order: Order, awb: Any) -> None:
        if not awb:
            return
        shipment = ensure_shipment(order)
        if shipment.awb:
            return
        shipment.awb = str(awb)
        if not shipment.tracking_url:
            shipment.tracking_url = tracking_url_for(shipment.awb)
