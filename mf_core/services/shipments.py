"""
发运服务
封装承运商下单、取件、面单、取消、NDR 与追踪，并把承运商状态合并到订单
"""
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.gateways.carrier import (
    CarrierItem, extract_shipment_details, get_carrier_client, get_status_details,
    merge_order_status, merge_shipping_status, process_tracking_response, tracking_url_for
)
from mf_core.models import Order, OrderShipment, SellerProfile, User
from mf_core.models.enums import (
    CarrierOrderStatus, NdrAction, OrderStatus, PaymentMethod, PaymentStatus, RefundStatus, ShippingStatus
)
from mf_core.utils.datetime_utils import ensure_utc, parse_datetime, utcnow
from mf_core.utils.errors import (
    CarrierIntegrationError, DuplicateRequest, InvalidStateTransition, NotFoundError, ValidationError
)
from mf_core.utils.logger import get_logger
from .addressing import buyer_address, package_weight, seller_address
from .base import Actor, BaseService, RepositoryMixin
from .orders import OrderLifecycle, record_shipment_event

logger = get_logger(__name__)

MIN_FORWARD_WEIGHT_KG = 1


def ensure_shipment(order: Order) -> OrderShipment:
    if order.shipment is None:
        order.shipment = OrderShipment()
    return order.shipment


async def apply_carrier_status(
    session: AsyncSession,
    order: Order,
    status: Any,
    lifecycle: OrderLifecycle,
    delivered_at: Optional[datetime] = None,
) -> bool:
    """
    合并承运商状态到订单（幂等、单调）

    - 已送达订单的订单状态不会回退
    - RTO / RTO_REQ 强制取消，RTO 类状态码标记退回
    - DEL 走与人工送达相同的结算流程
    返回是否识别到状态码
    """
    mapped = get_status_details(status)
    if not mapped.code:
        return False

    shipment = ensure_shipment(order)
    shipment.status_code = mapped.code
    shipment.status_description = mapped.description
    if mapped.is_rto:
        shipment.is_returning = True

    if mapped.order_status == CarrierOrderStatus.DELIVERED and order.order_status != OrderStatus.DELIVERED:
        if order.order_status == OrderStatus.CANCELLED:
            # 已取消订单只记录承运商状态，不送达也不结算
            logger.warning("Delivery reported for cancelled order, settlement skipped",
                           order_id=order.id, status_code=mapped.code)
            return True
        await lifecycle.mark_delivered(session, order, delivered_at)
        return True

    if mapped.code == "RTO_DEL" and shipment.rto_delivered_at is None:
        shipment.rto_delivered_at = utcnow()

    order.order_status = merge_order_status(order.order_status, mapped)
    order.shipping_status = merge_shipping_status(order.shipping_status, mapped)
    return True


class ShipmentService(BaseService, RepositoryMixin):
    """发运服务"""

    def __init__(self, carrier=None, orders: Optional[OrderLifecycle] = None):
        super().__init__()
        self.carrier = carrier or get_carrier_client()
        self.orders = orders or OrderLifecycle(carrier=self.carrier)

    async def _load(self, session: AsyncSession, order_id: int, actor: Actor, allow_buyer: bool = False) -> Order:
        order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
        await self.orders.check_access(session, order, actor, allow_buyer=allow_buyer)
        return order

    async def quote_rates(self, pickup_pincode: str, delivery_pincode: str, weight_kg=1, cod_amount=0) -> Dict[str, Any]:
        if not pickup_pincode or not delivery_pincode:
            raise ValidationError(code="MISSING_PINCODE", detail="pickup_pincode and delivery_pincode are required")
        result = await self.carrier.get_rates(pickup_pincode, delivery_pincode, weight_kg or 1, cod_amount or 0)
        if not result.success:
            raise CarrierIntegrationError(result.error or "Failed to get courier rates", code="CARRIER_RATES_FAILED")
        return result.data

    async def create_shipment_for_order(self, order_id: int, actor: Actor) -> Order:
        """
        为订单创建正向运单（下单 + 分配运单号 + 面单一次完成）

        已存在承运商运单时拒绝，避免重复下单
        """
        async def _prepare(session: AsyncSession):
            order = await self._load(session, order_id, actor)
            if order.shipment is not None and order.shipment.shipment_id:
                raise DuplicateRequest(code="SHIPMENT_EXISTS",
                                       detail=f"Shipment already created for order {order.id}")
            if order.order_status in (OrderStatus.CANCELLED, OrderStatus.DELIVERED):
                raise InvalidStateTransition(code="ORDER_NOT_SHIPPABLE",
                                             detail=f"Order {order.id} is {order.order_status.value}")
            profile = await session.get(SellerProfile, order.seller_id)
            if profile is None:
                raise NotFoundError(code="SELLER_NOT_FOUND", resource="Seller")
            buyer = await session.get(User, order.buyer_id)
            return order, profile, buyer

        order, profile, buyer = await self.execute_with_session(_prepare)

        items = [
            CarrierItem(
                name=item.name,
                sku=item.sku or str(item.product_id or item.id),
                units=item.quantity,
                unit_price=item.unit_price,
                image_url=item.image or "",
            )
            for item in order.items
        ]
        result = await self.carrier.create_forward_shipment(
            order_reference=order.order_number,
            order_date=ensure_utc(order.created_at).date() if order.created_at else date.today(),
            pickup=seller_address(profile),
            pickup_name=profile.pickup_location_name or profile.shop_name,
            delivery=buyer_address(order, buyer),
            items=items,
            payment_method=order.payment_method.value,
            total_order_value=order.total_price,
            shipping_charges=order.shipping_price,
            package_weight_kg=max(package_weight(order), MIN_FORWARD_WEIGHT_KG),
        )
        if not result.success:
            logger.warning("Forward shipment creation failed", order_id=order.id, err=result.error)
            raise CarrierIntegrationError(result.error or "Failed to create shipment", code="SHIPMENT_CREATE_FAILED")

        details = extract_shipment_details(result.data)

        async def _apply(session: AsyncSession):
            current = await session.get(Order, order_id, populate_existing=True)
            shipment = ensure_shipment(current)
            if not details:
                logger.warning("No shipment details in carrier response", order_id=order_id)
            for key in ("shipment_id", "carrier_order_id", "awb", "courier_name", "courier_code",
                        "tracking_url", "label_url", "manifest_url", "courier_cost",
                        "status_code", "status_description"):
                value = details.get(key)
                if value not in (None, ""):
                    setattr(shipment, key, value)
            if details.get("is_returning"):
                shipment.is_returning = True

            if shipment.status_code:
                mapped = get_status_details(shipment.status_code)
                current.shipping_status = mapped.shipping_status
                if current.order_status in (OrderStatus.PENDING, OrderStatus.CONFIRMED) \
                        and mapped.order_status == CarrierOrderStatus.PROCESSING:
                    current.order_status = OrderStatus.PROCESSING

            estimated = parse_datetime(details.get("estimated_delivery"))
            if estimated:
                current.estimated_delivery = estimated

            await record_shipment_event(session, current.id, "shipment_created", raw=result.data)
            logger.info("Forward shipment created", order_id=current.id, awb=shipment.awb,
                        shipment_id=shipment.shipment_id)
            return current

        return await self.execute_with_transaction(_apply)

    async def schedule_pickup(self, order_id: int, actor: Actor, pickup_date: Optional[str] = None) -> Dict[str, Any]:
        order = await self.execute_with_session(self._load, order_id, actor)
        if order.shipment is None or not order.shipment.shipment_id:
            raise ValidationError(code="SHIPMENT_NOT_CREATED", detail=f"Shipment not created for order {order.id}")

        result = await self.carrier.schedule_pickup(order.shipment.shipment_id, order.shipment.awb)
        if not result.success:
            raise CarrierIntegrationError(result.error or "Failed to schedule pickup", code="PICKUP_SCHEDULE_FAILED")

        async def _apply(session: AsyncSession):
            current = await session.get(Order, order_id, populate_existing=True)
            shipment = ensure_shipment(current)
            shipment.pickup_reference = str(result.data.get("shipmentId") or shipment.shipment_id)
            scheduled = parse_datetime(pickup_date)
            if scheduled:
                shipment.pickup_scheduled_at = scheduled
            await record_shipment_event(session, current.id, "pickup_scheduled", raw=result.data)

        await self.execute_with_transaction(_apply)
        logger.info("Pickup scheduled", order_id=order_id)
        return result.data

    async def get_label(self, order_id: int, actor: Actor) -> Dict[str, Any]:
        order = await self.execute_with_session(self._load, order_id, actor)
        if order.shipment is None or not order.shipment.shipment_id:
            raise ValidationError(code="SHIPMENT_NOT_CREATED", detail=f"Shipment not created for order {order.id}")

        result = await self.carrier.generate_label([order.shipment.shipment_id])
        if not result.success:
            raise CarrierIntegrationError(result.error or "Failed to get label", code="LABEL_FAILED")

        label_data = result.data.get("labelData") or []
        label_url = label_data[0].get("labelURL") if label_data and isinstance(label_data[0], dict) else None

        if label_url and not order.shipment.label_url:
            async def _store(session: AsyncSession):
                shipment = (await session.execute(
                    select(OrderShipment).where(OrderShipment.order_id == order_id)
                )).scalar_one()
                shipment.label_url = label_url

            await self.execute_with_transaction(_store)

        return {
            "label_url": order.shipment.label_url or label_url or "",
            "label_type": "pdf",
            "awb": order.shipment.awb,
        }

    async def cancel_shipment(self, order_id: int, actor: Actor, reason: Optional[str] = None) -> Order:
        """取消承运商订单并取消本地订单（承运商失败时不修改本地状态）"""
        order = await self.execute_with_session(self._load, order_id, actor)
        if order.order_status == OrderStatus.DELIVERED:
            raise InvalidStateTransition(code="ORDER_ALREADY_DELIVERED",
                                         detail=f"Order {order.id} is delivered")

        result = await self.carrier.cancel_order(order.order_number)
        if not result.success:
            raise CarrierIntegrationError(result.error or "Failed to cancel shipment", code="SHIPMENT_CANCEL_FAILED")

        async def _apply(session: AsyncSession):
            current = await session.get(Order, order_id, populate_existing=True)
            shipment = ensure_shipment(current)
            shipment.status_code = "CAN"
            shipment.status_description = get_status_details("CAN").description

            current.order_status = OrderStatus.CANCELLED
            current.shipping_status = ShippingStatus.CANCELLED
            current.cancelled_at = utcnow()
            current.cancelled_by = actor.user_id
            current.cancellation_reason = reason or "Shipment cancelled"
            if current.payment_method != PaymentMethod.COD and current.payment_status == PaymentStatus.PAID \
                    and current.refund_status == RefundStatus.NONE:
                current.refund_status = RefundStatus.PENDING

            await record_shipment_event(session, current.id, "shipment_cancelled", raw=result.data)
            logger.info("Shipment cancelled", order_id=current.id, actor_id=actor.user_id)
            return current

        return await self.execute_with_transaction(_apply)

    async def ndr_action(self, order_id: int, actor: Actor, action: str,
                         phone: str = "", address1: str = "", address2: str = "") -> Dict[str, Any]:
        """派送失败处理：重新派送或退回（退回时订单转为 RTO 取消）"""
        try:
            ndr = NdrAction(str(action).upper())
        except ValueError:
            raise ValidationError(code="INVALID_NDR_ACTION", detail="Invalid action. Must be RE_ATTEMPT or RETURN")

        order = await self.execute_with_session(self._load, order_id, actor)
        if order.shipment is None or not order.shipment.awb:
            raise ValidationError(code="AWB_NOT_FOUND", detail=f"Shipment AWB not found for order {order.id}")

        result = await self.carrier.ndr_action(order.shipment.awb, ndr.value, phone, address1, address2)
        if not result.success:
            raise CarrierIntegrationError(result.error or "Failed to process NDR action", code="NDR_ACTION_FAILED")

        async def _apply(session: AsyncSession):
            current = await session.get(Order, order_id, populate_existing=True)
            await record_shipment_event(session, current.id, f"ndr_{ndr.value.lower()}", raw=result.data)
            if ndr == NdrAction.RETURN:
                shipment = ensure_shipment(current)
                shipment.is_returning = True
                shipment.status_code = "RTO"
                shipment.status_description = get_status_details("RTO").description
                if current.order_status != OrderStatus.DELIVERED:
                    current.order_status = OrderStatus.CANCELLED

        await self.execute_with_transaction(_apply)
        logger.info("NDR action processed", order_id=order_id, action=ndr.value)
        return result.data

    async def track(self, actor: Actor, order_id: Optional[int] = None, awb: Optional[str] = None,
                    contact: str = "", email: str = "") -> Dict[str, Any]:
        """
        查询追踪信息，并用第一条运单刷新订单（单调，不回退已送达订单）
        """
        if not order_id and not awb:
            raise ValidationError(code="MISSING_TRACKING_REFERENCE", detail="Either order_id or awb is required")

        order = None
        buyer = None
        if order_id:
            async def _load_with_buyer(session: AsyncSession):
                loaded = await self._load(session, order_id, actor, allow_buyer=True)
                return loaded, await session.get(User, loaded.buyer_id)

            order, buyer = await self.execute_with_session(_load_with_buyer)

        tracking_awb = awb or (order.shipment.awb if order and order.shipment else None)
        result = await self.carrier.track_order(
            order_reference=order.order_number if order else None,
            awb=tracking_awb,
            contact=contact or ((order.shipping_address or {}).get("phone", "") if order else ""),
            email=email or (buyer.email if buyer and buyer.email else ""),
        )
        if not result.success:
            raise CarrierIntegrationError(result.error or "Failed to track order", code="TRACKING_FAILED")

        processed = process_tracking_response(result.data)
        updated = False
        if order is not None and processed and processed["records"] and processed["records"][0]["shipments"]:
            await self.execute_with_transaction(self._refresh_from_tracking, order_id,
                                                processed["records"][0]["shipments"][0])
            updated = True

        return {"tracking": processed or result.data, "order_updated": updated}

    async def _refresh_from_tracking(self, session: AsyncSession, order_id: int, tracked: Dict[str, Any]) -> None:
        order = await session.get(Order, order_id, populate_existing=True)
        delivered_at = parse_datetime(tracked.get("delivered_date"))
        await apply_carrier_status(session, order, tracked.get("status_code"), self.orders, delivered_at)

        shipment = ensure_shipment(order)
        if tracked.get("courier_name"):
            shipment.courier_name = tracked["courier_name"]
        if tracked.get("awb") and not shipment.awb:
            shipment.awb = tracked["awb"]
            shipment.tracking_url = shipment.tracking_url or tracking_url_for(tracked["awb"])
        rto_delivered = parse_datetime(tracked.get("rto_delivered_date"))
        if rto_delivered:
            shipment.rto_delivered_at = rto_delivered
        estimated = parse_datetime(tracked.get("estimated_delivery"))
        if estimated:
            order.estimated_delivery = estimated

        for scan in tracked.get("track_scans") or []:
            if not isinstance(scan, dict):
                continue
            at = parse_datetime(scan.get("date") or scan.get("timestamp")) or utcnow()
            await record_shipment_event(session, order.id, "tracking_scan", raw=scan, at=at)
        logger.info("Order refreshed from tracking", order_id=order.id, status_code=tracked.get("status_code"))
