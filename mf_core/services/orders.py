"""
订单服务
处理结算拆单、状态流转、取消与退款，商家收益在送达时一次性入账
"""
import secrets
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.gateways.carrier import extract_shipment_details, get_carrier_client, get_status_details
from mf_core.models import (
    Coupon, CouponRedemption, Order, OrderItem, OrderShipment, Product, SellerProfile,
    ShipmentEvent, User
)
from mf_core.models.enums import (
    OrderStatus, PaymentMethod, PaymentStatus, RefundStatus, ShippingStatus, UserRole
)
from mf_core.utils.datetime_utils import utcnow
from mf_core.utils.errors import (
    DuplicateRequest, ForbiddenError, InsufficientStock, InvalidStateTransition,
    NotFoundError, PaymentVerificationFailed, ValidationError
)
from mf_core.utils.logger import get_logger
from mf_core.utils.money import ZERO, round2, to_minor_units
from .addressing import buyer_address, package_weight, seller_address
from .base import Actor, BaseService, RepositoryMixin
from .notifications import get_notifier
from .payments import PaymentState, get_payment_verifier
from .pricing import (
    assert_commission_consistent, compute_commission, compute_order_totals,
    effective_commission, split_discount
)
from .wallet_ledger import WalletLedger, claim_once

logger = get_logger(__name__)

# 已揽收或运输中的订单取消时需要退回
DISPATCHED_STATUSES = (OrderStatus.PROCESSING, OrderStatus.SHIPPED)
# 买家只能在发货前申请取消
CANCEL_REQUEST_BLOCKED = (OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED)


def generate_order_number() -> str:
    return f"MF{utcnow():%y%m%d}{secrets.token_hex(4).upper()}"


async def record_shipment_event(
    session: AsyncSession,
    order_id: int,
    event_type: str,
    raw: Optional[Dict[str, Any]] = None,
    note: Optional[str] = None,
    at: Optional[datetime] = None,
) -> ShipmentEvent:
    """追加发运事件日志"""
    event = ShipmentEvent(order_id=order_id, type=event_type, at=at or utcnow(), raw=raw, note=note)
    session.add(event)
    await session.flush()
    return event


async def seller_user_id(session: AsyncSession, seller_id: int) -> Optional[int]:
    result = await session.execute(select(SellerProfile.user_id).where(SellerProfile.id == seller_id))
    return result.scalar_one_or_none()


class OrderLifecycle(BaseService, RepositoryMixin):
    """订单生命周期服务"""

    def __init__(self, carrier=None, verifier=None, ledger: Optional[WalletLedger] = None, notifier=None):
        super().__init__()
        self.carrier = carrier or get_carrier_client()
        self.verifier = verifier or get_payment_verifier()
        self.ledger = ledger or WalletLedger()
        self.notifier = notifier or get_notifier()

    # ------------------------------------------------------------------
    # 下单
    # ------------------------------------------------------------------

    def _validate_checkout(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        items = payload.get("items") or []
        if not items:
            raise ValidationError(code="EMPTY_ORDER", detail="Order must contain at least one item")
        if not payload.get("shipping_address"):
            raise ValidationError(code="MISSING_SHIPPING_ADDRESS", detail="Shipping address is required")
        for item in items:
            if not item.get("product_id") or not item.get("seller_id"):
                raise ValidationError(code="INVALID_ORDER_ITEM", detail="Product or seller missing in order item")
            if int(item.get("quantity") or 0) < 1:
                raise ValidationError(code="INVALID_QUANTITY",
                                      detail=f"Quantity must be at least 1 for product {item['product_id']}")
        return items

    async def create_cod_orders(self, buyer_id: int, payload: Dict[str, Any]) -> List[Order]:
        """货到付款下单：按商家拆单，不扣库存，不入账"""
        items = self._validate_checkout(payload)
        orders = await self.execute_with_transaction(
            self._create_orders_tx, buyer_id, payload, items, PaymentMethod.COD, None
        )
        await self._redeem_coupon(buyer_id, payload.get("coupon"))
        logger.info("COD orders created", buyer_id=buyer_id, order_ids=[o.id for o in orders])
        return orders

    async def create_online_orders(
        self,
        buyer_id: int,
        payload: Dict[str, Any],
        gateway_order_id: str,
        payment_id: str,
        signature: str,
    ) -> Tuple[List[Order], PaymentState]:
        """在线支付下单：先校验签名与捕获状态，再扣库存建单"""
        items = self._validate_checkout(payload)
        state = await self.verifier.ensure_captured(gateway_order_id, payment_id, signature)
        gateway_refs = {
            "gateway_order_id": gateway_order_id,
            "payment_id": payment_id,
            "payment_signature": signature,
        }
        orders = await self.execute_with_transaction(
            self._create_orders_tx, buyer_id, payload, items, PaymentMethod.ONLINE, gateway_refs, state.amount
        )
        await self._redeem_coupon(buyer_id, payload.get("coupon"))
        logger.info("Online orders created", buyer_id=buyer_id, payment_id=payment_id,
                    order_ids=[o.id for o in orders])
        return orders, state

    async def _create_orders_tx(
        self,
        session: AsyncSession,
        buyer_id: int,
        payload: Dict[str, Any],
        items: List[Dict[str, Any]],
        payment_method: PaymentMethod,
        gateway_refs: Optional[Dict[str, str]],
        captured_amount: Optional[Decimal] = None,
    ) -> List[Order]:
        buyer = await self.get_or_404(session, User, buyer_id, "BUYER_NOT_FOUND", "Buyer")

        payment_id = (gateway_refs or {}).get("payment_id")
        if payment_id:
            used = await session.scalar(select(func.count(Order.id)).where(Order.payment_id == payment_id))
            if used:
                logger.warning("Payment already used for orders", payment_id=payment_id, buyer_id=buyer_id)
                raise DuplicateRequest(
                    code="PAYMENT_ALREADY_USED",
                    detail=f"Payment {payment_id} has already been used to place orders"
                )

        grouped: "OrderedDict[int, List[Dict[str, Any]]]" = OrderedDict()
        for item in items:
            grouped.setdefault(int(item["seller_id"]), []).append(item)

        product_ids = {int(item["product_id"]) for item in items}
        result = await session.execute(select(Product).where(Product.id.in_(product_ids)))
        products = {p.id: p for p in result.scalars().all()}

        # 先校验全部商品，再计算折扣拆分
        lines_by_seller: "OrderedDict[int, List[Tuple[Product, int]]]" = OrderedDict()
        for seller_id, seller_items in grouped.items():
            lines = []
            for item in seller_items:
                product = products.get(int(item["product_id"]))
                if product is None:
                    raise NotFoundError(code="PRODUCT_NOT_FOUND", resource=f"Product {item['product_id']}")
                if product.seller_id != seller_id:
                    raise ValidationError(
                        code="PRODUCT_SELLER_MISMATCH",
                        detail=f"Product seller mismatch for product {product.id}"
                    )
                lines.append((product, int(item["quantity"])))
            lines_by_seller[seller_id] = lines

        subtotals = [
            compute_order_totals([(p.price, q) for p, q in lines]).items_price
            for lines in lines_by_seller.values()
        ]
        discount_shares = split_discount(subtotals, payload.get("discount") or ZERO)

        online = payment_method == PaymentMethod.ONLINE
        coupon_code = (payload.get("coupon") or "").strip().upper() or None
        orders: List[Order] = []

        for (seller_id, lines), discount in zip(lines_by_seller.items(), discount_shares):
            for product, quantity in lines:
                await self._reserve_stock(session, product, quantity, decrement=online)

            totals = compute_order_totals([(p.price, q) for p, q in lines], discount=discount)
            commission = compute_commission(totals.items_price)
            assert_commission_consistent(totals.items_price, commission.commission, commission.seller_earnings)

            order = Order(
                order_number=generate_order_number(),
                buyer_id=buyer.id,
                seller_id=seller_id,
                shipping_address=dict(payload["shipping_address"]),
                payment_method=payment_method,
                items_price=totals.items_price,
                tax_price=totals.tax_price,
                shipping_price=totals.shipping_price,
                discount=totals.discount,
                total_price=totals.total_price,
                coupon_code=coupon_code,
                commission=commission.commission,
                seller_earnings=commission.seller_earnings,
                seller_credited=False,
                order_status=OrderStatus.CONFIRMED if online else OrderStatus.PENDING,
                payment_status=PaymentStatus.PAID if online else PaymentStatus.PENDING,
                shipping_status=ShippingStatus.PENDING,
                refund_status=RefundStatus.NONE,
                items=[
                    OrderItem(
                        product_id=product.id,
                        name=product.name,
                        image=product.image,
                        sku=product.sku,
                        unit_price=round2(product.price),
                        quantity=quantity,
                    )
                    for product, quantity in lines
                ],
                shipment=OrderShipment(),
                **(gateway_refs or {}),
            )
            session.add(order)
            orders.append(order)

        # 捕获金额必须与拆单后的应付总额一致（按分比较）
        if online and payment_id:
            expected = sum((o.total_price for o in orders), ZERO)
            if to_minor_units(captured_amount or ZERO) != to_minor_units(expected):
                logger.warning("Captured amount does not match order total", payment_id=payment_id,
                               captured=str(captured_amount), expected=str(expected))
                raise PaymentVerificationFailed(
                    detail=f"Captured amount {captured_amount} does not match order total {expected}",
                    code="PAYMENT_AMOUNT_MISMATCH"
                )

        try:
            await session.flush()
        except IntegrityError:
            if not payment_id:
                raise
            # 并发重放同一支付，唯一约束 (payment_id, seller_id) 兜底
            logger.warning("Concurrent order creation for payment rejected", payment_id=payment_id)
            raise DuplicateRequest(
                code="PAYMENT_ALREADY_USED",
                detail=f"Payment {payment_id} has already been used to place orders"
            )

        await session.execute(update(User.__table__).where(User.__table__.c.id == buyer.id).values(cart=[]))
        return orders

    async def _reserve_stock(self, session: AsyncSession, product: Product, quantity: int, decrement: bool) -> None:
        """累加销量；在线支付同时原子扣减库存，库存不足时整单回滚"""
        table = Product.__table__
        stmt = update(table).where(table.c.id == product.id)
        values = {"total_sold": table.c.total_sold + quantity}
        if decrement:
            stmt = stmt.where(table.c.stock >= quantity)
            values["stock"] = table.c.stock - quantity
        result = await session.execute(stmt.values(values))
        if result.rowcount != 1:
            available = await session.scalar(select(table.c.stock).where(table.c.id == product.id))
            raise InsufficientStock(product.name, int(available or 0), quantity)

    async def _redeem_coupon(self, buyer_id: int, code: Optional[str]) -> None:
        """记录优惠券使用（每人每券一次），达到次数上限后停用；失败只记录日志"""
        if not code:
            return
        normalized = str(code).strip().upper()
        try:
            async with self.db_manager.get_transaction() as session:
                coupon = (await session.execute(
                    select(Coupon).where(Coupon.code == normalized, Coupon.is_active.is_(True))
                )).scalar_one_or_none()
                if coupon is None:
                    logger.info("Coupon not active, redemption skipped", coupon=normalized)
                    return

                already = await session.scalar(
                    select(func.count(CouponRedemption.id)).where(
                        CouponRedemption.coupon_id == coupon.id, CouponRedemption.user_id == buyer_id
                    )
                )
                if already:
                    return

                session.add(CouponRedemption(coupon_id=coupon.id, user_id=buyer_id))
                coupon.used_count = (coupon.used_count or 0) + 1
                if coupon.usage_limit and coupon.used_count >= coupon.usage_limit:
                    coupon.is_active = False
                    logger.info("Coupon usage limit reached", coupon=normalized)
        except Exception:
            logger.warning("Coupon redemption failed", coupon=normalized, buyer_id=buyer_id, exc_info=True)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def _seller_profile_id(self, session: AsyncSession, user_id: int) -> Optional[int]:
        result = await session.execute(select(SellerProfile.id).where(SellerProfile.user_id == user_id))
        return result.scalar_one_or_none()

    async def check_access(self, session: AsyncSession, order: Order, actor: Actor,
                            allow_buyer: bool = True, allow_seller: bool = True) -> None:
        if actor.is_admin:
            return
        if allow_buyer and order.buyer_id == actor.user_id:
            return
        if allow_seller and actor.is_seller:
            if await self._seller_profile_id(session, actor.user_id) == order.seller_id:
                return
        raise ForbiddenError(code="ORDER_ACCESS_DENIED", detail=f"Not allowed to access order {order.id}")

    async def list_orders(self, actor: Actor, as_seller: bool = False,
                          limit: int = 50, offset: int = 0) -> Tuple[List[Order], int]:
        async def _list(session: AsyncSession):
            stmt = select(Order)
            if as_seller or actor.role == UserRole.SELLER:
                profile_id = await self._seller_profile_id(session, actor.user_id)
                if profile_id is None:
                    return [], 0
                stmt = stmt.where(Order.seller_id == profile_id)
            elif not actor.is_admin:
                stmt = stmt.where(Order.buyer_id == actor.user_id)

            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            result = await session.execute(stmt.order_by(Order.id.desc()).offset(offset).limit(limit))
            return list(result.scalars().all()), int(total or 0)

        return await self.execute_with_session(_list)

    async def get_order(self, order_id: int, actor: Actor) -> Order:
        async def _get(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            await self.check_access(session, order, actor)
            return order

        return await self.execute_with_session(_get)

    async def invoice(self, actor: Actor, order_id: int) -> Dict[str, Any]:
        """
        订单发票数据（买家、该订单商家、管理员可查看）

        只返回结构化数据，版式由前端渲染。未记录折扣但总价低于毛额的历史订单，
        按差额推算实际折扣。
        """
        async def _invoice(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            await self.check_access(session, order, actor)
            seller = await session.get(SellerProfile, order.seller_id)
            buyer = await session.get(User, order.buyer_id)

            lines = [
                {
                    "name": item.name,
                    "sku": item.sku,
                    "quantity": item.quantity,
                    "unit_price": round2(item.unit_price),
                    "line_total": round2(item.unit_price * item.quantity),
                }
                for item in order.items
            ]
            items_price = round2(order.items_price) if order.items_price else sum(
                (line["line_total"] for line in lines), ZERO
            )
            gross = items_price + round2(order.shipping_price) + round2(order.tax_price)
            discount = round2(order.discount)
            if discount <= ZERO:
                discount = max(ZERO, gross - round2(order.total_price))

            return {
                "invoice_number": order.order_number,
                "issued_at": order.created_at,
                "seller": {
                    "shop_name": seller.shop_name if seller else "Vendor",
                    "address": dict(seller.address or {}) if seller else {},
                },
                "bill_to": {
                    "name": (order.shipping_address or {}).get("full_name")
                    or (buyer.username if buyer else None),
                    "email": buyer.email if buyer else None,
                    "address": dict(order.shipping_address or {}),
                },
                "items": lines,
                "items_price": items_price,
                "shipping_price": round2(order.shipping_price),
                "tax_price": round2(order.tax_price),
                "discount": discount,
                "coupon_code": order.coupon_code,
                "total_price": round2(order.total_price),
                "payment_method": order.payment_method.value,
                "payment_status": order.payment_status.value,
            }

        return await self.execute_with_session(_invoice)

    # ------------------------------------------------------------------
    # 状态流转与结算
    # ------------------------------------------------------------------

    async def update_status(self, order_id: int, status: OrderStatus, actor: Actor) -> Order:
        """商家/管理员更新订单状态；送达时结算商家收益（至多一次）"""
        target = OrderStatus(status)

        async def _update(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            await self.check_access(session, order, actor, allow_buyer=False)

            if (order.order_status == OrderStatus.CANCELLED
                    or order.refund_status == RefundStatus.PENDING
                    or order.payment_status == PaymentStatus.REFUNDED):
                raise InvalidStateTransition(
                    code="ORDER_CLOSED",
                    detail=f"Order {order.id} is cancelled/refunded and cannot be updated"
                )
            if target == OrderStatus.CANCELLED:
                raise InvalidStateTransition(
                    code="USE_CANCEL_ENDPOINT",
                    detail="Use the cancel operation to cancel an order"
                )
            if order.order_status == OrderStatus.DELIVERED and target != OrderStatus.DELIVERED:
                raise InvalidStateTransition(
                    code="ORDER_ALREADY_DELIVERED",
                    detail=f"Order {order.id} is delivered and cannot move to {target.value}"
                )

            previous = order.order_status
            if target == OrderStatus.DELIVERED:
                await self.mark_delivered(session, order)
            else:
                order.order_status = target
                if target == OrderStatus.SHIPPED and order.shipping_status == ShippingStatus.PENDING:
                    order.shipping_status = ShippingStatus.SHIPPED

            logger.info("Order status updated", order_id=order.id, previous=previous.value,
                        status=target.value, actor_id=actor.user_id)
            return order

        return await self.execute_with_transaction(_update)

    async def mark_delivered(self, session: AsyncSession, order: Order,
                             delivered_at: Optional[datetime] = None) -> bool:
        """
        标记送达并结算商家收益

        人工更新与承运商回调共用；返回本次是否发生了入账
        """
        order.order_status = OrderStatus.DELIVERED
        order.shipping_status = ShippingStatus.DELIVERED
        if order.delivered_at is None:
            order.delivered_at = delivered_at or utcnow()
        if order.payment_method == PaymentMethod.COD and order.payment_status == PaymentStatus.PENDING:
            order.payment_status = PaymentStatus.PAID
        return await self.settle_seller(session, order)

    async def settle_seller(self, session: AsyncSession, order: Order) -> bool:
        """商家收益入账，seller_credited 条件更新保证至多一次"""
        if order.payment_status != PaymentStatus.PAID or order.refund_status != RefundStatus.NONE:
            logger.info("Seller settlement skipped, order not payable", order_id=order.id,
                        payment_status=order.payment_status.value, refund_status=order.refund_status.value)
            return False

        earnings = effective_commission(order)
        assert_commission_consistent(order.items_price, earnings.commission, earnings.seller_earnings)
        if order.commission is None or order.seller_earnings is None or order.seller_earnings <= ZERO:
            # 历史订单补记佣金
            order.commission = earnings.commission
            order.seller_earnings = earnings.seller_earnings

        if not await claim_once(session, Order, order.id, "seller_credited"):
            logger.info("Seller already credited", order_id=order.id)
            return False

        user_id = await seller_user_id(session, order.seller_id)
        if user_id is None:
            raise NotFoundError(code="SELLER_NOT_FOUND", resource="Seller")
        if earnings.seller_earnings > ZERO:
            await self.ledger.credit(
                session, user_id, earnings.seller_earnings,
                reference_type="order", reference_id=order.id,
                idempotency_key=f"order:{order.id}:earnings",
                note=f"Earnings for order {order.order_number}",
            )
        logger.info("Seller earnings credited", order_id=order.id, seller_user_id=user_id,
                    amount=str(earnings.seller_earnings))
        return True

    # ------------------------------------------------------------------
    # 取消
    # ------------------------------------------------------------------

    async def cancel_order(self, order_id: int, actor: Actor, reason: Optional[str] = None) -> Order:
        """
        取消订单

        已有承运商运单的订单标记为退回；已揽收/运输中的订单向承运商申请 RTO，
        RTO 创建失败只记录日志和事件，不影响取消
        """
        async def _cancel(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            await self.check_access(session, order, actor)

            if order.order_status == OrderStatus.CANCELLED:
                raise InvalidStateTransition(code="ORDER_ALREADY_CANCELLED",
                                             detail=f"Order {order.id} is already cancelled")
            if order.order_status == OrderStatus.DELIVERED:
                raise InvalidStateTransition(code="ORDER_ALREADY_DELIVERED",
                                             detail=f"Order {order.id} is delivered, raise a return request instead")

            previous = order.order_status
            now = utcnow()
            order.order_status = OrderStatus.CANCELLED
            order.cancelled_at = now
            order.cancelled_by = actor.user_id
            order.cancellation_reason = reason or ""
            if order.payment_method != PaymentMethod.COD and order.payment_status == PaymentStatus.PAID:
                order.refund_status = RefundStatus.PENDING

            needs_rto = False
            shipment = order.shipment
            if shipment is not None and shipment.has_carrier_booking:
                current = get_status_details(shipment.status_code)
                if current.shipping_status != ShippingStatus.CANCELLED and current.code != "RTO_DEL":
                    shipment.is_returning = True
                    shipment.status_code = "RTO"
                    shipment.status_description = get_status_details("RTO").description
                    needs_rto = (order.shipping_status == ShippingStatus.SHIPPED
                                 and previous in DISPATCHED_STATUSES)

            await record_shipment_event(session, order.id, "order_cancelled",
                                        raw={"reason": order.cancellation_reason, "previous_status": previous.value,
                                             "actor_id": actor.user_id})
            logger.info("Order cancelled", order_id=order.id, previous=previous.value, actor_id=actor.user_id)
            return order, needs_rto

        order, needs_rto = await self.execute_with_transaction(_cancel)
        if needs_rto:
            await self._request_rto(order)
        return order

    async def _request_rto(self, order: Order) -> None:
        async with self.db_manager.get_session() as session:
            profile = await session.get(SellerProfile, order.seller_id)
            buyer = await session.get(User, order.buyer_id)

        if profile is None:
            logger.warning("RTO skipped, seller profile missing", order_id=order.id)
            return

        reason = f"Order cancelled - {order.cancellation_reason or 'Customer refused delivery'}"
        result = await self.carrier.create_rto(
            order_reference=order.order_number,
            original_awb=order.shipment.awb if order.shipment else None,
            pickup=buyer_address(order, buyer),
            return_to=seller_address(profile),
            weight_kg=package_weight(order),
            reason=reason,
        )

        async with self.db_manager.get_transaction() as session:
            if not result.success:
                logger.warning("RTO creation failed", order_id=order.id, err=result.error)
                await record_shipment_event(session, order.id, "rto_failed",
                                            raw={"error": result.error, **(result.data or {})})
                return

            details = extract_shipment_details(result.data)
            shipment = (await session.execute(
                select(OrderShipment).where(OrderShipment.order_id == order.id)
            )).scalar_one_or_none()
            if shipment is not None and details:
                shipment.rto_shipment_id = details.get("shipment_id")
                shipment.rto_awb = details.get("awb")
            await record_shipment_event(session, order.id, "rto_created", raw=result.data)
            logger.info("RTO shipment created", order_id=order.id, rto_awb=details.get("awb"))

    async def request_cancellation(self, order_id: int, actor: Actor, reason: Optional[str] = None) -> Order:
        """买家申请取消（发货前），等待管理员审批"""
        async def _request(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            await self.check_access(session, order, actor, allow_seller=False)

            if order.order_status in CANCEL_REQUEST_BLOCKED or order.payment_status == PaymentStatus.REFUNDED:
                raise InvalidStateTransition(code="CANCELLATION_NOT_ALLOWED",
                                             detail="Order cannot be cancelled at this stage")
            if order.cancellation_requested:
                raise DuplicateRequest(code="CANCELLATION_ALREADY_REQUESTED",
                                       detail=f"Cancellation already requested for order {order.id}")

            order.cancellation_requested = True
            order.cancellation_request_reason = reason or ""
            order.cancellation_requested_at = utcnow()
            seller_user = await seller_user_id(session, order.seller_id)
            return order, seller_user

        order, seller_user = await self.execute_with_transaction(_request)
        await self.notifier.send(seller_user, "order_cancellation_requested",
                                 order_number=order.order_number, reason=order.cancellation_request_reason)
        return order

    async def approve_cancellation(self, order_id: int, admin: Actor) -> Order:
        """管理员批准取消；在线支付订单进入待退款"""
        async def _approve(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            if order.order_status == OrderStatus.DELIVERED:
                raise InvalidStateTransition(code="ORDER_ALREADY_DELIVERED",
                                             detail=f"Order {order.id} is delivered and cannot be cancelled")
            if order.refund_status == RefundStatus.REFUNDED:
                raise InvalidStateTransition(code="ORDER_ALREADY_REFUNDED",
                                             detail=f"Order {order.id} is already refunded")

            now = utcnow()
            order.cancellation_approved_at = now
            order.cancellation_approved_by = admin.user_id
            if order.order_status != OrderStatus.CANCELLED:
                order.order_status = OrderStatus.CANCELLED
                order.cancelled_at = now
                order.cancelled_by = admin.user_id
                order.cancellation_reason = order.cancellation_request_reason or order.cancellation_reason
            if order.payment_method != PaymentMethod.COD:
                order.refund_status = RefundStatus.PENDING

            logger.info("Order cancellation approved", order_id=order.id, admin_id=admin.user_id)
            return order

        return await self.execute_with_transaction(_approve)

    # ------------------------------------------------------------------
    # 退款
    # ------------------------------------------------------------------

    async def refund_order(self, order_id: int, admin: Actor) -> Order:
        """
        退款：调用网关退还商品金额，标记已退款，并冲回已入账的商家收益（至多一次）
        """
        async def _load(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            if order.payment_method == PaymentMethod.COD:
                raise ValidationError(code="COD_NO_ONLINE_REFUND",
                                      detail="COD orders do not require online refund")
            if order.payment_status != PaymentStatus.PAID or order.refund_status != RefundStatus.PENDING:
                raise InvalidStateTransition(code="REFUND_NOT_APPLICABLE",
                                             detail=f"Refund not applicable for order {order.id}")
            if not order.payment_id:
                raise ValidationError(code="MISSING_PAYMENT_ID", detail=f"Order {order.id} has no payment id")
            return order

        order = await self.execute_with_session(_load)
        amount = min(round2(order.items_price), round2(order.total_price))
        refund = await self.verifier.refund(order.payment_id, amount)

        async def _apply(session: AsyncSession):
            table = Order.__table__
            result = await session.execute(
                update(table)
                .where(table.c.id == order_id, table.c.refund_status == RefundStatus.PENDING)
                .values(refund_status=RefundStatus.REFUNDED)
            )
            if result.rowcount != 1:
                raise DuplicateRequest(code="REFUND_ALREADY_PROCESSED",
                                       detail=f"Refund already processed for order {order_id}")

            current = await session.get(Order, order_id, populate_existing=True)
            current.payment_status = PaymentStatus.REFUNDED
            current.refunded_amount = amount
            current.refunded_at = utcnow()
            current.gateway_refund_id = refund.get("id")

            if current.seller_credited:
                earnings = effective_commission(current)
                user_id = await seller_user_id(session, current.seller_id)
                if user_id is not None and earnings.seller_earnings > ZERO:
                    await self.ledger.debit(
                        session, user_id, earnings.seller_earnings,
                        reference_type="order", reference_id=current.id,
                        idempotency_key=f"order:{current.id}:earnings_reversal",
                        note=f"Refund reversal for order {current.order_number}",
                    )
            logger.info("Order refunded", order_id=current.id, amount=str(amount),
                        refund_id=refund.get("id"), admin_id=admin.user_id)
            return current

        refunded = await self.execute_with_transaction(_apply)
        await self.notifier.send(refunded.buyer_id, "order_refunded",
                                 order_number=refunded.order_number, amount=str(amount))
        return refunded
