"""
退货 / 换货服务

审批时按场景分摊退货运费并扣减商家与平台钱包（allocation_applied 保证至多一次），
逆向取件在扣款事务提交之后创建，失败不影响审批结果
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.config import get_settings
from mf_core.gateways.carrier import (
    CarrierResult, extract_shipment_details, extract_total_freight, get_carrier_client, tracking_url_for
)
from mf_core.models import Order, OrderShipment, ReturnRequest, SellerProfile, User, WalletTransaction
from mf_core.models.enums import (
    OPEN_RETURN_STATUSES, OrderStatus, RefundMode, ReturnReason, ReturnStatus, ReturnType, UserRole
)
from mf_core.utils.datetime_utils import ensure_utc, utcnow
from mf_core.utils.errors import (
    CarrierIntegrationError, DuplicateRequest, ForbiddenError, InvalidStateTransition, NotFoundError,
    ValidationError
)
from mf_core.utils.logger import get_logger
from mf_core.utils.money import ZERO, round2
from .addressing import buyer_address, package_weight, seller_address
from .base import Actor, BaseService, RepositoryMixin
from .notifications import get_notifier
from .orders import record_shipment_event, seller_user_id
from .pricing import (
    ChargeAllocation, assert_allocation_consistent, compute_return_charge_allocation,
    rescale_allocation, resolve_return_scenario
)
from .wallet_ledger import WalletLedger, claim_once

logger = get_logger(__name__)

# 可以继续流转的状态 -> 允许的目标状态
_TRANSITIONS = {
    ReturnStatus.APPROVED: (ReturnStatus.PICKED, ReturnStatus.COMPLETED),
    ReturnStatus.PICKED: (ReturnStatus.COMPLETED,),
}


async def platform_account_id(session: AsyncSession) -> Optional[int]:
    """平台账户：第一个管理员用户"""
    result = await session.execute(
        select(User.id).where(User.role == UserRole.ADMIN).order_by(User.id).limit(1)
    )
    return result.scalar_one_or_none()


class ReturnLifecycle(BaseService, RepositoryMixin):
    """退货生命周期服务"""

    def __init__(self, carrier=None, ledger: Optional[WalletLedger] = None, notifier=None):
        super().__init__()
        self.carrier = carrier or get_carrier_client()
        self.ledger = ledger or WalletLedger()
        self.notifier = notifier or get_notifier()

    # ------------------------------------------------------------------
    # 申请
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_refund_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not details or not details.get("mode"):
            raise ValidationError(code="MISSING_REFUND_DETAILS", detail="Refund details with a mode are required")
        try:
            mode = RefundMode(str(details["mode"]).lower())
        except ValueError:
            raise ValidationError(code="INVALID_REFUND_MODE", detail=f"Unsupported refund mode: {details['mode']}")
        return {**details, "mode": mode.value}

    async def create_request(
        self,
        buyer: Actor,
        order_id: int,
        type: str,
        reason_category: str,
        reason_text: Optional[str],
        refund_details: Dict[str, Any],
    ) -> ReturnRequest:
        """
        买家发起退货 / 换货

        订单必须属于买家、已送达、在退货期内，且没有进行中的申请
        """
        try:
            return_type = ReturnType(type)
            category = ReturnReason(reason_category)
        except ValueError:
            raise ValidationError(code="INVALID_RETURN_REQUEST", detail="Invalid return type or reason category")
        details = self._validate_refund_details(refund_details)

        async def _create(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            if order.buyer_id != buyer.user_id:
                raise ForbiddenError(code="ORDER_ACCESS_DENIED", detail=f"Order {order.id} does not belong to you")
            if order.order_status != OrderStatus.DELIVERED:
                raise InvalidStateTransition(code="ORDER_NOT_DELIVERED",
                                             detail="Returns can only be requested for delivered orders")

            delivered_at = ensure_utc(order.delivered_at or order.updated_at)
            window = timedelta(days=get_settings().return_window_days)
            if delivered_at is not None and utcnow() - delivered_at > window:
                raise ValidationError(code="RETURN_WINDOW_EXPIRED",
                                      detail=f"Return window of {window.days} days has expired")

            existing = await session.execute(
                select(ReturnRequest.id).where(
                    ReturnRequest.order_id == order.id,
                    ReturnRequest.buyer_id == buyer.user_id,
                    ReturnRequest.status.in_(OPEN_RETURN_STATUSES),
                )
            )
            if existing.first() is not None:
                raise DuplicateRequest(code="RETURN_ALREADY_OPEN",
                                       detail=f"An open return request already exists for order {order.id}")

            request = ReturnRequest(
                buyer_id=buyer.user_id,
                order_id=order.id,
                type=return_type,
                reason_category=category,
                reason_text=reason_text,
                refund_details=details,
                status=ReturnStatus.REQUESTED,
            )
            session.add(request)
            try:
                await session.flush()
            except IntegrityError:
                # 并发提交由部分唯一索引 uq_return_requests_open 拦截
                raise DuplicateRequest(code="RETURN_ALREADY_OPEN",
                                       detail=f"An open return request already exists for order {order.id}")
            logger.info("Return request created", return_id=request.id, order_id=order.id,
                        reason=category.value, type=return_type.value)
            return request

        return await self.execute_with_transaction(_create)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def list_mine(self, buyer: Actor) -> List[ReturnRequest]:
        async def _list(session: AsyncSession):
            return await self.get_many_by_field(session, ReturnRequest, "buyer_id", buyer.user_id)

        return await self.execute_with_session(_list)

    async def list_all(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[ReturnRequest]:
        async def _list(session: AsyncSession):
            stmt = select(ReturnRequest)
            if status:
                stmt = stmt.where(ReturnRequest.status == ReturnStatus(status))
            result = await session.execute(stmt.order_by(ReturnRequest.id.desc()).offset(offset).limit(limit))
            return list(result.scalars().all())

        return await self.execute_with_session(_list)

    async def list_for_seller(self, seller: Actor) -> List[ReturnRequest]:
        async def _list(session: AsyncSession):
            profile = await self.get_by_field(session, SellerProfile, "user_id", seller.user_id)
            if profile is None:
                return []
            result = await session.execute(
                select(ReturnRequest)
                .join(Order, Order.id == ReturnRequest.order_id)
                .where(Order.seller_id == profile.id)
                .order_by(ReturnRequest.id.desc())
            )
            return list(result.scalars().all())

        return await self.execute_with_session(_list)

    # ------------------------------------------------------------------
    # 审批
    # ------------------------------------------------------------------

    async def approve(self, request_id: int, admin: Actor, note: Optional[str] = None) -> ReturnRequest:
        """
        审批退货

        1. 快照正向运费作为退货运费，确定分摊场景并计算分摊
        2. 同一事务内扣减商家和平台钱包（allocation_applied 条件更新，至多一次）
        3. 事务提交后创建逆向取件，失败只标记订单退回中
        """
        async def _approve(session: AsyncSession):
            request = await self.get_or_404(session, ReturnRequest, request_id, "RETURN_NOT_FOUND", "ReturnRequest")
            if request.status != ReturnStatus.REQUESTED:
                raise InvalidStateTransition(code="RETURN_NOT_PENDING",
                                             detail=f"Return request {request.id} is {request.status.value}")
            order = request.order
            shipment = order.shipment

            forward_charge = round2(shipment.courier_cost) if shipment and shipment.courier_cost else ZERO
            scenario = resolve_return_scenario(
                request.reason_category,
                request.reason_text,
                order_cancelled=order.order_status == OrderStatus.CANCELLED,
                payment_method=order.payment_method,
                is_returning=bool(shipment and shipment.is_returning),
            )
            allocation = compute_return_charge_allocation(forward_charge, scenario)

            now = utcnow()
            request.status = ReturnStatus.APPROVED
            request.approved_by = admin.user_id
            request.approved_at = now
            request.admin_note = note or request.admin_note
            request.forward_shipping_charge = forward_charge
            request.return_shipping_charge = forward_charge
            self._store_allocation(request, allocation)

            await self._apply_allocation(session, request, order, allocation)
            logger.info("Return request approved", return_id=request.id, order_id=order.id,
                        scenario=scenario.value, vendor_charge=str(allocation.vendor_charge),
                        platform_charge=str(allocation.platform_charge), admin_id=admin.user_id)
            seller_user = await seller_user_id(session, order.seller_id)
            return request, order, seller_user

        request, order, seller_user = await self.execute_with_transaction(_approve)
        request = await self._schedule_reverse_pickup(request, order)

        await self.notifier.send(request.buyer_id, "return_approved",
                                 order_number=order.order_number, reverse_awb=request.reverse_awb or "")
        await self.notifier.send(seller_user, "return_approved_seller",
                                 order_number=order.order_number, vendor_charge=str(request.vendor_charge))
        return request

    @staticmethod
    def _store_allocation(request: ReturnRequest, allocation: ChargeAllocation) -> None:
        request.charge_scenario = allocation.scenario
        request.vendor_charge = allocation.vendor_charge
        request.platform_charge = allocation.platform_charge
        request.total_return_charge = allocation.total

    async def _apply_allocation(self, session: AsyncSession, request: ReturnRequest, order: Order,
                                allocation: ChargeAllocation) -> None:
        """扣减商家与平台钱包；平台余额不足时跳过平台扣款，标记仍置为已处理"""
        assert_allocation_consistent(allocation.vendor_charge, allocation.platform_charge, allocation.total)
        if not await claim_once(session, ReturnRequest, request.id, "allocation_applied"):
            logger.info("Return charge allocation already applied", return_id=request.id)
            return

        if allocation.vendor_charge > ZERO:
            vendor_user = await seller_user_id(session, order.seller_id)
            if vendor_user is None:
                raise NotFoundError(code="SELLER_NOT_FOUND", resource="Seller")
            await self.ledger.debit(
                session, vendor_user, allocation.vendor_charge,
                reference_type="return", reference_id=request.id,
                idempotency_key=f"return:{request.id}:vendor_charge",
                note=f"Return shipping charge for order {order.order_number}",
            )

        if allocation.platform_charge > ZERO:
            platform_user = await platform_account_id(session)
            if platform_user is None:
                logger.warning("Platform charge skipped, no platform account", return_id=request.id)
                return
            balance = await self.ledger.balance(session, platform_user)
            if balance < allocation.platform_charge:
                logger.warning("Platform charge skipped, insufficient platform balance",
                               return_id=request.id, balance=str(balance),
                               platform_charge=str(allocation.platform_charge))
                return
            await self.ledger.debit(
                session, platform_user, allocation.platform_charge,
                reference_type="return", reference_id=request.id,
                idempotency_key=f"return:{request.id}:platform_charge",
                note=f"Platform share of return shipping for order {order.order_number}",
            )

    async def _create_reverse_pickup(self, session: AsyncSession, order: Order, reference: str,
                                     reason: str) -> CarrierResult:
        profile = await session.get(SellerProfile, order.seller_id)
        if profile is None:
            raise NotFoundError(code="SELLER_NOT_FOUND", resource="Seller")
        buyer = await session.get(User, order.buyer_id)
        return await self.carrier.create_reverse_pickup(
            reference=reference,
            order_reference=order.order_number,
            pickup=buyer_address(order, buyer),
            deliver_to=seller_address(profile),
            weight_kg=package_weight(order),
            item_label=f"Return - {order.order_number}",
            description=reason,
        )

    async def _schedule_reverse_pickup(self, request: ReturnRequest, order: Order) -> ReturnRequest:
        # 审批已提交，取件异常只降级为失败结果
        try:
            async with self.db_manager.get_session() as session:
                result = await self._create_reverse_pickup(
                    session, order, f"RET_{order.order_number}_{request.id}",
                    request.reason_text or request.reason_category.value,
                )
        except Exception as e:
            logger.error("Reverse pickup request raised", return_id=request.id, order_id=order.id,
                         err=str(e), exc_info=True)
            result = CarrierResult.fail(f"Reverse pickup request raised: {type(e).__name__}")

        async def _apply(session: AsyncSession):
            current = await session.get(ReturnRequest, request.id, populate_existing=True)
            shipment = (await session.execute(
                select(OrderShipment).where(OrderShipment.order_id == order.id)
            )).scalar_one_or_none()
            if shipment is None:
                shipment = OrderShipment(order_id=order.id)
                session.add(shipment)
            shipment.is_returning = True

            if not result.success:
                logger.warning("Reverse pickup creation failed", return_id=current.id, err=result.error)
                return current

            details = extract_shipment_details(result.data)
            current.reverse_shipment_id = details.get("shipment_id")
            current.reverse_awb = details.get("awb")
            current.reverse_tracking_url = tracking_url_for(current.reverse_awb)
            current.pickup_scheduled_at = utcnow()

            freight = extract_total_freight(result.data)
            if freight is not None and current.allocation_applied:
                await self._rescale(session, current, order, freight)

            await record_shipment_event(session, order.id, "reverse_pickup_created", raw=result.data)
            logger.info("Reverse pickup created", return_id=current.id, reverse_awb=current.reverse_awb)
            return current

        return await self.execute_with_transaction(_apply)

    async def _rescale(self, session: AsyncSession, request: ReturnRequest, order: Order, freight: Decimal) -> None:
        """承运商回报实际运费：重新分摊，商家与平台份额的差额各补记一次"""
        previous = ChargeAllocation(
            scenario=request.charge_scenario,
            vendor_charge=round2(request.vendor_charge or ZERO),
            platform_charge=round2(request.platform_charge or ZERO),
            total=round2(request.total_return_charge or ZERO),
        )
        rescaled = rescale_allocation(previous, freight)
        request.return_shipping_charge = rescaled.total
        self._store_allocation(request, rescaled)

        vendor_delta = rescaled.vendor_charge - previous.vendor_charge
        platform_delta = rescaled.platform_charge - previous.platform_charge
        if vendor_delta != ZERO:
            vendor_user = await seller_user_id(session, order.seller_id)
            if vendor_user is not None:
                await self._post_adjustment(
                    session, vendor_user, vendor_delta, request,
                    idempotency_key=f"return:{request.id}:vendor_charge_adjustment",
                    note=f"Return shipping adjustment for order {order.order_number}",
                )
        if platform_delta != ZERO:
            await self._adjust_platform_share(session, request, order, platform_delta)

        logger.info("Return charge rescaled", return_id=request.id, total=str(rescaled.total),
                    vendor_charge=str(rescaled.vendor_charge), vendor_delta=str(vendor_delta),
                    platform_delta=str(platform_delta))

    async def _adjust_platform_share(self, session: AsyncSession, request: ReturnRequest, order: Order,
                                     delta: Decimal) -> None:
        """平台份额差额：审批时未扣平台款则不补记；补扣同样受平台余额约束"""
        charged = await session.scalar(
            select(WalletTransaction.id).where(
                WalletTransaction.idempotency_key == f"return:{request.id}:platform_charge"
            )
        )
        if charged is None:
            logger.info("Platform adjustment skipped, platform share was never charged", return_id=request.id)
            return

        platform_user = await platform_account_id(session)
        if platform_user is None:
            return
        if delta > ZERO:
            balance = await self.ledger.balance(session, platform_user)
            if balance < delta:
                logger.warning("Platform adjustment skipped, insufficient platform balance",
                               return_id=request.id, balance=str(balance), platform_delta=str(delta))
                return
        await self._post_adjustment(
            session, platform_user, delta, request,
            idempotency_key=f"return:{request.id}:platform_charge_adjustment",
            note=f"Platform return shipping adjustment for order {order.order_number}",
        )

    async def _post_adjustment(self, session: AsyncSession, user_id: int, delta: Decimal, request: ReturnRequest,
                               idempotency_key: str, note: str) -> None:
        kwargs = dict(reference_type="return", reference_id=request.id, idempotency_key=idempotency_key, note=note)
        if delta > ZERO:
            await self.ledger.debit(session, user_id, delta, **kwargs)
        else:
            await self.ledger.credit(session, user_id, -delta, **kwargs)

    async def reject(self, request_id: int, admin: Actor, note: Optional[str] = None) -> ReturnRequest:
        async def _reject(session: AsyncSession):
            request = await self.get_or_404(session, ReturnRequest, request_id, "RETURN_NOT_FOUND", "ReturnRequest")
            if request.status != ReturnStatus.REQUESTED:
                raise InvalidStateTransition(code="RETURN_NOT_PENDING",
                                             detail=f"Return request {request.id} is {request.status.value}")
            request.status = ReturnStatus.REJECTED
            request.rejected_at = utcnow()
            request.admin_note = note or request.admin_note
            logger.info("Return request rejected", return_id=request.id, admin_id=admin.user_id)
            return request

        request = await self.execute_with_transaction(_reject)
        await self.notifier.send(request.buyer_id, "return_rejected", return_id=request.id,
                                 note=request.admin_note or "")
        return request

    # ------------------------------------------------------------------
    # 后续流转
    # ------------------------------------------------------------------

    async def _advance(self, request_id: int, target: ReturnStatus, admin: Actor) -> ReturnRequest:
        async def _update(session: AsyncSession):
            request = await self.get_or_404(session, ReturnRequest, request_id, "RETURN_NOT_FOUND", "ReturnRequest")
            if target not in _TRANSITIONS.get(request.status, ()):
                raise InvalidStateTransition(
                    code="INVALID_RETURN_TRANSITION",
                    detail=f"Cannot move return request from {request.status.value} to {target.value}"
                )
            request.status = target
            if target == ReturnStatus.PICKED:
                request.picked_at = utcnow()
            else:
                request.completed_at = utcnow()
            logger.info("Return request updated", return_id=request.id, status=target.value,
                        admin_id=admin.user_id)
            return request

        return await self.execute_with_transaction(_update)

    async def mark_picked(self, request_id: int, admin: Actor) -> ReturnRequest:
        return await self._advance(request_id, ReturnStatus.PICKED, admin)

    async def complete(self, request_id: int, admin: Actor) -> ReturnRequest:
        request = await self._advance(request_id, ReturnStatus.COMPLETED, admin)
        await self.notifier.send(request.buyer_id, "return_completed", return_id=request.id)
        return request

    async def cancel(self, request_id: int, actor: Actor) -> ReturnRequest:
        """买家撤回或管理员关闭进行中的申请（已扣运费不回退）"""
        async def _cancel(session: AsyncSession):
            request = await self.get_or_404(session, ReturnRequest, request_id, "RETURN_NOT_FOUND", "ReturnRequest")
            if not actor.is_admin and request.buyer_id != actor.user_id:
                raise ForbiddenError(code="RETURN_ACCESS_DENIED", detail="Not allowed to cancel this return request")
            if request.status not in OPEN_RETURN_STATUSES:
                raise InvalidStateTransition(code="RETURN_CLOSED",
                                             detail=f"Return request {request.id} is {request.status.value}")
            request.status = ReturnStatus.CANCELLED
            request.cancelled_at = utcnow()
            logger.info("Return request cancelled", return_id=request.id, actor_id=actor.user_id)
            return request

        return await self.execute_with_transaction(_cancel)

    # ------------------------------------------------------------------
    # 商家手动逆向取件
    # ------------------------------------------------------------------

    async def manual_reverse_pickup(self, seller: Actor, order_id: int) -> Dict[str, Any]:
        async def _load(session: AsyncSession):
            order = await self.get_or_404(session, Order, order_id, "ORDER_NOT_FOUND", "Order")
            if not seller.is_admin:
                profile = await self.get_by_field(session, SellerProfile, "user_id", seller.user_id)
                if profile is None or profile.id != order.seller_id:
                    raise ForbiddenError(code="ORDER_ACCESS_DENIED",
                                         detail=f"Not allowed to access order {order.id}")
            result = await self._create_reverse_pickup(
                session, order, f"RET_{order.order_number}_{int(utcnow().timestamp() * 1000)}",
                "Vendor manual reverse pickup",
            )
            return order, result

        order, result = await self.execute_with_session(_load)
        if not result.success:
            raise CarrierIntegrationError(result.error or "Failed to create reverse pickup",
                                          code="REVERSE_PICKUP_FAILED")

        data = result.data or {}

        async def _apply(session: AsyncSession):
            current = await session.get(Order, order.id, populate_existing=True)
            shipment = current.shipment
            if shipment is None:
                shipment = OrderShipment()
                current.shipment = shipment
            shipment.is_returning = True
            awb = extract_shipment_details(data).get("awb")
            if awb:
                shipment.rto_awb = awb
                shipment.tracking_url = shipment.tracking_url or tracking_url_for(awb)
            await record_shipment_event(session, current.id, "reverse_pickup_created", raw=data)

        await self.execute_with_transaction(_apply)
        logger.info("Manual reverse pickup created", order_id=order.id, seller_id=seller.user_id)
        return data
