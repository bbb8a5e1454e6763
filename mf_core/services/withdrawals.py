"""
商家提现服务

可提现余额 = 已收款订单的商家收益 - 已打款提现；
打款服务未配置或调用失败时降级为人工打款（payout_status = manual）
"""
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.gateways.payments import MANUAL_STATUS, PaymentGatewayError, get_payout_provider
from mf_core.models import Order, SellerProfile, User, Withdrawal
from mf_core.models.enums import (
    SETTLED_WITHDRAWAL_STATUSES, OrderStatus, PaymentMethod, PaymentStatus, WithdrawalMethod, WithdrawalStatus
)
from mf_core.utils.datetime_utils import utcnow
from mf_core.utils.errors import (
    DuplicateRequest, InsufficientBalance, InvalidStateTransition, NotFoundError, ServiceUnavailableError,
    ValidationError
)
from mf_core.utils.logger import get_logger
from mf_core.utils.money import ZERO, round2
from .base import Actor, BaseService, RepositoryMixin
from .pricing import effective_commission

logger = get_logger(__name__)

UPI_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z]{3,}$")

# 打款进行中的占用标记
PAYOUT_CLAIMED = "initiating"

ALLOWED_TRANSITIONS = {
    WithdrawalStatus.PENDING: {
        WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING, WithdrawalStatus.PROCESSED,
        WithdrawalStatus.PAID, WithdrawalStatus.REJECTED,
    },
    WithdrawalStatus.APPROVED: {
        WithdrawalStatus.PROCESSING, WithdrawalStatus.PROCESSED, WithdrawalStatus.PAID, WithdrawalStatus.REJECTED,
    },
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.PROCESSED, WithdrawalStatus.PAID, WithdrawalStatus.REJECTED},
    WithdrawalStatus.PROCESSED: {WithdrawalStatus.PAID},
    WithdrawalStatus.PAID: set(),
    WithdrawalStatus.REJECTED: set(),
}

SELLER_DELETABLE = {WithdrawalStatus.PENDING, WithdrawalStatus.REJECTED}
ADMIN_DELETABLE = {
    WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING, WithdrawalStatus.REJECTED,
}


def validate_payment_details(method: WithdrawalMethod, details: Dict[str, Any]) -> None:
    """校验收款信息"""
    details = details or {}
    if method == WithdrawalMethod.BANK:
        account = str(details.get("account_number") or "")
        ifsc = str(details.get("ifsc_code") or "")
        if len(account) < 9:
            raise ValidationError(code="INVALID_PAYMENT_DETAILS", detail="Invalid account number")
        if len(ifsc) != 11:
            raise ValidationError(code="INVALID_PAYMENT_DETAILS", detail="Invalid IFSC code")
    elif method == WithdrawalMethod.UPI:
        if not UPI_PATTERN.match(str(details.get("upi_id") or "")):
            raise ValidationError(code="INVALID_PAYMENT_DETAILS", detail="Invalid UPI ID format")
    elif not details.get("wallet_type") or not details.get("wallet_id"):
        raise ValidationError(code="INVALID_PAYMENT_DETAILS", detail="Wallet type and ID are required")


class WithdrawalService(BaseService, RepositoryMixin):
    """提现服务"""

    def __init__(self, payouts=None):
        super().__init__()
        self.payouts = payouts or get_payout_provider()

    async def _available_balance(self, session: AsyncSession, seller_user_id: int) -> Decimal:
        profile = await self.get_by_field(session, SellerProfile, "user_id", seller_user_id)
        if profile is None:
            raise NotFoundError(code="SELLER_PROFILE_NOT_FOUND", resource="SellerProfile")

        result = await session.execute(
            select(Order).where(
                Order.seller_id == profile.id,
                or_(
                    and_(Order.payment_method != PaymentMethod.COD, Order.payment_status == PaymentStatus.PAID),
                    and_(Order.payment_method == PaymentMethod.COD, Order.order_status == OrderStatus.DELIVERED),
                ),
            )
        )
        earned = sum((effective_commission(order).seller_earnings for order in result.scalars()), ZERO)

        withdrawn = await session.scalar(
            select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(
                Withdrawal.seller_user_id == seller_user_id,
                Withdrawal.status.in_(SETTLED_WITHDRAWAL_STATUSES),
            )
        )
        return max(ZERO, round2(earned - round2(withdrawn or ZERO)))

    async def available_balance(self, seller_user_id: int) -> Decimal:
        return await self.execute_with_session(self._available_balance, seller_user_id)

    async def request_withdrawal(self, seller: Actor, amount, method: str,
                                 details: Dict[str, Any], notes: Optional[str] = None) -> Withdrawal:
        """
        商家申请提现

        打款服务已配置时登记收款人；登记失败只记录日志并降级为人工打款
        """
        amount = round2(amount)
        if amount <= ZERO:
            raise ValidationError(code="INVALID_AMOUNT", detail="Withdrawal amount must be positive")
        try:
            payout_method = WithdrawalMethod(method)
        except ValueError:
            raise ValidationError(code="INVALID_PAYMENT_METHOD", detail=f"Unsupported payment method: {method}")

        async def _check(session: AsyncSession):
            user = await self.get_or_404(session, User, seller.user_id, "SELLER_NOT_FOUND", "Seller")
            available = await self._available_balance(session, seller.user_id)
            return user, available

        user, available = await self.execute_with_session(_check)
        if amount > available:
            raise InsufficientBalance(current_balance=available, requested_amount=amount)
        validate_payment_details(payout_method, details)

        beneficiary = None
        if self.payouts.configured:
            try:
                beneficiary = await self.payouts.register_beneficiary(
                    user.username, user.email or "", user.phone or "", payout_method, details
                )
            except PaymentGatewayError as e:
                logger.warning("Payout beneficiary setup failed, falling back to manual payout",
                               seller_id=seller.user_id, err=str(e))

        async def _create(session: AsyncSession):
            withdrawal = Withdrawal(
                seller_user_id=seller.user_id,
                amount=amount,
                method=payout_method,
                payment_details=dict(details),
                status=WithdrawalStatus.PENDING,
                seller_notes=notes,
                payout_contact_id=beneficiary.contact_id if beneficiary else None,
                payout_fund_account_id=beneficiary.fund_account_id if beneficiary else None,
            )
            session.add(withdrawal)
            await session.flush()
            return withdrawal

        withdrawal = await self.execute_with_transaction(_create)
        logger.info("Withdrawal requested", withdrawal_id=withdrawal.id, seller_id=seller.user_id,
                    amount=str(amount), method=payout_method.value, manual=beneficiary is None)
        return withdrawal

    async def list_mine(self, seller: Actor, page: int = 1, limit: int = 10) -> Tuple[List[Withdrawal], int]:
        async def _list(session: AsyncSession):
            stmt = select(Withdrawal).where(Withdrawal.seller_user_id == seller.user_id)
            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            result = await session.execute(
                stmt.order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
                .offset((page - 1) * limit).limit(limit)
            )
            return list(result.scalars().all()), int(total or 0)

        return await self.execute_with_session(_list)

    async def list_all(self, status: Optional[str] = None, search: Optional[str] = None,
                       page: int = 1, limit: int = 10) -> Tuple[List[Withdrawal], int]:
        """管理员列表：按状态过滤，按商家名称/邮箱、提现ID、流水号、备注搜索"""
        async def _list(session: AsyncSession):
            stmt = select(Withdrawal)
            if status and status != "all":
                stmt = stmt.where(Withdrawal.status == WithdrawalStatus(status))
            if search:
                pattern = f"%{search}%"
                sellers = select(User.id).where(or_(User.username.ilike(pattern), User.email.ilike(pattern)))
                conditions = [
                    Withdrawal.seller_user_id.in_(sellers),
                    Withdrawal.transaction_id.ilike(pattern),
                    Withdrawal.admin_notes.ilike(pattern),
                ]
                if search.isdigit():
                    conditions.append(Withdrawal.id == int(search))
                stmt = stmt.where(or_(*conditions))

            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            result = await session.execute(
                stmt.order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
                .offset((page - 1) * limit).limit(limit)
            )
            return list(result.scalars().all()), int(total or 0)

        return await self.execute_with_session(_list)

    async def get(self, withdrawal_id: int) -> Withdrawal:
        async def _get(session: AsyncSession):
            return await self.get_or_404(session, Withdrawal, withdrawal_id, "WITHDRAWAL_NOT_FOUND", "Withdrawal")

        return await self.execute_with_session(_get)

    async def summary(self) -> Dict[str, Any]:
        async def _summary(session: AsyncSession):
            rows = await session.execute(
                select(Withdrawal.status, func.count(), func.coalesce(func.sum(Withdrawal.amount), 0))
                .group_by(Withdrawal.status)
            )
            counts: Dict[WithdrawalStatus, int] = {}
            amounts: Dict[WithdrawalStatus, Decimal] = {}
            for status, count, amount in rows.all():
                status = WithdrawalStatus(status)
                counts[status] = int(count)
                amounts[status] = round2(amount)
            return {
                "total_requests": sum(counts.values()),
                "pending_requests": counts.get(WithdrawalStatus.PENDING, 0),
                "approved_requests": counts.get(WithdrawalStatus.APPROVED, 0),
                # 处理中 + 已处理（不含已打款和已拒绝）
                "processed_requests": counts.get(WithdrawalStatus.PROCESSING, 0)
                + counts.get(WithdrawalStatus.PROCESSED, 0),
                "rejected_requests": counts.get(WithdrawalStatus.REJECTED, 0),
                "total_withdrawal_amount": sum(amounts.values(), ZERO),
                "pending_amount": amounts.get(WithdrawalStatus.PENDING, ZERO),
                "processed_amount": amounts.get(WithdrawalStatus.PAID, ZERO),
            }

        return await self.execute_with_session(_summary)

    async def update_status(self, withdrawal_id: int, status: str, admin: Actor,
                            transaction_id: Optional[str] = None, notes: Optional[str] = None) -> Withdrawal:
        """
        管理员更新提现状态

        processed / paid 时发起打款（尚未打款时）；打款服务失败则不修改申请
        """
        try:
            target = WithdrawalStatus(status)
        except ValueError:
            raise ValidationError(code="INVALID_STATUS", detail=f"Unknown withdrawal status: {status}")

        withdrawal = await self.get(withdrawal_id)
        if target not in ALLOWED_TRANSITIONS[withdrawal.status]:
            raise InvalidStateTransition(
                code="INVALID_WITHDRAWAL_TRANSITION",
                detail=f"Cannot move withdrawal from {withdrawal.status.value} to {target.value}"
            )

        receipt = None
        needs_payout = target in SETTLED_WITHDRAWAL_STATUSES and not withdrawal.payout_status
        if needs_payout:
            await self._claim_payout(withdrawal, target)
            try:
                receipt = await self.payouts.send_payout(
                    withdrawal.payout_fund_account_id, withdrawal.amount, f"withdrawal_{withdrawal.id}"
                )
            except PaymentGatewayError as e:
                await self._release_payout(withdrawal.id)
                logger.error("Payout creation failed", withdrawal_id=withdrawal.id, err=str(e))
                raise ServiceUnavailableError(code="PAYOUT_FAILED", detail=f"Failed to process payout: {e}")

        async def _apply(session: AsyncSession):
            current = await self.get_or_404(session, Withdrawal, withdrawal_id, "WITHDRAWAL_NOT_FOUND", "Withdrawal")
            if receipt is None and current.payout_status == PAYOUT_CLAIMED:
                raise DuplicateRequest(code="PAYOUT_IN_PROGRESS",
                                       detail=f"Payout for withdrawal {withdrawal_id} is in progress")
            if target not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidStateTransition(
                    code="INVALID_WITHDRAWAL_TRANSITION",
                    detail=f"Cannot move withdrawal from {current.status.value} to {target.value}"
                )
            now = utcnow()
            current.status = target
            if target in (WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING):
                current.approved_by = current.approved_by or admin.user_id
                current.approved_at = current.approved_at or now
            elif target == WithdrawalStatus.REJECTED:
                current.rejected_at = now
            if receipt is not None:
                current.payout_id = receipt.payout_id
                current.payout_status = receipt.status
                current.payout_utr = receipt.utr
                current.processed_by = admin.user_id
                current.processed_at = now
                current.transaction_id = transaction_id or receipt.payout_id or f"manual_{int(now.timestamp() * 1000)}"
            elif transaction_id:
                current.transaction_id = transaction_id
            if notes:
                current.admin_notes = notes
            return current

        updated = await self.execute_with_transaction(_apply)
        logger.info("Withdrawal status updated", withdrawal_id=updated.id, status=target.value,
                    payout_status=updated.payout_status, admin_id=admin.user_id)
        return updated

    async def delete(self, actor: Actor, withdrawal_id: int) -> None:
        """
        删除提现申请

        商家只能删除自己待处理或已拒绝的申请；管理员可删除任何未结算的申请。
        已结算（processed / paid）或打款进行中的申请计入已提现金额，不允许删除。
        """
        async def _delete(session: AsyncSession):
            withdrawal = await session.get(Withdrawal, withdrawal_id)
            if withdrawal is None or (not actor.is_admin and withdrawal.seller_user_id != actor.user_id):
                raise NotFoundError(code="WITHDRAWAL_NOT_FOUND", resource="Withdrawal")

            deletable = ADMIN_DELETABLE if actor.is_admin else SELLER_DELETABLE
            if withdrawal.status not in deletable or withdrawal.payout_status:
                raise InvalidStateTransition(
                    code="WITHDRAWAL_NOT_DELETABLE",
                    detail=f"Withdrawal in status {withdrawal.status.value} cannot be deleted"
                )
            await session.delete(withdrawal)

        await self.execute_with_transaction(_delete)
        logger.info("Withdrawal deleted", withdrawal_id=withdrawal_id, actor_id=actor.user_id,
                    by_admin=actor.is_admin)

    async def _claim_payout(self, withdrawal: Withdrawal, target: WithdrawalStatus) -> None:
        """
        条件更新占用打款权

        UPDATE ... SET payout_status = 'initiating' WHERE status = :读取时状态 AND payout_status IS NULL，
        并发的第二个请求更新 0 行，不会重复打款
        """
        table = Withdrawal.__table__

        async def _claim(session: AsyncSession) -> bool:
            result = await session.execute(
                update(table)
                .where(table.c.id == withdrawal.id, table.c.status == withdrawal.status,
                       table.c.payout_status.is_(None))
                .values(payout_status=PAYOUT_CLAIMED)
            )
            return result.rowcount == 1

        if not await self.execute_with_transaction(_claim):
            logger.warning("Concurrent payout attempt rejected", withdrawal_id=withdrawal.id, target=target.value)
            raise DuplicateRequest(code="PAYOUT_IN_PROGRESS",
                                   detail=f"Withdrawal {withdrawal.id} is already being paid out")

    async def _release_payout(self, withdrawal_id: int) -> None:
        """打款失败时释放占用，申请回到原状态"""
        table = Withdrawal.__table__

        async def _release(session: AsyncSession):
            await session.execute(
                update(table)
                .where(table.c.id == withdrawal_id, table.c.payout_status == PAYOUT_CLAIMED)
                .values(payout_status=None)
            )

        await self.execute_with_transaction(_release)

    async def refresh_payout_status(self, withdrawal_id: int) -> Dict[str, Any]:
        """从打款服务同步打款状态"""
        withdrawal = await self.get(withdrawal_id)
        if not withdrawal.payout_id:
            raise ValidationError(code="NO_PAYOUT_ID", detail="No payout ID found for this withdrawal")
        if withdrawal.payout_status == MANUAL_STATUS:
            return {"withdrawal_id": withdrawal.id, "payout_id": withdrawal.payout_id, "status": MANUAL_STATUS}

        try:
            receipt = await self.payouts.fetch_payout(withdrawal.payout_id)
        except PaymentGatewayError as e:
            raise ServiceUnavailableError(code="PAYOUT_STATUS_UNAVAILABLE",
                                          detail=f"Failed to check payout status: {e}")

        if receipt.status != withdrawal.payout_status or (receipt.utr and receipt.utr != withdrawal.payout_utr):
            async def _sync(session: AsyncSession):
                current = await session.get(Withdrawal, withdrawal_id)
                current.payout_status = receipt.status
                current.payout_utr = receipt.utr or current.payout_utr

            await self.execute_with_transaction(_sync)
            logger.info("Payout status synced", withdrawal_id=withdrawal_id, status=receipt.status)

        return {
            "withdrawal_id": withdrawal.id,
            "payout_id": withdrawal.payout_id,
            "status": receipt.status,
            "amount": receipt.amount,
            "utr": receipt.utr,
            "fees": receipt.fees,
        }
