"""
钱包账本

余额只通过单条原子 UPDATE（wallet_balance = wallet_balance ± amount）修改，
每次变动同时追加一条 wallet_transactions 流水。所有方法都在调用方的事务中执行。
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from mf_core.models import User, WalletTransaction
from mf_core.models.enums import LedgerEntryKind
from mf_core.utils.errors import NotFoundError, ValidationError
from mf_core.utils.logger import get_logger
from mf_core.utils.money import ZERO, round2

logger = get_logger(__name__)

_users = User.__table__


def _sync_cached(session: AsyncSession, model_cls, record_id: int, attr: str, value) -> None:
    """会话中已加载的对象同步为数据库中的最新值"""
    identity = inspect(model_cls).identity_key_from_primary_key((record_id,))
    cached = session.sync_session.identity_map.get(identity)
    if cached is not None:
        set_committed_value(cached, attr, value)


async def claim_once(session: AsyncSession, model_cls, record_id: int, flag: str) -> bool:
    """
    条件更新幂等标记：UPDATE ... SET flag = true WHERE id = :id AND flag = false

    返回 True 表示本次调用获得执行权；False 表示已被处理过
    """
    table = model_cls.__table__
    result = await session.execute(
        update(table)
        .where(table.c.id == record_id, table.c[flag].is_(False))
        .values({flag: True})
    )
    if result.rowcount != 1:
        return False
    _sync_cached(session, model_cls, record_id, flag, True)
    return True


class WalletLedger:
    """钱包账本"""

    async def _existing(self, session: AsyncSession, idempotency_key: str) -> Optional[WalletTransaction]:
        result = await session.execute(
            select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def _apply(
        self,
        session: AsyncSession,
        user_id: int,
        delta: Decimal,
        kind: LedgerEntryKind,
        reference_type: str,
        reference_id: Optional[int],
        idempotency_key: str,
        note: Optional[str],
    ) -> Decimal:
        existing = await self._existing(session, idempotency_key)
        if existing is not None:
            logger.info("Duplicate ledger entry ignored", user_id=user_id, idempotency_key=idempotency_key)
            return await self.balance(session, user_id)

        result = await session.execute(
            update(_users)
            .where(_users.c.id == user_id)
            .values(wallet_balance=_users.c.wallet_balance + delta)
            .returning(_users.c.wallet_balance)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise NotFoundError(code="USER_NOT_FOUND", resource="User")
        new_balance = round2(new_balance)

        _sync_cached(session, User, user_id, "wallet_balance", new_balance)

        session.add(WalletTransaction(
            user_id=user_id,
            kind=kind,
            amount=delta,
            balance_after=new_balance,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            note=note,
        ))
        await session.flush()

        logger.info("Wallet updated", user_id=user_id, kind=kind.value, amount=str(delta),
                    balance=str(new_balance), reference_type=reference_type, reference_id=reference_id)
        if new_balance < ZERO:
            logger.warning("Wallet balance negative after debit", user_id=user_id,
                           balance=str(new_balance), reference_type=reference_type, reference_id=reference_id)
        return new_balance

    async def credit(
        self,
        session: AsyncSession,
        user_id: int,
        amount,
        *,
        reference_type: str,
        reference_id: Optional[int] = None,
        idempotency_key: str,
        note: Optional[str] = None,
    ) -> Decimal:
        """入账，返回变动后余额"""
        amount = round2(amount)
        if amount < ZERO:
            raise ValidationError(code="INVALID_AMOUNT", detail="Credit amount cannot be negative")
        return await self._apply(session, user_id, amount, LedgerEntryKind.CREDIT,
                                 reference_type, reference_id, idempotency_key, note)

    async def debit(
        self,
        session: AsyncSession,
        user_id: int,
        amount,
        *,
        reference_type: str,
        reference_id: Optional[int] = None,
        idempotency_key: str,
        note: Optional[str] = None,
    ) -> Decimal:
        """扣款，允许余额为负（退货运费属于商家负债）"""
        amount = round2(amount)
        if amount < ZERO:
            raise ValidationError(code="INVALID_AMOUNT", detail="Debit amount cannot be negative")
        return await self._apply(session, user_id, -amount, LedgerEntryKind.DEBIT,
                                 reference_type, reference_id, idempotency_key, note)

    async def balance(self, session: AsyncSession, user_id: int) -> Decimal:
        result = await session.execute(select(_users.c.wallet_balance).where(_users.c.id == user_id))
        value = result.scalar_one_or_none()
        if value is None:
            raise NotFoundError(code="USER_NOT_FOUND", resource="User")
        return round2(value)

    async def history(self, session: AsyncSession, user_id: int,
                      limit: int = 50, offset: int = 0) -> List[WalletTransaction]:
        result = await session.execute(
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
