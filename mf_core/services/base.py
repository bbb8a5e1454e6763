"""
基础服务类
"""
from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import get_db_manager
from mf_core.models.enums import UserRole
from mf_core.utils.errors import InternalServerError, MarketFlowException, NotFoundError
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """操作人（身份由上游网关注入）"""
    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_seller(self) -> bool:
        return self.role == UserRole.SELLER


class BaseService:
    """基础服务类"""

    def __init__(self):
        self.db_manager = get_db_manager()
        self.logger = get_logger(self.__class__.__name__)

    async def execute_with_transaction(self, operation, *args, **kwargs) -> Any:
        """在事务中执行操作（正常退出提交，异常回滚）"""
        try:
            async with self.db_manager.get_transaction() as session:
                return await operation(session, *args, **kwargs)
        except MarketFlowException:
            raise
        except Exception as e:
            self.logger.error("Transaction operation failed", exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail=f"Database transaction failed: {type(e).__name__}"
            )

    async def execute_with_session(self, operation, *args, **kwargs) -> Any:
        """使用数据库会话执行只读操作"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except MarketFlowException:
            raise
        except Exception as e:
            self.logger.error("Session operation failed", exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail=f"Database operation failed: {type(e).__name__}"
            )


class RepositoryMixin:
    """仓储混入类 - 提供常用的查询"""

    async def get_or_404(self, session: AsyncSession, model_class, record_id: int, code: str, resource: str):
        instance = await session.get(model_class, record_id)
        if instance is None:
            raise NotFoundError(code=code, resource=resource)
        return instance

    async def get_by_field(self, session: AsyncSession, model_class, field_name: str, field_value: Any) -> Optional[Any]:
        """根据字段获取记录"""
        stmt = select(model_class).where(getattr(model_class, field_name) == field_value)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def get_many_by_field(
        self,
        session: AsyncSession,
        model_class,
        field_name: str,
        field_value: Any,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Any]:
        """根据字段获取多个记录（按 ID 倒序）"""
        stmt = (
            select(model_class)
            .where(getattr(model_class, field_name) == field_value)
            .order_by(model_class.id.desc())
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)

        result = await session.execute(stmt)
        return list(result.scalars().all())
