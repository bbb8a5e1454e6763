"""
API 依赖注入：当前操作人、角色校验、服务实例
"""
from typing import Callable

from fastapi import Depends, Request

from mf_core.models.enums import UserRole
from mf_core.services import (
    Actor, OrderLifecycle, PaymentVerifier, ReturnLifecycle, ShipmentService, WalletLedger, WithdrawalService
)
from mf_core.services.payments import get_payment_verifier
from mf_core.utils.errors import ForbiddenError, UnauthorizedError
from mf_core.webhooks import CarrierWebhookHandler


async def current_actor(request: Request) -> Actor:
    """从认证中间件写入的请求状态中读取操作人"""
    user_id = getattr(request.state, "user_id", None)
    role = getattr(request.state, "role", None)
    if user_id is None or role is None:
        raise UnauthorizedError()
    return Actor(user_id=int(user_id), role=UserRole(role))


def require_roles(*roles: str) -> Callable:
    """限定角色的依赖"""
    allowed = {UserRole(role) for role in roles}

    async def _checker(actor: Actor = Depends(current_actor)) -> Actor:
        if actor.role not in allowed:
            raise ForbiddenError(
                code="ROLE_NOT_ALLOWED",
                detail=f"Requires one of roles: {', '.join(sorted(r.value for r in allowed))}"
            )
        return actor

    return _checker


async def get_order_lifecycle() -> OrderLifecycle:
    return OrderLifecycle()


async def get_shipment_service() -> ShipmentService:
    return ShipmentService()


async def get_return_lifecycle() -> ReturnLifecycle:
    return ReturnLifecycle()


async def get_withdrawal_service() -> WithdrawalService:
    return WithdrawalService()


async def get_verifier() -> PaymentVerifier:
    return get_payment_verifier()


async def get_wallet_ledger() -> WalletLedger:
    return WalletLedger()


async def get_webhook_handler() -> CarrierWebhookHandler:
    return CarrierWebhookHandler()
