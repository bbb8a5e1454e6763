"""
MarketFlow API 路由
"""
from fastapi import APIRouter

from . import orders, payments, returns, shipping, wallet, webhooks, withdrawals

api_router = APIRouter()

api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(shipping.router, prefix="/shipping", tags=["shipping"])
api_router.include_router(returns.router, prefix="/returns", tags=["returns"])
api_router.include_router(withdrawals.router, prefix="/withdrawals", tags=["withdrawals"])
api_router.include_router(wallet.router, prefix="/wallet", tags=["wallet"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

__all__ = ["api_router"]
