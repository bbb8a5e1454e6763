"""
MarketFlow 核心服务模块
"""
from .base import Actor, BaseService
from .orders import OrderLifecycle
from .payments import PaymentVerifier
from .returns import ReturnLifecycle
from .shipments import ShipmentService
from .wallet_ledger import WalletLedger
from .withdrawals import WithdrawalService

__all__ = [
    "Actor",
    "BaseService",
    "OrderLifecycle",
    "PaymentVerifier",
    "ReturnLifecycle",
    "ShipmentService",
    "WalletLedger",
    "WithdrawalService",
]
