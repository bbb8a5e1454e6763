"""
支付网关与打款服务集成
"""
from .client import PaymentGatewayClient, PaymentGatewayError, build_payment_client
from .payouts import (
    MANUAL_STATUS,
    Beneficiary,
    GatewayPayoutProvider,
    ManualPayoutProvider,
    PayoutReceipt,
    build_payout_provider,
    get_payout_provider,
    set_payout_provider,
)

__all__ = [
    "MANUAL_STATUS",
    "Beneficiary",
    "GatewayPayoutProvider",
    "ManualPayoutProvider",
    "PaymentGatewayClient",
    "PaymentGatewayError",
    "PayoutReceipt",
    "build_payment_client",
    "build_payout_provider",
    "get_payout_provider",
    "set_payout_provider",
]
