"""
状态与类别枚举
所有枚举均为 str 子类，持久化和序列化时使用其 value
"""
import enum


class UserRole(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class PaymentMethod(str, enum.Enum):
    COD = "cod"
    ONLINE = "online"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ShippingStatus(str, enum.Enum):
    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class RefundStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    REFUNDED = "refunded"


class CarrierOrderStatus(str, enum.Enum):
    """承运商状态码映射出的订单状态（与订单自身状态机不同）"""
    CREATED = "created"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ReturnType(str, enum.Enum):
    RETURN = "return"
    REPLACEMENT = "replacement"


class ReturnReason(str, enum.Enum):
    WRONG_ITEM = "wrong_item"
    DEFECTIVE = "defective"
    NOT_AS_DESCRIBED = "not_as_described"
    SIZE_ISSUE = "size_issue"
    OTHER = "other"


class ReturnStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PICKED = "picked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_RETURN_STATUSES = (ReturnStatus.REQUESTED, ReturnStatus.APPROVED, ReturnStatus.PICKED)


class RefundMode(str, enum.Enum):
    BANK = "bank"
    UPI = "upi"
    WALLET = "wallet"


class ChargeScenario(str, enum.Enum):
    RTO_COD = "rto_cod"
    RTO_ONLINE = "rto_online"
    WRONG_ITEM = "wrong_item"
    DEFECTIVE = "defective"
    NOT_AS_DESCRIBED = "not_as_described"
    SIZE_ISSUE_VENDOR_FAULT = "size_issue_vendor_fault"
    SIZE_ISSUE_CUSTOMER_FAULT = "size_issue_customer_fault"
    CUSTOMER_CHANGED_MIND = "customer_changed_mind"
    OTHER = "other"


# 平台与商家各承担一半运费的场景，其余场景由商家全额承担
SHARED_CHARGE_SCENARIOS = frozenset({
    ChargeScenario.SIZE_ISSUE_CUSTOMER_FAULT,
    ChargeScenario.CUSTOMER_CHANGED_MIND,
})


class WithdrawalMethod(str, enum.Enum):
    BANK = "bank"
    UPI = "upi"
    WALLET = "wallet"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PROCESSED = "processed"
    PAID = "paid"
    REJECTED = "rejected"


SETTLED_WITHDRAWAL_STATUSES = (WithdrawalStatus.PROCESSED, WithdrawalStatus.PAID)


class LedgerEntryKind(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class NdrAction(str, enum.Enum):
    RE_ATTEMPT = "RE_ATTEMPT"
    REATTEMPT = "REATTEMPT"
    RETURN = "RETURN"
