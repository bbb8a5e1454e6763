"""
API 请求 / 响应模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from mf_core.models.enums import (
    ChargeScenario, LedgerEntryKind, OrderStatus, PaymentMethod, PaymentStatus, RefundStatus,
    ReturnReason, ReturnStatus, ReturnType, ShippingStatus, WithdrawalMethod, WithdrawalStatus
)

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """统一 API 响应格式"""
    ok: bool = Field(description="操作是否成功")
    data: Optional[T] = Field(default=None, description="响应数据")
    error: Optional[Dict[str, Any]] = Field(default=None, description="错误信息（RFC7807 Problem Details）")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="元数据")

    @classmethod
    def success(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        """创建成功响应"""
        return cls(ok=True, data=data, metadata=metadata)


class PaginatedResponse(BaseModel, Generic[T]):
    """分页响应"""
    items: List[T] = Field(description="数据列表")
    total: Optional[int] = Field(default=None, description="总数量")
    page_size: int = Field(description="每页大小")
    offset: int = Field(description="偏移量")
    has_more: bool = Field(description="是否有更多数据")

    @classmethod
    def build(cls, items: List[Any], total: int, page_size: int, offset: int) -> "PaginatedResponse[T]":
        return cls(items=items, total=total, page_size=page_size, offset=offset,
                   has_more=offset + len(items) < total)


# ---------------------------------------------------------------------------
# 订单
# ---------------------------------------------------------------------------

class ShippingAddress(BaseModel):
    """收货地址"""
    full_name: str
    phone: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    country: str = "India"


class CheckoutItem(BaseModel):
    product_id: int
    seller_id: int = Field(description="商家档案ID")
    quantity: int = Field(ge=1)


class CreateOrderRequest(BaseModel):
    """货到付款下单"""
    items: List[CheckoutItem] = Field(min_length=1)
    shipping_address: ShippingAddress
    discount: Decimal = Decimal("0")
    coupon: Optional[str] = None


class CreateOnlineOrderRequest(CreateOrderRequest):
    """在线支付下单（携带网关回调参数）"""
    gateway_order_id: str
    payment_id: str
    signature: str


class UpdateOrderStatusRequest(BaseModel):
    status: str


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: Optional[int] = None
    name: str
    image: Optional[str] = None
    sku: Optional[str] = None
    unit_price: Decimal
    quantity: int


class ShipmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    shipment_id: Optional[str] = None
    awb: Optional[str] = None
    courier_name: Optional[str] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    courier_cost: Optional[Decimal] = None
    status_code: Optional[str] = None
    status_description: Optional[str] = None
    is_returning: bool = False
    pickup_scheduled_at: Optional[datetime] = None
    rto_awb: Optional[str] = None
    rto_delivered_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    """订单响应"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    buyer_id: int
    seller_id: int
    shipping_address: Dict[str, Any]
    payment_method: PaymentMethod
    items_price: Decimal
    tax_price: Decimal
    shipping_price: Decimal
    discount: Decimal
    total_price: Decimal
    coupon_code: Optional[str] = None
    commission: Optional[Decimal] = None
    seller_earnings: Optional[Decimal] = None
    seller_credited: bool
    order_status: OrderStatus
    payment_status: PaymentStatus
    shipping_status: ShippingStatus
    refund_status: RefundStatus
    refunded_amount: Optional[Decimal] = None
    cancellation_requested: bool
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemResponse] = []
    shipment: Optional[ShipmentResponse] = None


class InvoiceLine(BaseModel):
    name: str
    sku: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class InvoiceResponse(BaseModel):
    """发票数据"""
    invoice_number: str
    issued_at: datetime
    seller: Dict[str, Any]
    bill_to: Dict[str, Any]
    items: List[InvoiceLine]
    items_price: Decimal
    shipping_price: Decimal
    tax_price: Decimal
    discount: Decimal
    coupon_code: Optional[str] = None
    total_price: Decimal
    payment_method: str
    payment_status: str


# ---------------------------------------------------------------------------
# 支付
# ---------------------------------------------------------------------------

class CreatePaymentOrderRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: Optional[str] = None
    receipt: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str


class PaymentStateResponse(BaseModel):
    payment_id: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    method: Optional[str] = None
    order_id: Optional[str] = None


# ---------------------------------------------------------------------------
# 提现
# ---------------------------------------------------------------------------

class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    method: str = Field(description="bank | upi | wallet")
    payment_details: Dict[str, Any]
    notes: Optional[str] = None


class WithdrawalStatusRequest(BaseModel):
    status: str
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    seller_user_id: int
    amount: Decimal
    method: WithdrawalMethod
    payment_details: Dict[str, Any]
    status: WithdrawalStatus
    payout_id: Optional[str] = None
    payout_status: Optional[str] = None
    payout_utr: Optional[str] = None
    transaction_id: Optional[str] = None
    seller_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# 退货
# ---------------------------------------------------------------------------

class ReturnCreateRequest(BaseModel):
    order_id: int
    type: str = "return"
    reason_category: str
    reason_text: Optional[str] = None
    refund_details: Dict[str, Any]


class ReturnNoteRequest(BaseModel):
    note: Optional[str] = None


class ManualReversePickupRequest(BaseModel):
    order_id: int


class ReturnResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    buyer_id: int
    order_id: int
    type: ReturnType
    reason_category: ReturnReason
    reason_text: Optional[str] = None
    refund_details: Dict[str, Any]
    status: ReturnStatus
    reverse_shipment_id: Optional[str] = None
    reverse_awb: Optional[str] = None
    reverse_tracking_url: Optional[str] = None
    pickup_scheduled_at: Optional[datetime] = None
    forward_shipping_charge: Optional[Decimal] = None
    return_shipping_charge: Optional[Decimal] = None
    charge_scenario: Optional[ChargeScenario] = None
    vendor_charge: Optional[Decimal] = None
    platform_charge: Optional[Decimal] = None
    total_return_charge: Optional[Decimal] = None
    allocation_applied: bool
    admin_note: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# 发运
# ---------------------------------------------------------------------------

class RatesRequest(BaseModel):
    pickup_pincode: str
    delivery_pincode: str
    weight_kg: Decimal = Decimal("1")
    cod_amount: Decimal = Decimal("0")


class ShipmentCreateRequest(BaseModel):
    order_id: int


class PickupRequest(BaseModel):
    order_id: int
    pickup_date: Optional[str] = None


class CancelShipmentRequest(BaseModel):
    reason: Optional[str] = None


class NdrActionRequest(BaseModel):
    order_id: int
    action: str = Field(description="RE_ATTEMPT | REATTEMPT | RETURN")
    phone: str = ""
    address1: str = ""
    address2: str = ""


class TrackRequest(BaseModel):
    order_id: Optional[int] = None
    awb: Optional[str] = None
    contact: str = ""
    email: str = ""


# ---------------------------------------------------------------------------
# 钱包
# ---------------------------------------------------------------------------

class WalletTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: LedgerEntryKind
    amount: Decimal
    balance_after: Optional[Decimal] = None
    reference_type: str
    reference_id: Optional[int] = None
    note: Optional[str] = None
    created_at: datetime


class WalletResponse(BaseModel):
    balance: Decimal
    transactions: List[WalletTransactionResponse]
