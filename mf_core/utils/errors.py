"""
MarketFlow 错误处理系统
遵循 RFC7807 Problem Details 标准

子类只声明 status / title / 默认错误码，响应格式统一由 MarketFlowException 生成
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Insufficient Balance",
                "status": 400,
                "detail": "Requested 1500.00 exceeds available balance 930.00",
                "code": "INSUFFICIENT_BALANCE"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class MarketFlowException(Exception):
    """MarketFlow 基础异常类"""

    status: int = 500
    title: str = "Internal Server Error"
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, code: Optional[str] = None, detail: Optional[str] = None, **extra: Any):
        self.code = code or self.default_code
        self.detail = detail
        self.extra: Dict[str, Any] = extra
        super().__init__(detail or self.title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式（Decimal 附加字段转为字符串）"""
        extra = {k: (str(v) if isinstance(v, Decimal) else v) for k, v in self.extra.items()}
        return ProblemDetail(
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **extra
        )

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        instance = str(request.url) if request else None
        return JSONResponse(
            status_code=self.status,
            content={
                "ok": False,
                "error": self.to_problem_detail(instance).model_dump(exclude_none=True)
            }
        )


# 通用 HTTP 错误
class UnauthorizedError(MarketFlowException):
    status = 401
    title = "Unauthorized"
    default_code = "UNAUTHORIZED"

    def __init__(self, code: Optional[str] = None, detail: str = "Authentication required"):
        super().__init__(code, detail)


class ForbiddenError(MarketFlowException):
    status = 403
    title = "Forbidden"
    default_code = "FORBIDDEN"

    def __init__(self, code: Optional[str] = None, detail: str = "Access denied"):
        super().__init__(code, detail)


class NotFoundError(MarketFlowException):
    status = 404
    title = "Not Found"

    def __init__(self, code: str, resource: str):
        super().__init__(code, f"{resource} not found")


class ValidationError(MarketFlowException):
    """400 输入校验失败（请求体结构错误由 FastAPI 返回 422）"""
    status = 400
    title = "Validation Failed"


class InternalServerError(MarketFlowException):
    def __init__(self, code: Optional[str] = None, detail: str = "An internal error occurred"):
        super().__init__(code, detail)


class ServiceUnavailableError(MarketFlowException):
    """503 外部依赖不可用或未配置"""
    status = 503
    title = "Service Unavailable"
    default_code = "SERVICE_UNAVAILABLE"

    def __init__(self, code: Optional[str] = None, detail: str = "Service temporarily unavailable"):
        super().__init__(code, detail)


# 业务错误
class PaymentVerificationFailed(MarketFlowException):
    """支付签名不匹配或支付未捕获"""
    status = 400
    title = "Payment Verification Failed"
    default_code = "PAYMENT_VERIFICATION_FAILED"

    def __init__(self, detail: str = "Payment verification failed", code: Optional[str] = None):
        super().__init__(code, detail)


class InsufficientStock(MarketFlowException):
    """库存不足，整个下单事务回滚"""
    status = 400
    title = "Insufficient Stock"
    default_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_name: str, available: int, requested: int):
        super().__init__(
            detail=f"Insufficient stock for {product_name}: available {available}, requested {requested}",
            available=available,
            requested=requested,
        )


class InsufficientBalance(MarketFlowException):
    """可提现余额不足"""
    status = 400
    title = "Insufficient Balance"
    default_code = "INSUFFICIENT_BALANCE"

    def __init__(self, current_balance: Decimal, requested_amount: Decimal):
        super().__init__(
            detail=f"Requested {requested_amount} exceeds available balance {current_balance}",
            current_balance=current_balance,
            requested_amount=requested_amount,
        )


class DuplicateRequest(MarketFlowException):
    """重复请求（已有进行中的退货、已创建运单等）"""
    status = 400
    title = "Duplicate Request"


class InvalidStateTransition(MarketFlowException):
    status = 400
    title = "Invalid State Transition"


class FinancialInvariantViolation(MarketFlowException):
    """金额不变量被破坏，中止当前事务"""
    title = "Financial Invariant Violation"
    default_code = "FINANCIAL_INVARIANT_VIOLATION"

    def __init__(self, detail: str):
        super().__init__(detail=detail)


class CarrierIntegrationError(MarketFlowException):
    """承运商接口调用失败（仅在显式物流操作中抛出）"""
    status = 502
    title = "Carrier Integration Error"
    default_code = "CARRIER_REQUEST_FAILED"

    def __init__(self, detail: str, code: Optional[str] = None):
        super().__init__(code, detail)
