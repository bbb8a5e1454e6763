"""
MarketFlow 日志系统
- JSON 格式输出
- 必需字段：ts, level, trace_id, user_id, action
- PII 自动脱敏（手机号、邮箱、UPI、银行账号、密钥）
"""
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar

import structlog
from structlog.processors import JSONRenderer, TimeStamper, add_log_level

# Context variables for request tracking
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
user_id_var: ContextVar[Optional[int]] = ContextVar("user_id", default=None)


class PIIMaskingProcessor:
    """PII 数据脱敏处理器"""

    # 脱敏规则（按顺序执行，邮箱先于 UPI）
    PATTERNS = {
        # 邮箱：保留首字母和域名
        "email": (re.compile(r"([a-zA-Z0-9])[a-zA-Z0-9._-]*@([a-zA-Z0-9-]+\.[a-zA-Z.]{2,})"), r"\1***@\2"),
        # UPI：保留首字母和 PSP 句柄
        "upi": (re.compile(r"\b([a-zA-Z0-9])[a-zA-Z0-9._-]*@([a-zA-Z]{3,})\b"), r"\1***@\2"),
        # 银行账号：9-18 位数字，保留后 4 位
        "account": (re.compile(r"\b\d{5,14}(\d{4})\b"), r"*****\1"),
        # 手机号：保留前 2 位和后 2 位
        "phone": (re.compile(r"(\+?\d{2})\d{6}(\d{2})\b"), r"\1******\2"),
        # Token/密钥/签名
        "token": (re.compile(r"(token|key|secret|password|signature)[\"']?\s*[:=]\s*[\"']?([^\"'\s,}]+)"), r"\1=***MASKED***"),
    }

    # 这些字段本身就是业务标识，不做脱敏
    SKIP_KEYS = {"ts", "timestamp", "level", "trace_id", "user_id", "order_id", "order_number",
                 "awb", "shipment_id", "request_id", "return_id", "withdrawal_id", "seller_id"}

    def __call__(self, logger, method_name, event_dict):
        """处理日志事件，脱敏 PII 数据"""
        return self._mask_dict(event_dict)

    def _mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """递归脱敏字典中的 PII 数据"""
        if not isinstance(data, dict):
            return data

        masked_data = {}
        for key, value in data.items():
            if key in self.SKIP_KEYS:
                masked_data[key] = value
            elif isinstance(value, str):
                masked_data[key] = self._mask_string(value)
            elif isinstance(value, dict):
                masked_data[key] = self._mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [
                    (
                        self._mask_dict(item)
                        if isinstance(item, dict)
                        else self._mask_string(item) if isinstance(item, str) else item
                    )
                    for item in value
                ]
            else:
                masked_data[key] = value
        return masked_data

    def _mask_string(self, text: str) -> str:
        """脱敏字符串中的 PII 数据"""
        for pattern, replacement in self.PATTERNS.values():
            text = pattern.sub(replacement, text)
        return text


class MarketFlowProcessor:
    """添加 MarketFlow 必需字段"""

    def __call__(self, logger, method_name, event_dict):
        event_dict["ts"] = datetime.now(timezone.utc).isoformat()

        if trace_id := trace_id_var.get():
            event_dict["trace_id"] = trace_id

        if user_id := user_id_var.get():
            event_dict.setdefault("user_id", user_id)

        # 重命名标准字段
        if "event" in event_dict:
            event_dict["action"] = event_dict.pop("event")

        if "exception" in event_dict:
            event_dict["err"] = str(event_dict.pop("exception"))

        return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", enable_pii_masking: bool = True) -> None:
    """配置日志系统"""
    level = getattr(logging, log_level.upper())

    processors = [
        TimeStamper(fmt="iso"),
        add_log_level,
        structlog.processors.format_exc_info,
        MarketFlowProcessor(),
    ]

    if enable_pii_masking:
        processors.append(PIIMaskingProcessor())

    if log_format == "json":
        processors.append(JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S"
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    logging.getLogger("mf_core").setLevel(level)

    # 降低第三方库的日志级别
    for logger_name in ("httpx", "httpcore", "asyncio", "uvicorn.access", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取日志记录器"""
    return structlog.get_logger(name)


class LogContext:
    """日志上下文管理器，用于设置请求级别的上下文"""

    def __init__(self, trace_id: Optional[str] = None, user_id: Optional[int] = None):
        self.trace_id = trace_id
        self.user_id = user_id
        self._tokens = []

    def __enter__(self):
        if self.trace_id:
            self._tokens.append(trace_id_var.set(self.trace_id))
        if self.user_id:
            self._tokens.append(user_id_var.set(self.user_id))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
