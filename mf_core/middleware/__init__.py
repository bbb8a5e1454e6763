"""
HTTP 中间件
"""
from .auth import AuthMiddleware
from .logging import LoggingMiddleware

__all__ = ["AuthMiddleware", "LoggingMiddleware"]
