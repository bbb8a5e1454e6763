"""
请求日志中间件

每个入站请求一条开始日志、一条结束日志；trace_id 取自 X-Trace-Id 或新生成，并回写到响应头
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from mf_core.utils.logger import LogContext, get_logger

TRACE_HEADER = "x-trace-id"

# 探活请求不打开始日志
QUIET_PATHS = {"/healthz", "/favicon.ico"}

SENSITIVE_PARAMS = {"signature", "token", "secret", "api_key", "key_secret", "authorization"}


def client_ip(request: Request) -> str:
    """反向代理之后优先取 X-Forwarded-For 的第一跳"""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    return request.client.host if request.client else "unknown"


class LoggingMiddleware(BaseHTTPMiddleware):
    """请求日志中间件"""

    def __init__(self, app, logger=None):
        super().__init__(app)
        self.logger = logger or get_logger("middleware.logging")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        trace_id = request.headers.get(TRACE_HEADER) or uuid.uuid4().hex
        request.state.trace_id = trace_id
        path = request.url.path
        started = time.perf_counter()

        with LogContext(trace_id=trace_id):
            if path not in QUIET_PATHS:
                params = {
                    key: "***MASKED***" if key.lower() in SENSITIVE_PARAMS else value
                    for key, value in request.query_params.items()
                }
                self.logger.info("API request", direction="inbound", method=request.method, path=path,
                                 client_ip=client_ip(request), query_params=params or None)

            try:
                response = await call_next(request)
            except Exception as e:
                self.logger.error("API request failed", direction="inbound", method=request.method, path=path,
                                  latency_ms=int((time.perf_counter() - started) * 1000), err=str(e),
                                  exc_info=True)
                raise

            log = self.logger.warning if response.status_code >= 400 else self.logger.info
            log(
                "API response",
                direction="inbound",
                method=request.method,
                path=path,
                status_code=response.status_code,
                latency_ms=int((time.perf_counter() - started) * 1000),
                actor_id=getattr(request.state, "user_id", None),
            )

            response.headers["X-Trace-Id"] = trace_id
            return response
