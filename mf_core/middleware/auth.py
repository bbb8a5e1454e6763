"""
认证中间件

身份由上游认证网关注入（X-User-Id / X-User-Role），这里只做解析和校验
"""
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from mf_core.config import get_settings
from mf_core.models.enums import UserRole
from mf_core.utils.logger import LogContext, get_logger

USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"

# 开发模式下未携带身份时使用的默认身份
DEBUG_USER_ID = 1
DEBUG_USER_ROLE = UserRole.ADMIN


def _unauthorized(detail: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            "ok": False,
            "error": {
                "type": "about:blank",
                "title": "Unauthorized",
                "status": 401,
                "detail": detail,
                "code": code,
            },
        },
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """认证中间件"""

    PUBLIC_PATHS = {
        "/healthz",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    PUBLIC_PREFIXES = [
        "/docs",
        "/redoc",
    ]

    def __init__(self, app, logger=None):
        super().__init__(app)
        self.logger = logger or get_logger("middleware.auth")
        settings = get_settings()
        self.public_paths = set(self.PUBLIC_PATHS) | {f"{settings.api_prefix}/webhooks/carrier"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self._is_public_path(request.url.path):
            return await call_next(request)

        raw_user_id = request.headers.get(USER_ID_HEADER)
        raw_role = request.headers.get(USER_ROLE_HEADER)

        if not raw_user_id:
            if get_settings().api_debug:
                request.state.user_id = DEBUG_USER_ID
                request.state.role = DEBUG_USER_ROLE
                return await call_next(request)
            return _unauthorized("Identity headers are required", "MISSING_IDENTITY")

        user_id = self._parse_user_id(raw_user_id)
        role = self._parse_role(raw_role)
        if user_id is None or role is None:
            self.logger.warning("Rejected request with invalid identity headers",
                                path=request.url.path, role=raw_role)
            return _unauthorized("Invalid identity headers", "INVALID_IDENTITY")

        request.state.user_id = user_id
        request.state.role = role
        with LogContext(user_id=user_id):
            return await call_next(request)

    def _is_public_path(self, path: str) -> bool:
        if path in self.public_paths:
            return True
        return any(path.startswith(prefix) for prefix in self.PUBLIC_PREFIXES)

    @staticmethod
    def _parse_user_id(value: str) -> Optional[int]:
        value = value.strip()
        if not value.isdigit():
            return None
        return int(value)

    @staticmethod
    def _parse_role(value: Optional[str]) -> Optional[UserRole]:
        try:
            return UserRole((value or UserRole.BUYER.value).strip().lower())
        except ValueError:
            return None
