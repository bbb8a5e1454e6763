"""
MarketFlow FastAPI 主应用
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from mf_core.api import api_router
from mf_core.config import get_settings
from mf_core.database import get_db_manager
from mf_core.gateways.carrier import get_carrier_client
from mf_core.gateways.payments import get_payout_provider
from mf_core.middleware import AuthMiddleware, LoggingMiddleware
from mf_core.services.payments import get_payment_verifier
from mf_core.utils.errors import MarketFlowException
from mf_core.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def _problem(status: int, title: str, detail: str, code: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "error": {
                "type": "about:blank",
                "title": title,
                "status": status,
                "detail": detail,
                "code": code,
                **extra,
            },
        },
    )


async def _close_clients() -> None:
    """关闭外部集成的 HTTP 连接"""
    await get_carrier_client().close()
    verifier = get_payment_verifier()
    if verifier.client is not None:
        await verifier.client.close()
    payout_client = getattr(get_payout_provider(), "client", None)
    if payout_client is not None:
        await payout_client.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    settings = get_settings()
    logger.info("Starting MarketFlow application", version=settings.api_version)

    db_manager = get_db_manager()
    if not await db_manager.check_connection():
        logger.error("Database connection check failed")
        raise RuntimeError("Database connection failed")

    logger.info("MarketFlow application started",
                carrier_enabled=settings.carrier_enabled,
                payments_enabled=settings.payments_enabled,
                payouts_enabled=settings.payouts_enabled)

    yield

    logger.info("Shutting down MarketFlow application")
    try:
        await _close_clients()
        await db_manager.close()
        logger.info("MarketFlow application shutdown complete")
    except Exception:
        logger.error("Error during application shutdown", exc_info=True)


def create_app() -> FastAPI:
    """创建 FastAPI 应用"""
    settings = get_settings()

    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format
    )

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="MarketFlow multi-vendor marketplace order and ledger API",
        docs_url="/docs" if settings.api_debug else None,
        redoc_url="/redoc" if settings.api_debug else None,
        openapi_url="/openapi.json" if settings.api_debug else None,
        lifespan=lifespan,
    )

    # 后添加的中间件先执行：日志中间件包在认证外层
    app.add_middleware(AuthMiddleware)
    app.add_middleware(LoggingMiddleware)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.exception_handler(MarketFlowException)
    async def marketflow_exception_handler(request: Request, exc: MarketFlowException):
        """处理 MarketFlow 自定义异常"""
        return exc.to_response(request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理 Pydantic 验证异常"""
        logger.warning("Request validation failed", path=request.url.path, errors=str(exc.errors()))
        return _problem(422, "Validation Error", "Request validation failed", "VALIDATION_ERROR",
                        validation_errors=jsonable_encoder(exc.errors()))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _problem(exc.status_code, str(exc.detail), str(exc.detail), f"HTTP_{exc.status_code}")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """处理未捕获的服务器错误"""
        logger.error("Unhandled server error", path=request.url.path, exc_info=exc)
        return _problem(500, "Internal Server Error", "An internal server error occurred",
                        "INTERNAL_SERVER_ERROR")

    @app.get("/healthz")
    async def health_check():
        """健康检查端点"""
        db_ok = await get_db_manager().check_connection()
        return {"status": "healthy" if db_ok else "degraded", "database": db_ok}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "mf_core.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
