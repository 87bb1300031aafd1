"""FastAPI 应用入口"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from credit_gateway.api.admin_login import router as admin_login_router
from credit_gateway.api.credits import router as credits_router
from credit_gateway.api.model_stats import router as model_stats_router
from credit_gateway.api.models import router as models_router
from credit_gateway.api.rate_limit_status import router as rate_limit_status_router
from credit_gateway.api.session import router as session_router
from credit_gateway.core.config import get_settings
from credit_gateway.core.database import async_session_maker, close_db
from credit_gateway.core.middleware import OriginCsrfMiddleware
from credit_gateway.core.redis import close_redis, create_redis, ping_redis
from credit_gateway.core.validate_env import validate_security_env
from credit_gateway.middleware.request_size import RequestSizeLimitMiddleware
from credit_gateway.services.client_ip import TrustPolicy
from credit_gateway.services.model_catalog import create_model_catalog
from credit_gateway.tasks.housekeeping import cleanup_task

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    # 配置错误时拒绝启动
    validate_security_env(settings)

    app.state.trust_policy = TrustPolicy.from_settings(settings)
    app.state.redis = create_redis(settings.redis_url)
    app.state.model_catalog = create_model_catalog(settings, app.state.redis)

    cleanup_task_handle = asyncio.create_task(cleanup_task(async_session_maker, settings))
    logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")

    yield

    cleanup_task_handle.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task_handle
    await close_db()
    await close_redis(app.state.redis)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="匿名会话积分网关 API",
    lifespan=lifespan,
)

# ============ 中间件（后添加的先执行）============

# 1. 来源与 CSRF 校验
app.add_middleware(
    OriginCsrfMiddleware,
    allowed_origins=settings.allowed_origin_list,
    csrf_cookie_name=settings.csrf_cookie_name,
    csrf_header_name=settings.csrf_header_name,
)

# 2. 请求大小限制
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_size=settings.max_request_body_bytes,
)

# 3. CORS 中间件（必须在最外层）
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", settings.csrf_header_name],
    expose_headers=["Retry-After"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """未处理的异常：记录日志，只返回通用错误"""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Internal server error"},
    )


# 注册路由
app.include_router(session_router)
app.include_router(admin_login_router)
app.include_router(credits_router)
app.include_router(model_stats_router)
app.include_router(models_router)
app.include_router(rate_limit_status_router)


@app.get("/health")
async def health_check(request: Request) -> dict:
    """健康检查端点"""
    redis_ok = await ping_redis(getattr(request.app.state, "redis", None))
    return {
        "status": "healthy",
        "version": settings.app_version,
        "redis": "ok" if redis_ok else "unavailable",
    }
