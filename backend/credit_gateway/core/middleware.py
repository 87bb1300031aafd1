"""应用中间件"""

import logging
from typing import Callable, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from credit_gateway.core.errors import RejectionReason
from credit_gateway.core.responses import rejection_response
from credit_gateway.services.csrf import validate_csrf_request, validate_origin

logger = logging.getLogger(__name__)

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class OriginCsrfMiddleware(BaseHTTPMiddleware):
    """修改类请求的来源校验与 CSRF 双重提交校验"""

    # 不需要 CSRF 令牌的路由（首次建立会话时还没有 CSRF Cookie）
    EXEMPT_PATHS = {
        "/health",
        "/api/session",
        "/api/csrf",
    }

    def __init__(
        self,
        app,
        allowed_origins: Iterable[str],
        csrf_cookie_name: str,
        csrf_header_name: str,
        exempt_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.allowed_origins = set(allowed_origins)
        self.csrf_cookie_name = csrf_cookie_name
        self.csrf_header_name = csrf_header_name
        if exempt_paths is not None:
            self.EXEMPT_PATHS = set(exempt_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """处理请求"""
        if request.method not in MUTATING_METHODS:
            return await call_next(request)

        if not validate_origin(request.headers.get("origin"), self.allowed_origins):
            logger.info(f"Rejected {request.method} {request.url.path}: invalid origin")
            return rejection_response(RejectionReason.INVALID_ORIGIN, "Invalid request origin")

        if self._is_exempt(request.url.path):
            return await call_next(request)

        cookie_token = request.cookies.get(self.csrf_cookie_name)
        if not validate_csrf_request(request.headers, cookie_token, self.csrf_header_name):
            logger.info(f"Rejected {request.method} {request.url.path}: CSRF validation failed")
            return rejection_response(RejectionReason.CSRF_REJECTED, "CSRF validation failed")

        return await call_next(request)

    def _is_exempt(self, path: str) -> bool:
        """检查路由是否豁免 CSRF 校验"""
        for exempt_path in self.EXEMPT_PATHS:
            if path == exempt_path or path.startswith(exempt_path + "/"):
                return True
        return False
