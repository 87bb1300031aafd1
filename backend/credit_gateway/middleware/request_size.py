"""请求大小限制中间件"""

from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from credit_gateway.core.errors import RejectionReason
from credit_gateway.core.responses import rejection_response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """按 Content-Length 拒绝过大的请求体"""

    def __init__(self, app, max_size: int = 100 * 1024):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")

        if content_length:
            try:
                declared = int(content_length)
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={"error": "bad_request", "message": "Invalid Content-Length header"},
                )
            if declared > self.max_size:
                return rejection_response(
                    RejectionReason.PAYLOAD_TOO_LARGE,
                    f"Request body too large. Maximum allowed: {self.max_size // 1024}KB",
                )

        return await call_next(request)
