from typing import Optional

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from credit_gateway.core.errors import RejectionReason, status_for


def rejection_response(
    reason: RejectionReason,
    message: str,
    retry_after: Optional[int] = None,
    **kwargs
) -> JSONResponse:
    """
    Create a rejection response.

    Args:
        reason: Rejection reason (determines status code)
        message: Human readable message
        retry_after: Seconds until the client may retry (adds Retry-After header)
        **kwargs: Additional response fields

    Returns:
        JSONResponse with error payload
    """
    content = {"error": reason.value, "message": message}
    headers = {}
    if retry_after is not None:
        content["retryAfter"] = retry_after
        headers["Retry-After"] = str(retry_after)
    content.update(kwargs)

    return JSONResponse(
        status_code=status_for(reason),
        content=content,
        headers=headers or None,
    )


def rejection_exception(
    reason: RejectionReason,
    message: str,
    retry_after: Optional[int] = None,
) -> HTTPException:
    """
    Create an HTTPException for a rejection raised from a dependency.

    The body is {"detail": {"error": ..., "message": ...}}.
    """
    detail = {"error": reason.value, "message": message}
    headers = None
    if retry_after is not None:
        detail["retryAfter"] = retry_after
        headers = {"Retry-After": str(retry_after)}
    return HTTPException(status_code=status_for(reason), detail=detail, headers=headers)
