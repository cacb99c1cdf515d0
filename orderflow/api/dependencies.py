"""
Shared FastAPI dependencies and exception mapping.
"""
import hmac
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, HTTPException, Request, status

from orderflow.container import Container, get_container
from orderflow.core.errors import (
    AlreadyProcessed,
    FraudBlocked,
    GatewayUnavailable,
    InsufficientInventory,
    IntegrityMismatch,
    InternalError,
    InvalidSignature,
    NotFound,
    OrderflowError,
    ValidationError,
)
from orderflow.monitoring.security_log import SecurityCategory

logger = structlog.get_logger(__name__)

CART_COOKIE = "cart_token"

_STATUS_CODES = (
    (FraudBlocked, status.HTTP_402_PAYMENT_REQUIRED),
    (InvalidSignature, status.HTTP_400_BAD_REQUEST),
    (IntegrityMismatch, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InsufficientInventory, status.HTTP_409_CONFLICT),
    (GatewayUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AlreadyProcessed, status.HTTP_200_OK),
    (InternalError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

# Customer-facing endpoints never echo verification internals
_PUBLIC_MESSAGES = {
    InvalidSignature: "Payment verification failed",
    IntegrityMismatch: "Payment verification failed",
    FraudBlocked: "Payment blocked due to suspicious activity",
    InternalError: "An unexpected error occurred. Please try again later.",
}


def status_code_for(error: OrderflowError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: OrderflowError, admin: bool = False) -> HTTPException:
    """
    Map a pipeline error onto an HTTPException.

    Args:
        error: Pipeline error
        admin: Admin endpoints get the full taxonomy payload
    """
    code = status_code_for(error)
    if admin:
        detail: Dict[str, Any] = error.to_dict()
    else:
        message = _PUBLIC_MESSAGES.get(type(error), error.message)
        detail = {"error": error.code, "message": message}
        if isinstance(error, InsufficientInventory):
            detail["details"] = error.details
    headers = {"Retry-After": "5"} if isinstance(error, GatewayUnavailable) else None
    return HTTPException(status_code=code, detail=detail, headers=headers)


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def require_admin(
    request: Request,
    container: Container = Depends(get_container),
) -> None:
    """
    Elevated-privilege check for admin endpoints.

    Raises:
        HTTPException: 403 when the key is missing, wrong, or no key is configured
    """
    settings = container.settings
    supplied = request.headers.get(settings.admin_api_key_header, "")
    expected = settings.admin_api_key
    if not expected or not supplied or not hmac.compare_digest(supplied, expected):
        await container.security_logger.warning(
            SecurityCategory.ADMIN,
            "admin_access_denied",
            "Admin endpoint called without a valid key",
            ip_address=client_ip(request),
            details={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Admin privileges required"},
        )
