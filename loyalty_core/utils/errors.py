"""
Error responses for the Loyalty Core API.

Every error body has the same shape:
{
    "error": {
        "message": "Insufficient cashback. Current: 5.00, Required: 20.00",
        "code": "INSUFFICIENT_BALANCE"
    }
}

Business exceptions (utils/exceptions.py) carry their own code and are
mapped onto a status by loyalty_error_response, registered as the app's
LoyaltyError handler. Views only build errors directly for request-shape
problems (missing body, bad header).
"""
import logging
from enum import Enum
from flask import jsonify
from typing import Optional, Union

from .exceptions import (
    LoyaltyError,
    NotFoundError,
    ValidationError,
    InsufficientBalanceError,
    RedemptionLimitExceededError,
    ConcurrentBalanceConflictError,
    InvalidStatusTransitionError,
    AuthorizationError,
    DeliveryFailedError,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Codes for errors raised outside the service layer."""
    AUTH_REQUIRED = "AUTH_REQUIRED"        # 401
    INVALID_REQUEST = "INVALID_REQUEST"    # 400
    NOT_FOUND = "NOT_FOUND"                # 404
    INTERNAL_ERROR = "INTERNAL_ERROR"      # 500


# Checked in order: subclasses before their bases
_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (AuthorizationError, 403),
    (ConcurrentBalanceConflictError, 409),
    (InvalidStatusTransitionError, 409),
    (InsufficientBalanceError, 422),
    (RedemptionLimitExceededError, 422),
    (DeliveryFailedError, 502),
)


def error_response(
    message: str,
    code: Union[ErrorCode, str] = ErrorCode.INTERNAL_ERROR,
    status_code: int = 500,
    log_error: bool = True,
    details: Optional[dict] = None
) -> tuple:
    """
    Build a (response, status) pair.

    details are logged with server errors and never returned to the caller.
    """
    code = code.value if isinstance(code, ErrorCode) else code
    if log_error and status_code >= 500:
        logger.error(f"API Error [{code}]: {message}", extra={"details": details})
    elif log_error and status_code >= 400:
        logger.warning(f"API Error [{code}]: {message}")

    return jsonify({"error": {"message": message, "code": code}}), status_code


def bad_request(message: str, code: ErrorCode = ErrorCode.INVALID_REQUEST) -> tuple:
    return error_response(message, code, 400, log_error=False)


def unauthorized(message: str = "Authentication required") -> tuple:
    return error_response(message, ErrorCode.AUTH_REQUIRED, 401, log_error=False)


def not_found(message: str) -> tuple:
    return error_response(message, ErrorCode.NOT_FOUND, 404, log_error=False)


def internal_error(message: str = "An unexpected error occurred", details: Optional[dict] = None) -> tuple:
    return error_response(message, ErrorCode.INTERNAL_ERROR, 500, details=details)


def loyalty_error_response(error: LoyaltyError) -> tuple:
    """Map a business exception onto its HTTP status (400 when unmapped)."""
    status = next((s for cls, s in _STATUS_BY_ERROR if isinstance(error, cls)), 400)
    return error_response(error.message, error.code, status, log_error=status >= 500)
