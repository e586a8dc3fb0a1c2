"""
Error Handling
==============

Standardized error codes, the reconciliation error taxonomy and
exception handlers.
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_MISSING_KEY = "AUTH_001"
    AUTH_INVALID_KEY = "AUTH_002"
    AUTH_SECRET_KEY_REQUIRED = "AUTH_003"

    # Receipts (RECEIPT_001 - RECEIPT_010)
    RECEIPT_INVALID = "RECEIPT_001"
    RECEIPT_PRODUCT_NOT_FOUND = "RECEIPT_002"
    RECEIPT_STORE_NOT_CONFIGURED = "RECEIPT_003"

    # Subscribers / Entitlements
    SUBSCRIBER_NOT_FOUND = "SUBSCRIBER_001"
    ENTITLEMENT_NOT_FOUND = "ENTITLEMENT_001"

    # Webhooks
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_001"

    # Store APIs
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"

    # Rate Limit
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Reconciliation Errors
# =============================================================================

class ReconciliationError(Exception):
    """Base class for errors raised by store adapters and the reconciler."""


class MalformedPayload(ReconciliationError):
    """Input cannot be parsed (bad JWS segments, base64 or JSON)."""


class InvalidSignature(ReconciliationError):
    """Signature or certificate chain verification failed."""


class StoreApiError(ReconciliationError):
    """
    Store server-to-server call failed.

    5xx, 429, timeouts and network errors are transient: the caller should
    signal "retry later". Any other 4xx is permanent.
    """

    def __init__(
        self,
        status_code: Optional[int],
        body: str = "",
        transient: Optional[bool] = None,
    ):
        self.status_code = status_code
        self.body = body
        if transient is None:
            transient = status_code is None or status_code >= 500 or status_code == 429
        self.transient = transient
        super().__init__(f"Store API error: status={status_code} body={body[:200]}")


class SubscriptionNotFound(ReconciliationError):
    """A notification refers to an original transaction id with no row."""

    def __init__(self, platform: str, original_transaction_id: str):
        self.platform = platform
        self.original_transaction_id = original_transaction_id
        super().__init__(
            f"No {platform} subscription for original transaction {original_transaction_id}"
        )


class ReceiptInvalid(ReconciliationError):
    """The store rejected the receipt/token, or the product does not match."""

    def __init__(self, message: str, code: str = ErrorCodes.RECEIPT_INVALID):
        self.code = code
        super().__init__(message)


class DuplicateEvent(ReconciliationError):
    """The ledger already shows this event as processed."""

    def __init__(self, platform: str, provider_event_id: str):
        self.platform = platform
        self.provider_event_id = provider_event_id
        super().__init__(f"Duplicate {platform} event {provider_event_id}")


# =============================================================================
# Custom Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail: dict[str, Any] = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail, headers=headers)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_KEY,
        message: str = "Invalid API key",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Permission errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_SECRET_KEY_REQUIRED,
        message: str = "Secret API key required",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ReceiptValidationError(AppException):
    """Terminal receipt validation failure."""

    def __init__(
        self,
        message: str,
        code: str = ErrorCodes.RECEIPT_INVALID,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str = ErrorCodes.STORE_UNAVAILABLE,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
        headers=exc.headers,
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.error(
        "Unhandled error on %s %s: %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc,
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
