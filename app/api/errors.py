"""
Error mapping - exception hierarchy to the client error envelope.

Every failure leaves the API as {"type": "error", "error": {"code", "message"}}.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from structlog import get_logger

from app.exceptions import (
    BillingError,
    ConcurrencyError,
    ConversationCancelledError,
    InvalidSessionError,
    MalformedResponseError,
    MissingIdentifierError,
    NoCreditsError,
    PaymentIntegrityError,
    PaymentNotCompletedError,
    PaymentProviderError,
    RateLimitedError,
    TransientUpstreamError,
    UnknownActionError,
    UpstreamProviderError,
    WebhookVerificationError,
)
from app.models.api import ErrorBody, ErrorCode, ErrorResponse
from app.observability.metrics import metrics

logger = get_logger(__name__)

# Checked in order: subclasses before their parents
_ERROR_MAP: tuple[tuple[type[BillingError], int, ErrorCode], ...] = (
    (NoCreditsError, 402, ErrorCode.NO_CREDITS),
    (MissingIdentifierError, 400, ErrorCode.MISSING_DEVICE_ID),
    (UnknownActionError, 400, ErrorCode.UNKNOWN_ACTION),
    (RateLimitedError, 429, ErrorCode.RATE_LIMIT),
    (TransientUpstreamError, 503, ErrorCode.UPSTREAM_UNAVAILABLE),
    (MalformedResponseError, 502, ErrorCode.UPSTREAM_MALFORMED),
    (UpstreamProviderError, 503, ErrorCode.UPSTREAM_UNAVAILABLE),
    (PaymentNotCompletedError, 409, ErrorCode.PAYMENT_NOT_COMPLETED),
    (PaymentIntegrityError, 422, ErrorCode.PAYMENT_REJECTED),
    (PaymentProviderError, 502, ErrorCode.PAYMENT_PROVIDER_ERROR),
    (WebhookVerificationError, 400, ErrorCode.INVALID_REQUEST),
    (InvalidSessionError, 401, ErrorCode.INVALID_SESSION),
    (ConcurrencyError, 503, ErrorCode.CONCURRENCY_CONFLICT),
    (ConversationCancelledError, 409, ErrorCode.CONVERSATION_CANCELLED),
)

_GENERIC_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.PAYMENT_REJECTED: "Payment could not be verified",
    ErrorCode.PAYMENT_PROVIDER_ERROR: "Payment provider unavailable",
    ErrorCode.UPSTREAM_UNAVAILABLE: "Analysis service temporarily unavailable",
    ErrorCode.UPSTREAM_MALFORMED: "Analysis service returned an unexpected response",
    ErrorCode.CONCURRENCY_CONFLICT: "Too many concurrent requests, please retry",
    ErrorCode.INTERNAL_ERROR: "Internal server error",
}


def classify(exc: Exception) -> tuple[int, ErrorCode, str]:
    """Map an exception to (HTTP status, error code, client-safe message)."""
    if isinstance(exc, (ValidationError, RequestValidationError, ValueError)):
        return 422, ErrorCode.INVALID_REQUEST, _validation_message(exc)

    for exc_type, status_code, code in _ERROR_MAP:
        if isinstance(exc, exc_type):
            return status_code, code, _GENERIC_MESSAGES.get(code, str(exc))

    return 500, ErrorCode.INTERNAL_ERROR, _GENERIC_MESSAGES[ErrorCode.INTERNAL_ERROR]


def _validation_message(exc: Exception) -> str:
    if isinstance(exc, (ValidationError, RequestValidationError)):
        first = exc.errors()[0] if exc.errors() else None
        if first:
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return str(exc) or "Invalid request"


def error_body(exc: Exception, session_token: str | None = None) -> tuple[int, ErrorResponse]:
    status_code, code, message = classify(exc)
    return status_code, ErrorResponse(
        error=ErrorBody(code=code, message=message),
        session_token=session_token,
    )


def error_response(exc: Exception, session_token: str | None = None) -> JSONResponse:
    """Build the JSON error envelope for `exc`."""
    status_code, body = error_body(exc, session_token)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


async def billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, code, _ = classify(exc)
    metrics.record_error(type(exc).__name__, request.url.path)
    if status_code >= 500:
        logger.warning(
            "request_error",
            path=request.url.path,
            code=code.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return error_response(exc)


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    errors = exc.errors() if isinstance(exc, (ValidationError, RequestValidationError)) else []
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=[{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in errors],
    )
    return error_response(exc)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    metrics.record_error(type(exc).__name__, request.url.path)
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
        exc_info=exc,
    )
    return error_response(exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(ValueError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
