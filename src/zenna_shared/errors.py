"""
Unified error handling for Zenna.

Two families live here:

* ``ZennaException`` subclasses map to HTTP responses and are raised before a
  turn's event stream opens (authentication, missing user, missing generation
  backend).
* ``IntegrationError`` is raised by third-party clients (lighting, workspace,
  web search). It carries a typed kind and a user-safe message so the tool
  layer never has to parse exception text.

Usage:
    from zenna_shared.errors import register_exception_handlers, UnauthorizedError

    register_exception_handlers(app)

    if user_id is None:
        raise UnauthorizedError("Invalid or expired session")
"""
import re
from datetime import datetime
from enum import Enum
from typing import Optional

import httpx
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = structlog.get_logger()


class ErrorCode(str, Enum):
    """Standard error codes returned by the Zenna API."""

    # Client errors (4xx)
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"

    # Server errors (5xx)
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"


class ErrorResponse(BaseModel):
    """
    Standard error response format.

    Example response:
    {
        "error": true,
        "code": "UNAUTHORIZED",
        "message": "Invalid or expired session",
        "detail": null,
        "request_id": "abc123",
        "timestamp": "2026-01-01T10:30:00Z"
    }
    """
    error: bool = True
    code: str
    message: str
    detail: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: Optional[str] = None


class ZennaException(Exception):
    """Base exception for errors that map onto an HTTP response."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 500,
        detail: Optional[str] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


# ==============================================================================
# Client Errors (4xx)
# ==============================================================================

class BadRequestError(ZennaException):
    """400 Bad Request - Invalid input or request format."""
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.BAD_REQUEST, message, 400, detail)


class UnauthorizedError(ZennaException):
    """401 Unauthorized - Authentication required."""
    def __init__(self, message: str = "Authentication required", detail: Optional[str] = None):
        super().__init__(ErrorCode.UNAUTHORIZED, message, 401, detail)


class ForbiddenError(ZennaException):
    """403 Forbidden - Insufficient permissions."""
    def __init__(self, message: str = "Access denied", detail: Optional[str] = None):
        super().__init__(ErrorCode.FORBIDDEN, message, 403, detail)


class NotFoundError(ZennaException):
    """404 Not Found - Resource doesn't exist."""
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.NOT_FOUND, message, 404, detail)


# ==============================================================================
# Server Errors (5xx)
# ==============================================================================

class ServiceUnavailableError(ZennaException):
    """503 Service Unavailable - A required backend is missing or down."""
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.SERVICE_UNAVAILABLE, message, 503, detail)


class UpstreamTimeoutError(ZennaException):
    """504 Gateway Timeout - A collaborator did not answer in time."""
    def __init__(self, message: str = "Request timed out", detail: Optional[str] = None):
        super().__init__(ErrorCode.TIMEOUT, message, 504, detail)


class UpstreamError(ZennaException):
    """502 Bad Gateway - Upstream service failed."""
    def __init__(self, service: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.UPSTREAM_ERROR,
            f"Upstream service '{service}' failed",
            502,
            detail
        )
        self.service = service


# ==============================================================================
# Integration Errors
# ==============================================================================

class IntegrationErrorKind(str, Enum):
    """Failure categories shared by every third-party integration client."""
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    GENERIC = "generic"


_USER_MESSAGES = {
    IntegrationErrorKind.UNAUTHORIZED: "The {service} connection has expired. Please reconnect it in settings.",
    IntegrationErrorKind.FORBIDDEN: "I don't have access to that in {service}.",
    IntegrationErrorKind.NOT_FOUND: "I couldn't find {what} in {service}.",
    IntegrationErrorKind.RATE_LIMITED: "{service} is receiving too many requests right now. Please try again in a moment.",
    IntegrationErrorKind.SERVER_ERROR: "{service} is having problems right now. Please try again later.",
    IntegrationErrorKind.NETWORK_ERROR: "I couldn't reach {service}. Please check that it is online.",
    IntegrationErrorKind.GENERIC: "Something went wrong talking to {service}.",
}


class IntegrationError(Exception):
    """A third-party call failed.

    ``user_message`` is safe to show (or speak) to the user; ``str(exc)``
    carries the diagnostic detail for logs.
    """

    def __init__(
        self,
        service: str,
        kind: IntegrationErrorKind,
        user_message: Optional[str] = None,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.service = service
        self.kind = kind
        self.status_code = status_code
        self.user_message = user_message or _USER_MESSAGES[kind].format(
            service=service, what="that"
        )
        super().__init__(detail or self.user_message)

    @classmethod
    def from_status(cls, service: str, status_code: int, what: str = "that",
                    detail: Optional[str] = None) -> "IntegrationError":
        """Translate an HTTP status into a typed integration error."""
        if status_code == 401:
            kind = IntegrationErrorKind.UNAUTHORIZED
        elif status_code == 403:
            kind = IntegrationErrorKind.FORBIDDEN
        elif status_code == 404:
            kind = IntegrationErrorKind.NOT_FOUND
        elif status_code == 429:
            kind = IntegrationErrorKind.RATE_LIMITED
        elif status_code >= 500:
            kind = IntegrationErrorKind.SERVER_ERROR
        else:
            kind = IntegrationErrorKind.GENERIC
        message = _USER_MESSAGES[kind].format(service=service, what=what)
        return cls(service, kind, message, detail or f"HTTP {status_code}", status_code)

    @classmethod
    def from_transport(cls, service: str, exc: httpx.TransportError) -> "IntegrationError":
        return cls(service, IntegrationErrorKind.NETWORK_ERROR, detail=f"{type(exc).__name__}: {exc}")


_ERROR_CODE_PREFIX = re.compile(r"^\s*(?:[A-Z][A-Z0-9]*_)+[A-Z0-9]+:\s*")


def strip_error_code(message: str) -> str:
    """Remove a leading machine code such as ``HUE_NOT_FOUND:`` from a message."""
    return _ERROR_CODE_PREFIX.sub("", message)


def user_message_for(exc: BaseException) -> str:
    """Best user-presentable text for any exception."""
    if isinstance(exc, IntegrationError):
        return strip_error_code(exc.user_message)
    return strip_error_code(str(exc))


# ==============================================================================
# Exception Handlers
# ==============================================================================

def _timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


async def zenna_exception_handler(request: Request, exc: ZennaException) -> JSONResponse:
    """
    FastAPI exception handler for ZennaException and subclasses.

    Logs the error and returns a standardized ErrorResponse.
    """
    request_id = getattr(request.state, "request_id", None)

    logger.error(
        "zenna_exception",
        code=exc.code.value if isinstance(exc.code, ErrorCode) else exc.code,
        message=exc.message,
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        path=str(request.url.path)
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            code=exc.code.value if isinstance(exc.code, ErrorCode) else exc.code,
            message=exc.message,
            detail=exc.detail,
            request_id=request_id,
            timestamp=_timestamp()
        ).model_dump()
    )


def register_exception_handlers(app) -> None:
    """
    Register exception handlers with a FastAPI application.

    Usage:
        app = FastAPI()
        register_exception_handlers(app)
    """
    app.add_exception_handler(ZennaException, zenna_exception_handler)
    logger.info("zenna_exception_handlers_registered")
