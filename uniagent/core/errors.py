"""
Centralized error handling and safe error messages.

This module defines the error taxonomy shared by discovery, payments and
the orchestrator, together with utilities for turning exceptions into
messages that are safe to show to users.
"""
import logging
import traceback
from enum import Enum
from typing import Any

from fastapi import HTTPException
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from uniagent.core.config import settings

logger = logging.getLogger(__name__)


class ErrorType(str, Enum):
    """Error taxonomy surfaced to callers."""

    VALIDATION = "validation"
    DISCOVERY_UNAVAILABLE = "discovery_unavailable"
    PAYMENT_CHALLENGE_MALFORMED = "payment_challenge_malformed"
    BUDGET_EXCEEDED = "budget_exceeded"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED_AUTHORIZATION = "expired_authorization"
    NETWORK_MISMATCH = "network_mismatch"
    ITERATION_LIMIT = "iteration_limit"
    UNKNOWN = "unknown"


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str
    detail: str | None = None


class UniAgentError(Exception):
    """Base exception for UniAgent errors that can be shown to users."""

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        suggestion: str | None = None,
        error_type: ErrorType | None = None,
    ):
        """
        Initialize the error.

        Args:
            message: User-friendly error message
            details: Optional structured details
            suggestion: Optional remediation hint
            error_type: Overrides the class-level error type
        """
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion
        if error_type is not None:
            self.error_type = error_type
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a JSON-ready dict."""
        return {
            "error": self.message,
            "type": self.error_type.value,
            "suggestion": self.suggestion,
            "details": self.details,
        }


class InvalidRequestError(UniAgentError):
    """Malformed caller input."""

    error_type = ErrorType.VALIDATION


class DiscoveryUnavailableError(UniAgentError):
    """Registry or descriptor lookup failed."""

    error_type = ErrorType.DISCOVERY_UNAVAILABLE


class PaymentChallengeMalformedError(UniAgentError):
    """Counterparty sent a 402 without a usable challenge."""

    error_type = ErrorType.PAYMENT_CHALLENGE_MALFORMED


class BudgetExceededError(UniAgentError):
    """Required amount is above the allowed ceiling."""

    error_type = ErrorType.BUDGET_EXCEEDED


class PaymentFailedError(UniAgentError):
    """Payment was attempted but not settled."""

    pass


class SigningError(PaymentFailedError):
    """The signer could not produce a typed-data signature."""

    pass


class LedgerClosedError(UniAgentError):
    """The budget ledger no longer accepts updates."""

    pass


def create_safe_error_message(error: Exception) -> str:
    """
    Create a safe error message that doesn't leak sensitive information.

    Args:
        error: The exception that occurred

    Returns:
        A safe error message for the user
    """
    if isinstance(error, UniAgentError):
        return error.message

    # In debug mode, show full error
    if settings.debug:
        return str(error)

    error_type = type(error).__name__

    safe_messages = {
        "ValueError": "Invalid input provided",
        "ValidationError": "Request validation failed",
        "ConnectError": "Service unavailable",
        "ConnectionError": "Service unavailable",
        "TimeoutError": "Request timed out",
        "TimeoutException": "Request timed out",
        "ReadTimeout": "Request timed out",
        "HTTPException": "Request processing error",
        "HTTPStatusError": "Upstream service returned an error",
    }

    return safe_messages.get(error_type, "An error occurred while processing your request")


def create_error_response(
    status_code: int, message: str, detail: str | None = None
) -> JSONResponse:
    """
    Create a standardized JSON error response.

    Args:
        status_code: HTTP status code
        message: Main error message
        detail: Optional additional detail

    Returns:
        JSONResponse with error information
    """
    error_response = ErrorResponse(
        error=message, detail=detail if settings.debug else None
    )

    logger.error(f"Error {status_code}: {message} - {detail}")

    return JSONResponse(
        status_code=status_code, content=error_response.model_dump()
    )


async def http_exception_handler(
    request: Request, exc: HTTPException
) -> JSONResponse:
    """Handle HTTPException globally and sanitize error messages."""
    detail = str(exc.detail) if exc.detail else None
    return create_error_response(
        status_code=exc.status_code,
        message=detail or create_safe_error_message(exc),
        detail=detail,
    )


async def general_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle all other exceptions globally."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)

    if settings.debug:
        detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    else:
        detail = None

    return create_error_response(
        status_code=500,
        message="Internal server error",
        detail=detail,
    )
