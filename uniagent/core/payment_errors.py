"""
Payment Error Classification Module

This module maps raw payment failure signals (facilitator error codes,
free-text settlement failure reasons, signer and transport exceptions)
onto the structured error taxonomy, with a user-facing message and an
actionable remediation suggestion for each kind.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any

import httpx
from pydantic import BaseModel, Field

from uniagent.core.errors import ErrorType, UniAgentError

logger = logging.getLogger(__name__)


class ClassifiedError(BaseModel):
    """A payment or invocation failure mapped onto the error taxonomy."""

    kind: ErrorType = Field(..., description="Error taxonomy kind")
    message: str = Field(..., description="Human-readable message")
    suggestion: str | None = Field(None, description="Remediation hint")
    original: str | None = Field(None, description="Raw error signal, verbatim")
    retryable: bool = Field(False, description="Whether retrying may succeed")
    details: dict[str, Any] = Field(default_factory=dict)


class _Context(dict):
    """Format context that renders missing keys as 'unknown'."""

    def __missing__(self, key: str) -> str:
        return "unknown"


MESSAGE_TEMPLATES: dict[ErrorType, str] = {
    ErrorType.INSUFFICIENT_FUNDS: "Insufficient USDC balance. Required: {amount} USDC on {network}.",
    ErrorType.INVALID_SIGNATURE: "Payment signature verification failed. The signature may be invalid or expired.",
    ErrorType.EXPIRED_AUTHORIZATION: "Payment authorization has expired.",
    ErrorType.NETWORK_MISMATCH: "Network mismatch. Expected: {network}, but payment was attempted on a different network.",
    ErrorType.BUDGET_EXCEEDED: "Payment amount ({amount} USDC) exceeds maxPrice ({max_price} USDC).",
    ErrorType.PAYMENT_CHALLENGE_MALFORMED: "The agent requested payment but its payment challenge could not be read: {reason}",
    ErrorType.UNKNOWN: "{reason}",
}

GUIDANCE: dict[ErrorType, str] = {
    ErrorType.INSUFFICIENT_FUNDS: "Please add USDC to your wallet using the faucet or transfer from another wallet.",
    ErrorType.INVALID_SIGNATURE: "Retry the request. A fresh authorization will be created automatically. If the problem persists, check your wallet delegation status.",
    ErrorType.EXPIRED_AUTHORIZATION: "Retry the request. A fresh authorization will be created automatically.",
    ErrorType.NETWORK_MISMATCH: "Please ensure you are using the network the agent expects.",
    ErrorType.BUDGET_EXCEEDED: "Increase maxPrice or choose a cheaper agent.",
    ErrorType.PAYMENT_CHALLENGE_MALFORMED: "The agent is not speaking the x402 protocol correctly. Try a different agent.",
    ErrorType.UNKNOWN: "Please check the payment details and try again.",
}

# Facilitator error codes with a direct mapping.
CODE_MAP: dict[str, ErrorType] = {
    "insufficient_funds": ErrorType.INSUFFICIENT_FUNDS,
    "invalid_signature": ErrorType.INVALID_SIGNATURE,
    "expired": ErrorType.EXPIRED_AUTHORIZATION,
    "expired_authorization": ErrorType.EXPIRED_AUTHORIZATION,
    "network_mismatch": ErrorType.NETWORK_MISMATCH,
    "budget_exceeded": ErrorType.BUDGET_EXCEEDED,
}

# Ordered substring rules for free-text reasons; first match wins.
REASON_RULES: list[tuple[tuple[str, ...], ErrorType]] = [
    (("insufficient", "balance"), ErrorType.INSUFFICIENT_FUNDS),
    (("signature", "authorization"), ErrorType.INVALID_SIGNATURE),
    (("network", "chain"), ErrorType.NETWORK_MISMATCH),
    (("expired", "valid_before", "validbefore"), ErrorType.EXPIRED_AUTHORIZATION),
]

RETRYABLE_KINDS = {ErrorType.INVALID_SIGNATURE, ErrorType.EXPIRED_AUTHORIZATION}


class PaymentErrorClassifier:
    """Classifies raw payment failure signals. None of its methods raise."""

    @staticmethod
    def _build(
        kind: ErrorType,
        original: str | None,
        context: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> ClassifiedError:
        ctx = _Context(context or {})
        ctx.setdefault("reason", original or "Unknown error")
        try:
            message = MESSAGE_TEMPLATES[kind].format_map(ctx)
        except (KeyError, ValueError, IndexError):
            message = original or MESSAGE_TEMPLATES[ErrorType.UNKNOWN].format_map(ctx)
        return ClassifiedError(
            kind=kind,
            message=message,
            suggestion=GUIDANCE.get(kind),
            original=original,
            retryable=kind in RETRYABLE_KINDS if retryable is None else retryable,
            details={k: v for k, v in (context or {}).items() if v is not None},
        )

    @staticmethod
    def classify_reason(reason: str | None, context: dict[str, Any] | None = None) -> ClassifiedError:
        """
        Classify a free-text settlement failure reason.

        Args:
            reason: Failure reason as reported by the facilitator
            context: Optional values for the message template (amount, network, ...)

        Returns:
            ClassifiedError; unmatched reasons yield ``unknown`` with the
            reason preserved verbatim
        """
        try:
            text = reason or ""
            lowered = text.lower()
            for needles, kind in REASON_RULES:
                if any(needle in lowered for needle in needles):
                    return PaymentErrorClassifier._build(kind, reason, context)
            return PaymentErrorClassifier._build(ErrorType.UNKNOWN, reason, context)
        except Exception as e:
            logger.warning(f"Failed to classify payment error reason: {e}")
            return ClassifiedError(kind=ErrorType.UNKNOWN, message=str(reason), original=reason)

    @staticmethod
    def classify_code(code: str | None, context: dict[str, Any] | None = None) -> ClassifiedError:
        """
        Classify a facilitator error code.

        Known codes map directly; anything else is treated as free text.
        """
        try:
            normalized = (code or "").strip().lower()
            kind = CODE_MAP.get(normalized)
            if kind is not None:
                return PaymentErrorClassifier._build(kind, code, context)
            return PaymentErrorClassifier.classify_reason(code, context)
        except Exception as e:
            logger.warning(f"Failed to classify payment error code: {e}")
            return ClassifiedError(kind=ErrorType.UNKNOWN, message=str(code), original=code)

    @staticmethod
    def classify_exception(error: BaseException, context: dict[str, Any] | None = None) -> ClassifiedError:
        """
        Classify an exception raised by a transport, signer or codec.

        Transport failures are retryable ``unknown`` errors with a
        user-friendly message instead of the raw transport text.
        """
        try:
            if isinstance(error, UniAgentError):
                return ClassifiedError(
                    kind=error.error_type,
                    message=error.message,
                    suggestion=error.suggestion or GUIDANCE.get(error.error_type),
                    original=str(error),
                    retryable=error.error_type in RETRYABLE_KINDS,
                    details=error.details,
                )
            if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
                return ClassifiedError(
                    kind=ErrorType.UNKNOWN,
                    message="The agent is taking too long to respond. This could be due to network issues or high service load. Please try again later.",
                    suggestion="Try again later or choose a different agent.",
                    original=str(error),
                    retryable=True,
                    details=dict(context or {}),
                )
            if isinstance(error, httpx.HTTPError):
                return ClassifiedError(
                    kind=ErrorType.UNKNOWN,
                    message="The agent could not be reached. Please try again later.",
                    suggestion="Try again later or choose a different agent.",
                    original=str(error),
                    retryable=True,
                    details=dict(context or {}),
                )
            return PaymentErrorClassifier.classify_reason(str(error), context)
        except Exception as e:
            logger.warning(f"Failed to classify exception: {e}")
            return ClassifiedError(kind=ErrorType.UNKNOWN, message=str(error), original=str(error))

    @staticmethod
    def budget_exceeded(amount: Decimal, max_price: Decimal) -> ClassifiedError:
        """Classification for an amount above the per-call ceiling."""
        return PaymentErrorClassifier._build(
            ErrorType.BUDGET_EXCEEDED,
            f"required {amount} > max {max_price}",
            {"amount": f"{amount.normalize():f}", "max_price": f"{max_price.normalize():f}"},
        )

    @staticmethod
    def challenge_malformed(reason: str) -> ClassifiedError:
        """Classification for a missing or undecodable payment challenge."""
        return PaymentErrorClassifier._build(
            ErrorType.PAYMENT_CHALLENGE_MALFORMED,
            reason,
            {"reason": reason},
        )

    @staticmethod
    def format_error_for_user(error: ClassifiedError | BaseException) -> dict[str, Any]:
        """
        Format an error for user display with actionable guidance.

        Args:
            error: A classification or a raw exception

        Returns:
            Dictionary with user-friendly error information
        """
        if not isinstance(error, ClassifiedError):
            error = PaymentErrorClassifier.classify_exception(error)
        return {
            "error": error.message,
            "type": error.kind.value,
            "suggestion": error.suggestion,
            "retryable": error.retryable,
            "details": error.details,
        }
