"""
X402 payment client.

This service drives the HTTP 402 challenge/response flow for one capability
invocation: send, decode the challenge, check it against the budget, sign an
EIP-3009 authorization, retry exactly once with the payment header and
validate the settlement.
"""

import asyncio
import json
import logging
import time
from decimal import Decimal
from typing import Any, Protocol

import httpx
from httpx import AsyncClient, Response

from uniagent.core.config import Settings, settings
from uniagent.core.errors import (
    BudgetExceededError,
    ErrorType,
    PaymentChallengeMalformedError,
    UniAgentError,
)
from uniagent.core.payment_errors import ClassifiedError, PaymentErrorClassifier
from uniagent.schemas.payment import (
    BudgetReservation,
    PaymentAuthorization,
    PaymentOutcome,
    PaymentRequirement,
    PaymentState,
)
from uniagent.x402.codec import (
    PAYMENT_REQUIRED_HEADERS,
    PAYMENT_RESPONSE_HEADERS,
    decode_payment_required,
    decode_settlement_response,
    encode_payment_signature,
    first_header,
    payment_header_name,
)
from uniagent.x402.signature import TypedDataSigner, build_transfer_authorization
from uniagent.x402.units import format_usdc, to_usdc

logger = logging.getLogger(__name__)


class BudgetGuard(Protocol):
    """Holds funds between the budget check and settlement."""

    async def reserve(self, amount: Decimal, ceiling: Decimal | None = None) -> BudgetReservation:
        ...

    async def release(self, reservation: BudgetReservation | None):
        ...


def build_invocation_request(task: str) -> dict[str, Any]:
    """JSON-RPC ``message/send`` body carrying the task as a text part."""
    return {
        "jsonrpc": "2.0",
        "id": int(time.time() * 1000),
        "method": "message/send",
        "params": {
            "message": {
                "role": "user",
                "parts": [{"type": "text", "text": task}],
            },
        },
    }


class X402PaymentClient:
    """Runs the x402 state machine for outbound capability calls."""

    def __init__(
        self,
        signer: TypedDataSigner,
        http_client: AsyncClient | None = None,
        app_settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the payment client.

        Args:
            signer: Typed-data signer for the payer wallet
            http_client: Shared HTTP client; one is created when omitted
            app_settings: Settings override
            logger: Logger override
        """
        self.signer = signer
        self.settings = app_settings or settings
        self.logger = logger or logging.getLogger(__name__)
        self._owns_client = http_client is None
        self.client = http_client or AsyncClient(timeout=self.settings.invocation_timeout_seconds)

    def _safe_parse_json(self, response: Response) -> Any:
        """
        Safely parse JSON from HTTP response with error handling.

        Returns:
            Parsed JSON, or the raw text if the body is not JSON
        """
        if not response.content:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            self.logger.warning(f"Invalid JSON in agent response: {e}")
            self.logger.debug(f"Response content (first 200 chars): {response.text[:200]}")
            return response.text

    def _extract_result(self, response: Response) -> Any:
        data = self._safe_parse_json(response)
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def _post(self, endpoint: str, body: dict[str, Any], headers: dict[str, str] | None = None) -> Response:
        return await self.client.post(
            endpoint,
            json=body,
            headers={"Content-Type": "application/json", **(headers or {})},
            timeout=self.settings.invocation_timeout_seconds,
        )

    def _terminal(
        self,
        states: list[PaymentState],
        state: PaymentState,
        error: ClassifiedError | None = None,
        **fields: Any,
    ) -> PaymentOutcome:
        states.append(state)
        if error is not None:
            self.logger.warning(f"Payment flow ended {state.value}: [{error.kind.value}] {error.message}")
        return PaymentOutcome(
            state=state,
            success=state == PaymentState.OK,
            error=error,
            states=list(states),
            **fields,
        )

    def _http_failure(self, response: Response) -> ClassifiedError:
        text = response.text[:200] if response.content else ""
        return ClassifiedError(
            kind=ErrorType.UNKNOWN,
            message=f"Agent request failed: {response.status_code} - {text}".rstrip(" -"),
            suggestion="Try a different agent or retry later.",
            original=text or None,
            retryable=response.status_code >= 500,
            details={"status": response.status_code},
        )

    def _paid_retry_failure(
        self,
        response: Response,
        context: dict[str, Any],
        settlement_reason: str | None,
    ) -> ClassifiedError:
        if response.status_code == 402:
            rechallenge = decode_payment_required(first_header(response.headers, PAYMENT_REQUIRED_HEADERS))
            if rechallenge is not None and rechallenge.error_code:
                return PaymentErrorClassifier.classify_code(rechallenge.error_code, context)
            if settlement_reason:
                return PaymentErrorClassifier.classify_reason(settlement_reason, context)
            return PaymentErrorClassifier.classify_reason(
                "Payment was not accepted: the agent answered the paid retry with another payment challenge",
                context,
            )
        if settlement_reason:
            return PaymentErrorClassifier.classify_reason(settlement_reason, context)
        return self._http_failure(response)

    def _read_challenge(self, response: Response) -> PaymentRequirement:
        header = first_header(response.headers, PAYMENT_REQUIRED_HEADERS)
        requirement = decode_payment_required(header) if header else None
        if requirement is None:
            reason = (
                "PAYMENT-REQUIRED header could not be decoded"
                if header
                else "402 response without a PAYMENT-REQUIRED header"
            )
            classified = PaymentErrorClassifier.challenge_malformed(reason)
            raise PaymentChallengeMalformedError(
                classified.message,
                details=classified.details,
                suggestion=classified.suggestion,
            )
        return requirement

    async def _sign(self, requirement: PaymentRequirement) -> PaymentAuthorization:
        typed = build_transfer_authorization(requirement, self.signer.address, self.settings)
        signature = await asyncio.wait_for(
            self.signer.sign_typed_data(typed.domain, typed.types, typed.message, typed.primary_type),
            timeout=self.settings.signing_timeout_seconds,
        )
        message = typed.message
        return PaymentAuthorization(
            signature=signature,
            from_address=message["from"],
            to=message["to"],
            value=message["value"],
            valid_after=message["validAfter"],
            valid_before=message["validBefore"],
            nonce=message["nonce"],
        )

    async def execute(
        self,
        endpoint: str,
        task: str,
        max_price: Decimal,
        budget_guard: BudgetGuard | None = None,
    ) -> PaymentOutcome:
        """
        Invoke a capability endpoint, paying through x402 when challenged.

        Args:
            endpoint: Resolved invocation endpoint
            task: Natural-language task for the agent
            max_price: Largest amount, in USDC, this call may pay
            budget_guard: Ledger that must reserve the amount before signing

        Returns:
            PaymentOutcome in a terminal state. Never raises for transport,
            protocol or signer failures.
        """
        states: list[PaymentState] = [PaymentState.INIT]
        body = build_invocation_request(task)
        self.logger.info(f"Invoking agent at {endpoint} (maxPrice {max_price} USDC)")

        # INIT -> SENT
        states.append(PaymentState.SENT)
        try:
            response = await self._post(endpoint, body)
        except httpx.HTTPError as e:
            self.logger.error(f"Agent request to {endpoint} failed: {e}")
            return self._terminal(
                states, PaymentState.FAILED,
                PaymentErrorClassifier.classify_exception(e, {"endpoint": endpoint}),
            )

        if response.status_code != 402:
            if response.is_success:
                self.logger.info("Request completed without payment")
                return self._terminal(
                    states, PaymentState.OK,
                    result=self._extract_result(response),
                    http_status=response.status_code,
                )
            return self._terminal(
                states, PaymentState.FAILED, self._http_failure(response),
                http_status=response.status_code,
            )

        # CHALLENGED: the header is mandatory
        states.append(PaymentState.CHALLENGED)
        try:
            requirement = self._read_challenge(response)
        except PaymentChallengeMalformedError as e:
            return self._terminal(
                states, PaymentState.FAILED,
                PaymentErrorClassifier.classify_exception(e),
                http_status=402,
            )

        # BUDGET_CHECK
        states.append(PaymentState.BUDGET_CHECK)
        reservation: BudgetReservation | None = None
        if requirement.amount is not None:
            required = to_usdc(requirement.amount, self.settings.usdc_decimals)
            self.logger.info(
                f"Payment required: {format_usdc(required)} USDC to {requirement.pay_to} on {requirement.network}"
            )
            if required > max_price:
                return self._terminal(
                    states, PaymentState.REJECTED,
                    PaymentErrorClassifier.budget_exceeded(required, max_price),
                    requirement=requirement, http_status=402,
                )
            if budget_guard is not None:
                try:
                    reservation = await budget_guard.reserve(required, max_price)
                except BudgetExceededError as e:
                    return self._terminal(
                        states, PaymentState.REJECTED,
                        PaymentErrorClassifier.classify_exception(e),
                        requirement=requirement, http_status=402,
                    )
                except UniAgentError as e:
                    return self._terminal(
                        states, PaymentState.FAILED,
                        PaymentErrorClassifier.classify_exception(e),
                        requirement=requirement, http_status=402,
                    )
        else:
            self.logger.info("Payment challenge carries no amount; no budget constraint applied")

        context = {
            "amount": format_usdc(to_usdc(requirement.amount or 0, self.settings.usdc_decimals)),
            "network": requirement.network,
        }

        # SIGNING
        states.append(PaymentState.SIGNING)
        try:
            authorization = await self._sign(requirement)
            payment_header = encode_payment_signature(authorization, requirement)
        except Exception as e:
            self.logger.error(f"Signing payment authorization failed: {e}")
            if budget_guard is not None:
                await budget_guard.release(reservation)
            return self._terminal(
                states, PaymentState.FAILED,
                PaymentErrorClassifier.classify_exception(e, context),
                requirement=requirement, http_status=402,
            )
        self.logger.info(f"Payment authorization signed: {authorization.signature[:10]}...")

        # RETRY_SENT: exactly one paid retry
        states.append(PaymentState.RETRY_SENT)
        try:
            paid = await self._post(
                endpoint, body, {payment_header_name(requirement.x402_version): payment_header}
            )
        except httpx.HTTPError as e:
            if budget_guard is not None:
                await budget_guard.release(reservation)
            return self._terminal(
                states, PaymentState.FAILED,
                PaymentErrorClassifier.classify_exception(e, context),
                requirement=requirement, authorization=authorization,
            )

        settlement = decode_settlement_response(first_header(paid.headers, PAYMENT_RESPONSE_HEADERS))
        settlement_failed = settlement is not None and not settlement.success
        settlement_reason = settlement.error_reason if settlement_failed else None

        if not paid.is_success or settlement_failed:
            if budget_guard is not None:
                await budget_guard.release(reservation)
            if paid.is_success:
                error = PaymentErrorClassifier.classify_reason(settlement_reason or "Unknown error", context)
            else:
                error = self._paid_retry_failure(paid, context, settlement_reason)
            return self._terminal(
                states, PaymentState.FAILED, error,
                requirement=requirement, authorization=authorization,
                http_status=paid.status_code,
                transaction_hash=settlement.transaction if settlement else None,
            )

        amount_paid = to_usdc(authorization.value, self.settings.usdc_decimals)
        transaction_hash = settlement.transaction if settlement else None
        self.logger.info(f"Payment completed: {format_usdc(amount_paid)} USDC (tx {transaction_hash})")
        return self._terminal(
            states, PaymentState.OK,
            result=self._extract_result(paid),
            amount_paid=amount_paid,
            requirement=requirement,
            authorization=authorization,
            transaction_hash=transaction_hash,
            http_status=paid.status_code,
            reservation=reservation,
        )

    async def close(self):
        """Close the HTTP client if this service created it."""
        if self._owns_client:
            await self.client.aclose()
