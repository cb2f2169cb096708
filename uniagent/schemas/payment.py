"""
x402 payment schemas.

This module defines the Pydantic schemas for payment challenges, signed
authorizations, settlement responses and the outcome of a paid invocation.
"""
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from uniagent.core.payment_errors import ClassifiedError


class PaymentRequirement(BaseModel):
    """Payment terms parsed from a 402 challenge. One instance per challenge."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    scheme: str = Field(..., description="Payment scheme, e.g. 'exact'")
    network: str = Field(..., description="Network identifier, e.g. 'eip155:84532'")
    pay_to: str = Field(..., alias="payTo", description="Receiver address")
    amount: int | None = Field(None, description="Required amount in minor units; None when absent")
    asset: str | None = Field(None, description="Token contract address")
    resource: str | None = Field(None, description="URL of the paid resource")
    description: str | None = None
    error_code: str | None = Field(None, alias="errorCode", description="Facilitator error code, if any")
    x402_version: int = Field(2, alias="x402Version")
    extra: dict[str, Any] = Field(default_factory=dict, description="Scheme extras (EIP-712 name/version)")


class PaymentAuthorization(BaseModel):
    """A signed EIP-3009 transfer authorization. Created once per accepted requirement."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    signature: str
    from_address: str = Field(..., alias="from")
    to: str
    value: int
    valid_after: int = Field(..., alias="validAfter")
    valid_before: int = Field(..., alias="validBefore")
    nonce: str = Field(..., description="0x-prefixed 32-byte hex nonce")

    def authorization_fields(self) -> dict[str, str]:
        """Authorization block in wire order, integers as decimal strings."""
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }


class SettlementResponse(BaseModel):
    """Settlement result reported in the PAYMENT-RESPONSE header."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    transaction: str | None = None
    network: str | None = None
    payer: str | None = None
    error_reason: str | None = Field(None, alias="errorReason")


class PaymentState(str, Enum):
    """States of the x402 challenge/response state machine."""

    INIT = "init"
    SENT = "sent"
    CHALLENGED = "challenged"
    BUDGET_CHECK = "budget_check"
    SIGNING = "signing"
    RETRY_SENT = "retry_sent"
    OK = "ok"
    REJECTED = "rejected"
    FAILED = "failed"


class BudgetReservation(BaseModel):
    """Amount held against the ledger between budget check and settlement."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    amount: Decimal


class BudgetSnapshot(BaseModel):
    """Point-in-time view of a budget ledger."""

    max_budget: Decimal
    spent: Decimal
    reserved: Decimal
    remaining: Decimal
    call_ceiling: Decimal
    safety_fraction: Decimal

    def to_context(self) -> dict[str, str]:
        """Plain strings for planner context and tool results."""
        return {
            "maxBudget": f"{self.max_budget:f}",
            "spent": f"{self.spent:f}",
            "remaining": f"{self.remaining:f}",
            "perCallCeiling": f"{self.call_ceiling:f}",
        }


class PaymentOutcome(BaseModel):
    """Terminal result of one invocation through the payment state machine."""

    state: PaymentState
    success: bool
    result: Any = None
    amount_paid: Decimal = Decimal("0")
    requirement: PaymentRequirement | None = None
    authorization: PaymentAuthorization | None = None
    transaction_hash: str | None = None
    http_status: int | None = None
    error: ClassifiedError | None = None
    states: list[PaymentState] = Field(default_factory=list)
    reservation: BudgetReservation | None = None

    @property
    def paid(self) -> bool:
        """Whether a payment was settled for this invocation."""
        return self.success and self.authorization is not None
