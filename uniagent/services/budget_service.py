"""
Budget ledger for one orchestration run.

The ledger enforces ``spent <= max_budget`` before any authorization is
signed: a payment must first reserve its amount, and only a realized amount
is ever committed. All mutations are serialized with an asyncio lock.
"""

import asyncio
import logging
from decimal import Decimal

from uniagent.core.errors import BudgetExceededError, LedgerClosedError
from uniagent.core.payment_errors import PaymentErrorClassifier
from uniagent.schemas.payment import BudgetReservation, BudgetSnapshot
from uniagent.x402.units import format_usdc, quantize_usdc

logger = logging.getLogger(__name__)


class BudgetLedger:
    """Tracks spend against a hard budget with a per-call safety fraction."""

    def __init__(
        self,
        max_budget: Decimal,
        safety_fraction: Decimal | float = Decimal("0.9"),
        logger: logging.Logger | None = None,
    ):
        if max_budget <= 0:
            raise ValueError("max_budget must be positive")
        self.max_budget = Decimal(str(max_budget))
        self.safety_fraction = Decimal(str(safety_fraction))
        self.spent = Decimal("0")
        self._reservations: dict[str, BudgetReservation] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        self.logger = logger or logging.getLogger(__name__)

    @property
    def reserved(self) -> Decimal:
        return sum((r.amount for r in self._reservations.values()), Decimal("0"))

    @property
    def remaining(self) -> Decimal:
        return self.max_budget - self.spent

    @property
    def closed(self) -> bool:
        return self._closed

    def call_ceiling(self) -> Decimal:
        """Largest amount any single call may be offered right now."""
        available = self.max_budget - self.spent - self.reserved
        if available <= 0:
            return Decimal("0")
        return quantize_usdc(available * self.safety_fraction)

    def snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot(
            max_budget=self.max_budget,
            spent=self.spent,
            reserved=self.reserved,
            remaining=self.remaining,
            call_ceiling=self.call_ceiling(),
            safety_fraction=self.safety_fraction,
        )

    def _ensure_open(self):
        if self.closed:
            raise LedgerClosedError("Budget ledger is closed; the run was cancelled or finished")

    async def reserve(self, amount: Decimal, ceiling: Decimal | None = None) -> BudgetReservation:
        """
        Hold ``amount`` against the budget ahead of signing.

        Args:
            amount: Required amount in USDC
            ceiling: Per-call ceiling the caller was advised; the ledger's own
                ceiling applies as well

        Raises:
            BudgetExceededError: If the amount is above either ceiling
            LedgerClosedError: If the ledger was closed
        """
        async with self._lock:
            self._ensure_open()
            limit = self.call_ceiling()
            if ceiling is not None:
                limit = min(limit, ceiling)
            if amount > limit or self.spent + self.reserved + amount > self.max_budget:
                classified = PaymentErrorClassifier.budget_exceeded(amount, limit)
                self.logger.warning(
                    f"Reservation of {format_usdc(amount)} USDC rejected (ceiling {format_usdc(limit)} USDC)"
                )
                raise BudgetExceededError(
                    classified.message,
                    details={"amount": str(amount), "ceiling": str(limit)},
                    suggestion=classified.suggestion,
                )
            reservation = BudgetReservation(amount=amount)
            self._reservations[reservation.id] = reservation
            return reservation

    async def commit(self, reservation: BudgetReservation, realized: Decimal) -> BudgetSnapshot:
        """
        Book a realized amount and drop its reservation.

        The realized amount can never exceed what was reserved.
        """
        async with self._lock:
            self._ensure_open()
            held = self._reservations.pop(reservation.id, None)
            if held is None:
                raise ValueError(f"Unknown or already settled reservation: {reservation.id}")
            if realized < 0 or realized > held.amount:
                self._reservations[held.id] = held
                raise ValueError(
                    f"Realized amount {realized} outside reserved amount {held.amount}"
                )
            self.spent += realized
            self.logger.info(
                f"Committed {format_usdc(realized)} USDC (spent {format_usdc(self.spent)} of "
                f"{format_usdc(self.max_budget)} USDC)"
            )
            return self.snapshot()

    async def release(self, reservation: BudgetReservation | None):
        """Drop a reservation without booking anything."""
        if reservation is None:
            return
        async with self._lock:
            self._reservations.pop(reservation.id, None)

    def close(self):
        """Stop accepting reservations and commits."""
        self._closed = True
        self._reservations.clear()
