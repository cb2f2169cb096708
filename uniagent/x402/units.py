"""
USDC amount conversion between minor units and decimal amounts.
"""
from decimal import ROUND_DOWN, Decimal

from uniagent.core.constants import USDC_DECIMALS


def to_usdc(minor: int, decimals: int = USDC_DECIMALS) -> Decimal:
    """Convert an on-chain minor-unit amount to USDC, e.g. 500000 -> 0.5."""
    return Decimal(int(minor)).scaleb(-decimals)


def quantize_usdc(amount: Decimal, decimals: int = USDC_DECIMALS) -> Decimal:
    """Round down to the token's precision."""
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


def format_usdc(amount: Decimal, decimals: int = USDC_DECIMALS) -> str:
    """Fixed-point string with the token's precision, e.g. '0.500000'."""
    return f"{quantize_usdc(amount, decimals):.{decimals}f}"
