#!/usr/bin/env python3
"""
Share Math — Margin Pool Share/Amount Conversion
=================================================

Mirrors the on-chain share accounting of the DeepBook margin pool so that
displayed balances match what a real redemption returns.

FORMULA SOURCES:
────────────────
1. deepbook_margin::margin_state — supply_shares_to_amount
     ratio   = total_supply × FLOAT_SCALING / supply_shares   (1e9 if no shares)
     amount  = shares × ratio / FLOAT_SCALING
   Integer division truncates toward zero, exactly as Move u64/u128 math.

2. deepbook_margin::margin_state — supply_amount_to_shares (inverse)
     shares  = amount × FLOAT_SCALING / ratio

The ratio only grows as interest accrues, so a fixed share count redeems
for more base units over time. That growth is the "interest earned".
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# ── Named Constants ──────────────────────────────────────────────────────
FLOAT_SCALING = 1_000_000_000  # deepbook FLOAT_SCALING (1e9)


def supply_ratio(total_supply: int, supply_shares: int) -> int:
    """
    Base units per share, scaled by FLOAT_SCALING.

    An empty pool (zero shares) starts at 1:1, like the chain does.

    >>> supply_ratio(1200, 1000)
    1200000000
    """
    if total_supply < 0 or supply_shares < 0:
        raise ValueError("pool totals must be non-negative")
    if supply_shares == 0:
        return FLOAT_SCALING
    return total_supply * FLOAT_SCALING // supply_shares


def shares_to_amount(shares: int, total_supply: int, supply_shares: int) -> int:
    """
    Base units that `shares` currently redeem for.

    >>> shares_to_amount(700, 1200, 1000)
    840
    """
    if shares < 0:
        raise ValueError(f"shares must be non-negative, got {shares}")
    ratio = supply_ratio(total_supply, supply_shares)
    return shares * ratio // FLOAT_SCALING


def amount_to_shares(amount: int, total_supply: int, supply_shares: int) -> int:
    """
    Shares minted for depositing `amount` base units at the current ratio.

    >>> amount_to_shares(840, 1200, 1000)
    700
    """
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")
    ratio = supply_ratio(total_supply, supply_shares)
    if ratio == 0:
        raise ValueError("pool ratio is zero (supply drained with shares outstanding)")
    return amount * FLOAT_SCALING // ratio


# ── Display Helpers ──────────────────────────────────────────────────────


def to_decimal(amount: int, decimals: int) -> Decimal:
    """Smallest units → human units, exact.

    >>> to_decimal(1_500_000, 6)
    Decimal('1.5')
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    return (Decimal(amount) / (Decimal(10) ** decimals)).normalize()


def _trim(text: str) -> str:
    if "." in text and "e" not in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _with_symbol(text: str, symbol: Optional[str]) -> str:
    return f"{text} {symbol}" if symbol else text


def format_balance(amount: int, decimals: int, symbol: Optional[str] = None) -> str:
    """Grouped balance with up to `decimals` fractional digits."""
    value = to_decimal(amount, decimals)
    return _with_symbol(_trim(f"{value:,f}"), symbol)


def format_interest(amount: int, decimals: int, symbol: Optional[str] = None) -> str:
    """
    Interest with precision that widens as the magnitude shrinks.

    |x| < 0.0001 → up to 9 decimals, scientific (4 digits) if that shows zero
    |x| < 0.01   → up to 6 decimals
    otherwise    → up to 4 decimals, thousands grouped

    Sub-cent accrual stays visible instead of rounding to 0.

    >>> format_interest(140, 0)
    '140'
    >>> format_interest(1_234, 9, "SUI")
    '0.000001234 SUI'
    """
    value = Decimal(amount) / (Decimal(10) ** decimals)
    if value == 0:
        return _with_symbol("0", symbol)

    magnitude = abs(value)
    if magnitude < Decimal("0.0001"):
        text = _trim(f"{value:.9f}")
        if text in ("0", "-0"):
            text = f"{value:.4e}"
    elif magnitude < Decimal("0.01"):
        text = _trim(f"{value.quantize(Decimal('0.000001'), rounding=ROUND_HALF_UP):f}")
    else:
        text = _trim(f"{value.quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP):,f}")
    return _with_symbol(text, symbol)
