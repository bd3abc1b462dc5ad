#!/usr/bin/env python3
"""
Cost Basis — Weighted-Average Cost of Current Shares
=====================================================

Computes what a supplier originally paid for the shares they hold *now*,
from the AssetSupplied / AssetWithdrawn history in the indexer.

Why events are necessary:
  The margin pool stores only the user's current shares and the pool's
  current ratio. The ratio at deposit time is not kept on chain, so the
  amount paid must be recovered from AssetSupplied events
  (supply_amount, supply_shares).

Method (weighted average):
  total_cost   = Σ deposit.amount
  total_shares = Σ deposit.shares
  for each withdrawal, in event order:
      cost_to_remove = net_cost × withdrawn_shares / net_shares   (truncating)
      net_cost      -= cost_to_remove
      net_shares    -= withdrawn_shares
  avg_cost = net_cost × 1e12 / net_shares
  original = current_shares × avg_cost / 1e12

Shares are fungible inside the pool and not tagged with their deposit
ratio, so every withdrawal is a pro-rata slice of the blended position.

Example:
  Paid 210 for 200 shares, withdraw 50 shares:
    cost_to_remove = 210 × 50 / 200 = 52 (truncated)
    remaining      = 158 for 150 shares
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from margin_yield.central_config import EVENT_QUERY_LIMIT
from margin_yield.events import LedgerEvent, in_event_order

logger = logging.getLogger(__name__)

# Fixed-point scale for the average cost per share
COST_SCALING = 1_000_000_000_000  # 1e12


class LedgerInconsistencyError(ValueError):
    """Withdrawals exceed the deposits known to the indexer."""

    def __init__(self, position_key_id: str, net_shares: int, net_cost: int):
        self.position_key_id = position_key_id
        self.net_shares = net_shares
        self.net_cost = net_cost
        super().__init__(
            f"Ledger inconsistency for {position_key_id[:16]}: "
            f"withdrawals exceed deposits (net_shares={net_shares}, net_cost={net_cost})"
        )


@dataclass(frozen=True)
class CostBasisRecord:
    """Result of folding a position's full deposit/withdrawal history."""

    position_key_id: str
    total_supplied: int
    total_shares_acquired: int
    net_shares: int
    net_cost: int

    def original_value(self, current_shares: int) -> int:
        """Cost basis attributable to `current_shares`, in base units."""
        if current_shares < 0:
            raise ValueError(f"current_shares must be non-negative, got {current_shares}")
        if self.net_shares == 0 or self.net_cost == 0:
            return 0
        avg_cost_per_share = self.net_cost * COST_SCALING // self.net_shares
        return current_shares * avg_cost_per_share // COST_SCALING


@dataclass(frozen=True)
class PositionHistory:
    """Full event history of one position."""

    supplies: List[LedgerEvent]
    withdrawals: List[LedgerEvent]

    @property
    def net_principal(self) -> int:
        """Σ supplied − Σ withdrawn (may be negative once interest is withdrawn)."""
        return sum(e.amount for e in self.supplies) - sum(
            e.amount for e in self.withdrawals
        )


def fold_history(
    position_key_id: str,
    deposits: Sequence[LedgerEvent],
    withdrawals: Sequence[LedgerEvent],
) -> Optional[CostBasisRecord]:
    """
    Fold deposits and withdrawals into a CostBasisRecord.

    Returns:
        None when there are no deposits yet (index has not caught up;
        every live position starts with a deposit).

    Raises:
        LedgerInconsistencyError: withdrawals drove shares or cost negative.
    """
    if not deposits:
        return None

    total_cost = sum(e.amount for e in deposits)
    total_shares = sum(e.shares for e in deposits)

    net_shares = total_shares
    net_cost = total_cost
    for event in in_event_order(withdrawals):
        if net_shares <= 0:
            # Nothing left to attribute
            continue
        cost_to_remove = net_cost * event.shares // net_shares
        net_cost -= cost_to_remove
        net_shares -= event.shares

    if net_shares < 0 or net_cost < 0:
        raise LedgerInconsistencyError(position_key_id, net_shares, net_cost)

    return CostBasisRecord(
        position_key_id=position_key_id,
        total_supplied=total_cost,
        total_shares_acquired=total_shares,
        net_shares=net_shares,
        net_cost=net_cost,
    )


def compute_original_value(
    position_key_id: str,
    deposits: Sequence[LedgerEvent],
    withdrawals: Sequence[LedgerEvent],
    current_shares: int,
) -> Optional[int]:
    """Original value of `current_shares`, or None if the index has no deposits."""
    record = fold_history(position_key_id, deposits, withdrawals)
    if record is None:
        return None
    return record.original_value(current_shares)


# ── Indexer-backed fetchers ──────────────────────────────────────────────


async def fetch_position_history(
    indexer, pool_id: str, position_key_id: str, limit: int = EVENT_QUERY_LIMIT
) -> PositionHistory:
    """Fetch supply and withdraw events for one position concurrently."""
    supplies, withdrawals = await asyncio.gather(
        indexer.fetch_asset_supplied(pool_id, position_key_id, limit=limit),
        indexer.fetch_asset_withdrawn(pool_id, position_key_id, limit=limit),
    )
    if len(supplies) >= limit or len(withdrawals) >= limit:
        logger.warning(
            "History for %s hit the %d-row query ceiling; cost basis may be incomplete",
            position_key_id[:16],
            limit,
        )
    return PositionHistory(supplies=supplies, withdrawals=withdrawals)


async def fetch_original_value(
    indexer, pool_id: str, position_key_id: str, current_shares: int
) -> Optional[int]:
    """
    Cost basis of a position's current shares, from the indexer.

    Args:
        indexer: IndexerClient (or anything with the same two fetch methods)
        pool_id: Margin pool object ID
        position_key_id: SupplierCap ID
        current_shares: Share balance read on chain

    Returns:
        Base units originally paid, or None while the indexer has no deposits.
        Transport errors propagate to the caller.
    """
    history = await fetch_position_history(indexer, pool_id, position_key_id)
    return compute_original_value(
        position_key_id, history.supplies, history.withdrawals, current_shares
    )
