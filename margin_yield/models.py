"""
Shared data types for positions and pool state.
"""

from dataclasses import dataclass, replace
from typing import Tuple

PositionKey = Tuple[str, str]  # (pool_id, position_key_id)


@dataclass(frozen=True)
class Position:
    """
    A supplier's claim on one margin pool.

    position_key_id is the SupplierCap object ID. One cap can hold a
    position in several pools, so (pool_id, position_key_id) is the key.
    share_count changes on every deposit/withdrawal and may reach zero.
    """

    pool_id: str
    position_key_id: str
    asset_symbol: str
    share_count: int
    asset_type: str = ""

    def __post_init__(self):
        if self.share_count < 0:
            raise ValueError(f"share_count must be non-negative, got {self.share_count}")

    @property
    def key(self) -> PositionKey:
        return (self.pool_id, self.position_key_id)

    @property
    def is_dormant(self) -> bool:
        return self.share_count == 0

    def with_shares(self, share_count: int) -> "Position":
        return replace(self, share_count=share_count)


@dataclass(frozen=True)
class PoolState:
    """Margin pool object as read from chain."""

    pool_id: str
    asset_type: str
    initial_shared_version: int
    total_supply: int
    supply_shares: int
    positions_table_id: str = ""
