#!/usr/bin/env python3
"""
On-Chain Supply Reader for DeepBook Margin Pools
=================================================

Reads current supply values directly from chain with ONE simulated
transaction per batch, regardless of how many positions are asked for.
No SDK dependency — builds the programmable transaction in BCS and posts
it with httpx to sui_devInspectTransactionBlock.

Data Sources (per simulated call):
──────────────────────────────────
1. margin_pool::user_supply_amount<Asset>(pool, supplier_cap_id, clock): u64
   Principal + accrued interest for one SupplierCap, at the current clock.
   One independent call per position; no result is threaded between calls.

2. margin_pool::protocol_fees<Asset>(pool): &ProtocolFees
   protocol_fees::referral_tracker(&ProtocolFees, referral_id): (u64, u64)
   Chained: call 0 returns the ProtocolFees handle, every later call
   consumes it and returns (current_shares, unclaimed_fees).

Demultiplexing:
───────────────
  results[i] of the dev-inspect response belongs to command i, so decoded
  values are zipped back to the input order. Return values are BCS bytes;
  a u64 is 8 bytes little-endian.

Failure semantics:
──────────────────
  Transport errors and non-success execution are logged and degrade to an
  empty mapping. A missing key means "unknown", never zero.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from margin_yield.call_graph import CallGraph
from margin_yield.central_config import ZERO_SENDER, get_network_config
from margin_yield.models import PoolState, Position, PositionKey
from margin_yield.rpc_helpers import (
    decode_u64 as _decode_u64,
    dev_inspect as _dev_inspect,
    execution_succeeded as _execution_succeeded,
    return_values as _return_values,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SupplyQuery:
    """One user_supply_amount invocation."""

    pool_id: str
    position_key_id: str
    asset_type: str
    initial_shared_version: int

    @property
    def key(self) -> PositionKey:
        return (self.pool_id, self.position_key_id)


@dataclass(frozen=True)
class ReferralTrackerData:
    """Referral tracker state returned by protocol_fees::referral_tracker."""

    referral_id: str
    current_shares: int
    unclaimed_fees: int


def _first_u64(values: list, slot: int = 0) -> int:
    """Decode return value `slot` ([bytes, type] pair) as u64."""
    raw, _type_tag = values[slot]
    return _decode_u64(raw)


class SupplyReader:
    """
    Batched on-chain reads for margin pool positions.

    Usage:
        reader = SupplyReader("mainnet")
        reader.register_pool(pool_state)                 # from position_indexer
        values = await reader.fetch_position_values(positions)
        values[(pool_id, cap_id)]  → u64 base units
    """

    def __init__(
        self,
        network: str = "mainnet",
        rpc_url: Optional[str] = None,
        package_id: Optional[str] = None,
        sender: str = ZERO_SENDER,
        timeout: int = 20,
    ):
        cfg = get_network_config(network)
        self.network = network
        self.rpc_url = rpc_url or cfg.rpc_url
        self.package_id = package_id or cfg.package_id
        self.sender = sender
        self.timeout = timeout
        self._pool_versions: Dict[str, int] = {}

    # ── Pool bookkeeping ─────────────────────────────────────────────

    def register_pool(self, pool: PoolState) -> None:
        """Remember a pool's initial shared version (needed as tx input)."""
        self._pool_versions[pool.pool_id] = pool.initial_shared_version

    def register_pools(self, pools: Iterable[PoolState]) -> None:
        for pool in pools:
            self.register_pool(pool)

    # ── Graph construction ───────────────────────────────────────────

    def build_supply_graph(self, queries: Sequence[SupplyQuery]) -> CallGraph:
        """One independent user_supply_amount call per query, in order."""
        graph = CallGraph()
        target = f"{self.package_id}::margin_pool::user_supply_amount"
        for q in queries:
            pool = graph.shared_object(q.pool_id, q.initial_shared_version)
            graph.move_call(
                target,
                [pool, graph.pure_id(q.position_key_id), graph.clock()],
                [q.asset_type],
            )
        return graph

    def build_referral_graph(
        self, pool: PoolState, referral_ids: Sequence[str]
    ) -> CallGraph:
        """protocol_fees handle first, then one referral_tracker call per ID."""
        graph = CallGraph()
        pool_arg = graph.shared_object(pool.pool_id, pool.initial_shared_version)
        fees_ref = graph.move_call(
            f"{self.package_id}::margin_pool::protocol_fees",
            [pool_arg],
            [pool.asset_type],
        )
        for referral_id in referral_ids:
            graph.move_call(
                f"{self.package_id}::protocol_fees::referral_tracker",
                [fees_ref, graph.pure_id(referral_id)],
            )
        return graph

    async def _simulate(self, graph: CallGraph, label: str) -> Optional[dict]:
        """Run the graph once. Returns None on any failure (already logged)."""
        try:
            result = await _dev_inspect(
                self.rpc_url, graph.to_bcs(), self.sender, timeout=self.timeout
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("[%s] dev-inspect failed: %s", label, exc)
            return None
        if not _execution_succeeded(result):
            status = (result or {}).get("effects", {}).get("status")
            logger.warning("[%s] simulation did not succeed: %s", label, status)
            return None
        return result

    # ── Public reads ─────────────────────────────────────────────────

    async def fetch_current_values(
        self, queries: Sequence[SupplyQuery]
    ) -> Dict[PositionKey, int]:
        """
        Current supply value for every query in ONE round-trip.

        Returns:
            {(pool_id, position_key_id): u64}. Empty on failure; keys with
            an undecodable result are left out.
        """
        unique: List[SupplyQuery] = list({q.key: q for q in queries}.values())
        if not unique:
            return {}

        result = await self._simulate(self.build_supply_graph(unique), "supply")
        if result is None:
            return {}

        values: Dict[PositionKey, int] = {}
        for index, query in enumerate(unique):
            returned = _return_values(result, index)
            if not returned:
                logger.debug("No return value for %s", query.position_key_id[:16])
                continue
            try:
                values[query.key] = _first_u64(returned)
            except (ValueError, TypeError, IndexError) as exc:
                logger.warning(
                    "Undecodable supply value for %s: %s", query.position_key_id[:16], exc
                )
        return values

    async def fetch_position_values(
        self, positions: Sequence[Position]
    ) -> Dict[PositionKey, int]:
        """fetch_current_values for positions of registered pools."""
        queries = []
        for p in positions:
            version = self._pool_versions.get(p.pool_id)
            if version is None or not p.asset_type:
                logger.warning(
                    "Pool %s not registered; value for %s unknown",
                    p.pool_id[:16],
                    p.position_key_id[:16],
                )
                continue
            queries.append(SupplyQuery(p.pool_id, p.position_key_id, p.asset_type, version))
        return await self.fetch_current_values(queries)

    async def fetch_referral_trackers(
        self, pool: PoolState, referral_ids: Sequence[str]
    ) -> Dict[str, ReferralTrackerData]:
        """
        Referral tracker data for many referrals in ONE round-trip.

        Returns:
            {referral_id: ReferralTrackerData}. Empty on failure.
        """
        ids = list(dict.fromkeys(referral_ids))
        if not ids:
            return {}

        graph = self.build_referral_graph(pool, ids)
        result = await self._simulate(graph, "referral")
        if result is None:
            return {}

        trackers: Dict[str, ReferralTrackerData] = {}
        for offset, referral_id in enumerate(ids, start=1):
            returned = _return_values(result, offset)
            if len(returned) < 2:
                logger.warning(
                    "Referral %s returned %d values, expected 2",
                    referral_id[:16],
                    len(returned),
                )
                continue
            try:
                trackers[referral_id] = ReferralTrackerData(
                    referral_id=referral_id,
                    current_shares=_first_u64(returned, 0),
                    unclaimed_fees=_first_u64(returned, 1),
                )
            except (ValueError, TypeError, IndexError) as exc:
                logger.warning("Undecodable referral tracker %s: %s", referral_id[:16], exc)
        return trackers
