#!/usr/bin/env python3
"""
Margin Pool Position Indexer — Wallet Scanner
==============================================

Discovers every margin supply position owned by a wallet.

Flow:
  1. sui_multiGetObjects(pools)             → pool state (ratio inputs,
                                              positions table, shared version)
  2. suix_getOwnedObjects(owner, SupplierCap) → the wallet's SupplierCaps
  3. suix_getDynamicFieldObject(table, cap)  → Position { shares } per pool

A SupplierCap can supply into every pool, so each cap is tried against
each configured pool; "not found" simply means no position there.

All data comes from public JSON-RPC — no API key, no SDK.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from margin_yield.central_config import get_network_config
from margin_yield.models import PoolState, Position
from margin_yield.pool_registry import PoolConfig, get_pools_for_network
from margin_yield.rpc_helpers import (
    normalize_sui_address as _normalize_sui_address,
    sui_rpc as _sui_rpc,
    type_params_of as _type_params_of,
)

logger = logging.getLogger(__name__)

_OWNED_OBJECTS_PAGE = 50


def _fields(node: Any) -> dict:
    """`fields` of a Move struct rendered as JSON content."""
    if not isinstance(node, dict) or not isinstance(node.get("fields"), dict):
        raise ValueError(f"Expected Move struct with fields, got {type(node).__name__}")
    return node["fields"]


def parse_pool_object(data: dict) -> PoolState:
    """
    Parse a MarginPool object (showContent + showOwner + showType).

    Layout:
      owner.Shared.initial_shared_version
      content.fields.state.fields.{total_supply, supply_shares}
      content.fields.positions.fields.positions.fields.id.id   (Table UID)
    """
    owner = data.get("owner") or {}
    shared = owner.get("Shared") if isinstance(owner, dict) else None
    if not shared:
        raise ValueError(f"Pool {data.get('objectId')} is not a shared object")

    content = data.get("content") or {}
    if content.get("dataType") != "moveObject":
        raise ValueError(f"Pool {data.get('objectId')} has no Move content")

    pool_fields = _fields(content)
    state = _fields(pool_fields["state"])
    table = _fields(_fields(pool_fields["positions"])["positions"])

    type_params = _type_params_of(data.get("type") or content.get("type", ""))
    if len(type_params) != 1:
        raise ValueError(f"Cannot read asset type from {data.get('type')}")

    return PoolState(
        pool_id=_normalize_sui_address(data["objectId"]),
        asset_type=type_params[0],
        initial_shared_version=int(shared["initial_shared_version"]),
        total_supply=int(state["total_supply"]),
        supply_shares=int(state["supply_shares"]),
        positions_table_id=table["id"]["id"],
    )


def parse_position_shares(result: dict) -> Optional[int]:
    """
    Shares from a Field<ID, Position> dynamic field object.

    Only the standard layout content.fields.value.fields.shares is accepted.
    """
    if not result or "error" in result:
        return None
    content = (result.get("data") or {}).get("content")
    if not content:
        return None
    value = _fields(_fields(content)["value"])
    return int(value["shares"])


class PositionIndexer:
    """
    Discovers all margin supply positions owned by a wallet.

    Usage:
        indexer = PositionIndexer("mainnet")
        positions, pools = await indexer.list_positions("0x...owner...")
    """

    def __init__(
        self,
        network: str = "mainnet",
        rpc_url: Optional[str] = None,
        package_id: Optional[str] = None,
        timeout: int = 20,
    ):
        cfg = get_network_config(network)
        self.network = network
        self.rpc_url = rpc_url or cfg.rpc_url
        self.package_id = package_id or cfg.package_id
        self.timeout = timeout

    async def read_pools(
        self, pools: Optional[Sequence[PoolConfig]] = None
    ) -> Dict[str, PoolState]:
        """Read every pool object in one sui_multiGetObjects call."""
        pools = list(pools) if pools is not None else get_pools_for_network(self.network)
        if not pools:
            return {}
        result = await _sui_rpc(
            self.rpc_url,
            "sui_multiGetObjects",
            [
                [p.pool_id for p in pools],
                {"showContent": True, "showOwner": True, "showType": True},
            ],
            timeout=self.timeout,
        )
        states: Dict[str, PoolState] = {}
        for config, entry in zip(pools, result or []):
            data = (entry or {}).get("data")
            if not data:
                logger.warning("Pool %s (%s) not found", config.asset, config.pool_id[:16])
                continue
            try:
                state = parse_pool_object(data)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Unreadable pool %s: %s", config.asset, exc)
                continue
            states[state.pool_id] = state
        return states

    async def list_supplier_caps(self, owner: str) -> List[str]:
        """All SupplierCap object IDs owned by `owner` (paginated)."""
        cap_type = f"{self.package_id}::margin_pool::SupplierCap"
        caps: List[str] = []
        cursor = None
        while True:
            page = await _sui_rpc(
                self.rpc_url,
                "suix_getOwnedObjects",
                [
                    _normalize_sui_address(owner),
                    {"filter": {"StructType": cap_type}, "options": {"showType": True}},
                    cursor,
                    _OWNED_OBJECTS_PAGE,
                ],
                timeout=self.timeout,
            )
            for item in page.get("data", []):
                object_id = (item.get("data") or {}).get("objectId")
                if object_id:
                    caps.append(object_id)
            if not page.get("hasNextPage"):
                return caps
            cursor = page.get("nextCursor")

    async def read_share_count(self, table_id: str, cap_id: str) -> Optional[int]:
        """Shares held by `cap_id` in the pool whose positions table is `table_id`."""
        try:
            result = await _sui_rpc(
                self.rpc_url,
                "suix_getDynamicFieldObject",
                [table_id, {"type": "0x2::object::ID", "value": cap_id}],
                timeout=self.timeout,
            )
        except RuntimeError as exc:
            if "DynamicFieldNotFound" in str(exc) or "dynamicFieldNotFound" in str(exc):
                return None
            raise
        return parse_position_shares(result)

    async def _position_in_pool(
        self, cap_id: str, pool: PoolState, config: PoolConfig
    ) -> Optional[Position]:
        shares = await self.read_share_count(pool.positions_table_id, cap_id)
        if shares is None:
            return None
        return Position(
            pool_id=pool.pool_id,
            position_key_id=cap_id,
            asset_symbol=config.asset,
            share_count=shares,
            asset_type=pool.asset_type,
        )

    async def list_positions(
        self, owner: str
    ) -> Tuple[List[Position], Dict[str, PoolState]]:
        """
        Every (cap, pool) position of `owner`, with the pool states used.

        Returns:
            (positions, {pool_id: PoolState})
        """
        configs = get_pools_for_network(self.network)
        pools = await self.read_pools(configs)
        caps = await self.list_supplier_caps(owner)
        if not caps or not pools:
            return [], pools

        by_id = {_normalize_sui_address(c.pool_id): c for c in configs}
        tasks = [
            self._position_in_pool(cap, pool, by_id[pool_id])
            for cap in caps
            for pool_id, pool in pools.items()
            if pool_id in by_id
        ]
        found = await asyncio.gather(*tasks)
        positions = [p for p in found if p is not None]
        logger.info("%d position(s) across %d cap(s)", len(positions), len(caps))
        return positions, pools
