#!/usr/bin/env python3
"""
Pool Registry — DeepBook Margin Pool Configuration
===================================================

Maps each supported network to its margin pools: pool object ID, Move
coin type, decimals and the pool's supply referral object.

Values come from the indexer's /margin_pool_created endpoint and the
published deepbook_margin package.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class PoolConfig:
    """Static description of one margin pool."""

    asset: str
    pool_id: str
    asset_type: str
    decimals: int
    referral_id: str = ""


# ── Pool Registry ───────────────────────────────────────────────────────
#
# POOL_REGISTRY[network] = [PoolConfig, ...]

POOL_REGISTRY: Dict[str, List[PoolConfig]] = {
    "mainnet": [
        PoolConfig(
            asset="SUI",
            pool_id="0x53041c6f86c4782aabbfc1d4fe234a6d37160310c7ee740c915f0a01b7127344",
            asset_type="0x0000000000000000000000000000000000000000000000000000000000000002::sui::SUI",
            decimals=9,
            referral_id="0xf5cf4cbaecefb03d69f507252449c3b2e85297676deb9193e37e10d776723803",
        ),
        PoolConfig(
            asset="USDC",
            pool_id="0xba473d9ae278f10af75c50a8fa341e9c6a1c087dc91a3f23e8048baf67d0754f",
            asset_type="0xdba34672e30cb065b1f93e3ab55318768fd6fef66c15942c9f7cb846e2f900e7::usdc::USDC",
            decimals=6,
            referral_id="0xf71910d2f1b6aaa25588111d8339e55581d28cfaa913a4ac95913428bd6481bb",
        ),
        PoolConfig(
            asset="DEEP",
            pool_id="0x1d723c5cd113296868b55208f2ab5a905184950dd59c48eb7345607d6b5e6af7",
            asset_type="0xdeeb7a4662eec9f2f3def03fb937a663dddaa2e215b8078a284d026b7946c270::deep::DEEP",
            decimals=6,
            referral_id="0xbeb73a813a67d70a2ede938b23809b0d2de74b653ab6f0d94d89ac4b45e21990",
        ),
        PoolConfig(
            asset="WAL",
            pool_id="0x38decd3dbb62bd4723144349bf57bc403b393aee86a51596846a824a1e0c2c01",
            asset_type="0x356a26eb9e012a68958082340d4c4116e7f55615cf27affcff209cf0ae544f59::wal::WAL",
            decimals=9,
            referral_id="0xd61c2d145cadcd595d6176b7075cf2540a2ff0d01fd41e80f7c97ece2b8937be",
        ),
    ],
    "testnet": [
        PoolConfig(
            asset="SUI",
            pool_id="0xcdbbe6a72e639b647296788e2e4b1cac5cea4246028ba388ba1332ff9a382eea",
            asset_type="0x0000000000000000000000000000000000000000000000000000000000000002::sui::SUI",
            decimals=9,
            referral_id="0x8b8b5d1cd1b703a5788f1b951e8f4c6f8bcbad37d58b8280bd58b29c692683c0",
        ),
        PoolConfig(
            asset="DBUSDC",
            pool_id="0xf08568da93834e1ee04f09902ac7b1e78d3fdf113ab4d2106c7265e95318b14d",
            asset_type="0xf7152c05930480cd740d7311b5b8b45c6f488e3a53a11c3f74a6fac36a52e0d7::DBUSDC::DBUSDC",
            decimals=6,
            referral_id="0x8f140aca65c9233603edec60708b9c8b6ac68aef5d436732b907d26ca41bfce6",
        ),
    ],
}


def get_pools_for_network(network: str) -> List[PoolConfig]:
    """All margin pools configured for a network (empty if unknown)."""
    return list(POOL_REGISTRY.get(network, []))


def get_pool(network: str, asset: str) -> Optional[PoolConfig]:
    """Look up a pool by asset symbol (case-insensitive)."""
    wanted = asset.strip().upper()
    for pool in POOL_REGISTRY.get(network, []):
        if pool.asset.upper() == wanted:
            return pool
    return None


def get_pool_by_id(network: str, pool_id: str) -> Optional[PoolConfig]:
    for pool in POOL_REGISTRY.get(network, []):
        if pool.pool_id.lower() == pool_id.lower():
            return pool
    return None
