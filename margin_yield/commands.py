"""
Margin Yield — Command Implementations
=======================================

All CLI command handlers live here, keeping run.py as a thin
argparse dispatcher.  Each public function corresponds to a
subcommand (info, positions, enrich, referrals).

Commands print; the engine modules they call only log.
"""

from __future__ import annotations

from margin_yield.central_config import (
    NETWORKS,
    PROJECT_NAME,
    PROJECT_VERSION,
    get_network_config,
    retry_policy_from_env,
)
from margin_yield.pool_registry import get_pool, get_pool_by_id, get_pools_for_network
from margin_yield.rpc_helpers import is_sui_address


def _decimals_for(network: str, pool_id: str) -> int:
    config = get_pool_by_id(network, pool_id)
    return config.decimals if config else 9


def _check_owner(owner: str) -> bool:
    if not owner or not is_sui_address(owner):
        print("❌ Invalid Sui address. Must be 0x followed by 64 hex characters.")
        return False
    return True


# ── Commands ─────────────────────────────────────────────────────────────


def cmd_info() -> None:
    """Display system and architecture information."""
    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print("🔗 Protocol   : DeepBook margin lending (Sui)")
    print("⛓️  Values     : sui_devInspectTransactionBlock (one call per pass)")
    print("📡 History    : DeepBook indexer (/asset_supplied, /asset_withdrawn)")
    print()
    print("📁 Files:")
    print("   run.py                — CLI entry point")
    print("   position_indexer.py   — wallet SupplierCap / position scanner")
    print("   supply_reader.py      — batched on-chain supply values")
    print("   cost_basis.py         — weighted-average cost of current shares")
    print("   share_math.py         — share ⇄ amount conversion, formatting")
    print("   reconciler.py         — retrying two-feed reconciliation")
    print("   margin_yield/         — config, BCS/RPC, indexer client, registry")
    print()
    print("🌐 Networks & pools:")
    for name, cfg in NETWORKS.items():
        assets = ", ".join(p.asset for p in get_pools_for_network(name))
        print(f"   {name:<8} — {assets}")
        print(f"              RPC     : {cfg.rpc_url}")
        print(f"              Indexer : {cfg.indexer_url}")
    print()
    policy = retry_policy_from_env()
    print("🔄 Retry policy (cost basis while the indexer catches up):")
    print(
        f"   {policy.max_attempts} attempts, {policy.initial_delay:g}s × "
        f"{policy.multiplier:g} backoff, capped at {policy.max_delay:g}s"
    )
    print()
    print("🔗 Quick Start:")
    print("   python run.py positions 0xOWNER")
    print("   python run.py enrich    0xOWNER --network mainnet")
    print("   python run.py referrals --asset SUI")


async def cmd_positions(owner: str, network: str = "mainnet") -> bool:
    """List every margin supply position owned by `owner`."""
    from position_indexer import PositionIndexer
    from share_math import format_balance, shares_to_amount

    if not _check_owner(owner):
        return False

    print(f"\n🔄 Scanning margin positions on {network.title()}...")
    indexer = PositionIndexer(network)
    positions, pools = await indexer.list_positions(owner)

    print(f"\n{'=' * 65}")
    print(f"  Margin Supply Positions — {network.title()}")
    print(f"  👛 Owner: {owner}")
    print(f"{'=' * 65}")

    if not positions:
        print("  No supply positions found on this network.")
        return True

    for i, p in enumerate(positions, 1):
        pool = pools[p.pool_id]
        decimals = _decimals_for(network, p.pool_id)
        estimate = shares_to_amount(p.share_count, pool.total_supply, pool.supply_shares)
        status = "⚪ Dormant" if p.is_dormant else "🟢 Active"
        print(f"\n    {i}. {p.asset_symbol} — {status}")
        print(f"       Cap      : {p.position_key_id}")
        print(f"       Pool     : {p.pool_id[:16]}...")
        print(f"       Shares   : {p.share_count:,}")
        print(f"       Est.value: {format_balance(estimate, decimals, p.asset_symbol)}")

    print(f"\n{'=' * 65}")
    print(f"  Total: {len(positions)} position(s)")
    print(f"{'=' * 65}")
    print("\n  💡 Interest earned per position:")
    print(f"     python run.py enrich {owner} --network {network}")
    return True


async def cmd_enrich(owner: str, network: str = "mainnet", timeout: float = 60.0) -> bool:
    """Reconcile current value with cost basis and print interest earned."""
    from margin_yield.indexer_client import IndexerClient
    from position_indexer import PositionIndexer
    from reconciler import ReconciliationState, Reconciler
    from share_math import format_balance
    from supply_reader import SupplyReader

    if not _check_owner(owner):
        return False

    cfg = get_network_config(network)
    print(f"\n🔄 Reconciling margin positions on {network.title()}...")
    positions, pools = await PositionIndexer(network).list_positions(owner)
    if not positions:
        print("  No supply positions found on this network.")
        return True

    reader = SupplyReader(network)
    reader.register_pools(pools.values())

    async with IndexerClient(cfg.indexer_url) as client:
        reconciler = Reconciler.from_clients(reader, client, policy=retry_policy_from_env())
        results = await reconciler.reconcile_until_settled(positions, timeout=timeout)

    print(f"\n{'=' * 65}")
    print(f"  Interest Earned — {network.title()}")
    print(f"  👛 Owner: {owner}")
    print(f"{'=' * 65}")

    failed = 0
    for i, p in enumerate(positions, 1):
        enriched = results.get(p.key)
        decimals = _decimals_for(network, p.pool_id)
        print(f"\n    {i}. {p.asset_symbol} — cap {p.position_key_id[:16]}...")
        if enriched is None:
            print("       ⚠️  Not reconciled")
            failed += 1
            continue
        if enriched.current_value is not None:
            print(f"       Current  : {format_balance(enriched.current_value, decimals, p.asset_symbol)}")
        if enriched.original_value is not None:
            print(f"       Supplied : {format_balance(enriched.original_value, decimals, p.asset_symbol)}")
        interest = enriched.interest_display(decimals)
        if interest is not None:
            print(f"       Interest : {interest}")
        elif enriched.is_loading:
            print("       Interest : ⏳ waiting on indexer")
        if enriched.state is ReconciliationState.FAILED:
            failed += 1
            print(f"       ❌ {enriched.last_error}")
        elif enriched.last_error is not None:
            print(f"       ⚠️  {enriched.last_error}")

    settled = sum(1 for r in results.values() if r.state is ReconciliationState.SETTLED)
    print(f"\n{'=' * 65}")
    print(f"  Settled: {settled}/{len(positions)}")
    print(f"{'=' * 65}")
    return failed == 0


async def cmd_referrals(
    asset: str, network: str = "mainnet", referral_ids: list[str] | None = None
) -> bool:
    """Print referral tracker state for a pool's referrals."""
    from position_indexer import PositionIndexer
    from share_math import format_balance
    from supply_reader import SupplyReader

    config = get_pool(network, asset)
    if config is None:
        assets = ", ".join(p.asset for p in get_pools_for_network(network))
        print(f"❌ Unknown asset {asset!r} on {network}. Available: {assets}")
        return False

    ids = list(referral_ids or [])
    if config.referral_id and config.referral_id not in ids:
        ids.insert(0, config.referral_id)
    if not ids:
        print(f"❌ No referral configured for {config.asset}; pass --referral 0x…")
        return False

    pools = await PositionIndexer(network).read_pools([config])
    pool = next(iter(pools.values()), None)
    if pool is None:
        print(f"❌ Could not read the {config.asset} margin pool")
        return False

    reader = SupplyReader(network)
    trackers = await reader.fetch_referral_trackers(pool, ids)

    print(f"\n📊 Referral Trackers — {config.asset} ({network})")
    print("=" * 55)
    for referral_id in ids:
        data = trackers.get(referral_id)
        print(f"\n  🔑 {referral_id}")
        if data is None:
            print("     ⚠️  Unavailable")
            continue
        print(f"     Shares   : {data.current_shares:,}")
        print(f"     Unclaimed: {format_balance(data.unclaimed_fees, config.decimals, config.asset)}")
    return len(trackers) == len(ids)
