#!/usr/bin/env python3
"""
Margin Yield -- DeepBook Margin Supply Tracker
===============================================

Interest earned on DeepBook margin supply positions (Sui).

Usage:
  python run.py positions <owner>                         List supply positions
  python run.py positions <owner> --network testnet       Same, on testnet
  python run.py enrich    <owner>                         Current value, cost basis, interest
  python run.py enrich    <owner> --timeout 30            Stop waiting on the indexer after 30s
  python run.py referrals --asset SUI                     Referral tracker for the SUI pool
  python run.py referrals --asset USDC --referral <0x…>   Extra referral IDs
  python run.py info                                      System overview

Sources:
  Sui JSON-RPC   : https://docs.sui.io/sui-api-ref
  DeepBook docs  : https://docs.sui.io/standards/deepbookv3
"""

import sys
import asyncio
import argparse
from pathlib import Path

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from margin_yield.central_config import DEFAULT_NETWORK, NETWORKS, PROJECT_VERSION  # noqa: E402
from margin_yield.commands import (  # noqa: E402
    cmd_enrich,
    cmd_info,
    cmd_positions,
    cmd_referrals,
)
from margin_yield.logging_config import setup_logging  # noqa: E402


# ── CLI Parser ────────────────────────────────────────────────────────────


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="margin-yield",
        description=f"Margin Yield v{PROJECT_VERSION} — DeepBook margin supply tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py positions 0xOWNER                  Scan the wallet's SupplierCaps
  python run.py enrich    0xOWNER                  Interest earned per position
  python run.py enrich    0xOWNER --network testnet
  python run.py referrals --asset SUI              Referral shares + unclaimed fees
  python run.py info                               Networks, pools, retry policy

Environment:
  MARGIN_YIELD_RPC_URL / MARGIN_YIELD_API_URL      Override endpoints
  MARGIN_YIELD_RETRY_MAX_ATTEMPTS                  Cost-basis attempts (default 10)
  MARGIN_YIELD_DEBUG=1                             Verbose logging
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"Margin Yield v{PROJECT_VERSION}"
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    networks = ", ".join(NETWORKS.keys())

    positions_p = sub.add_parser("positions", help="List margin supply positions")
    positions_p.add_argument("owner", help="Owner address (0x…)")
    positions_p.add_argument(
        "--network",
        type=str,
        default=DEFAULT_NETWORK,
        help=f"Network: {networks} (default: {DEFAULT_NETWORK})",
    )

    enrich_p = sub.add_parser(
        "enrich", help="Reconcile positions and show interest earned"
    )
    enrich_p.add_argument("owner", help="Owner address (0x…)")
    enrich_p.add_argument(
        "--network",
        type=str,
        default=DEFAULT_NETWORK,
        help=f"Network: {networks} (default: {DEFAULT_NETWORK})",
    )
    enrich_p.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Seconds to keep retrying while the indexer catches up (default: 60)",
    )

    referrals_p = sub.add_parser("referrals", help="Referral tracker state for a pool")
    referrals_p.add_argument(
        "--asset", type=str, default="SUI", help="Pool asset symbol (default: SUI)"
    )
    referrals_p.add_argument(
        "--network",
        type=str,
        default=DEFAULT_NETWORK,
        help=f"Network: {networks} (default: {DEFAULT_NETWORK})",
    )
    referrals_p.add_argument(
        "--referral",
        action="append",
        default=[],
        help="Additional referral object ID (repeatable)",
    )

    sub.add_parser("info", help="System & architecture info")

    return parser


# ── Main ──────────────────────────────────────────────────────────────────


def main() -> int:
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    setup_logging()

    if args.command == "info":
        cmd_info()
        return 0

    if getattr(args, "network", None) not in NETWORKS:
        print(f"❌ Unsupported network: {args.network}. Available: {', '.join(NETWORKS)}")
        return 1

    if args.command == "positions":
        ok = asyncio.run(cmd_positions(owner=args.owner, network=args.network))
        return 0 if ok else 1

    if args.command == "enrich":
        ok = asyncio.run(
            cmd_enrich(owner=args.owner, network=args.network, timeout=args.timeout)
        )
        return 0 if ok else 1

    if args.command == "referrals":
        ok = asyncio.run(
            cmd_referrals(
                asset=args.asset,
                network=args.network,
                referral_ids=args.referral,
            )
        )
        return 0 if ok else 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)
