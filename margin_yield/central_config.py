"""
Project Configuration — network endpoints, version, retry policy
=================================================================

Contains Sui RPC / indexer endpoints per network, the margin package IDs,
and the reconciliation retry budget.

Environment overrides:
  MARGIN_YIELD_RPC_URL              Sui JSON-RPC endpoint
  MARGIN_YIELD_API_URL              Indexer base URL
  MARGIN_YIELD_RETRY_MAX_ATTEMPTS   Cost-basis attempts before giving up
  MARGIN_YIELD_RETRY_INITIAL_DELAY  First backoff delay (seconds)
  MARGIN_YIELD_RETRY_MAX_DELAY      Backoff ceiling (seconds)
"""

import os
import re
from dataclasses import dataclass, replace
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

# Version: single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("margin-yield")
except PackageNotFoundError:
    # Dev / CI: package not installed, read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "Margin Yield"

# Maximum rows requested from the indexer per event query
EVENT_QUERY_LIMIT = 10_000

# Dev-inspect needs a sender but no signature: the zero address is enough
ZERO_SENDER = "0x" + "0" * 64

# Sui system Clock object, shared since genesis
CLOCK_OBJECT_ID = "0x6"
CLOCK_INITIAL_SHARED_VERSION = 1

DEFAULT_NETWORK = "mainnet"


@dataclass(frozen=True)
class NetworkConfig:
    """Endpoints and package for one Sui network."""

    name: str
    rpc_url: str
    indexer_url: str
    package_id: str
    explorer_url: str = ""
    timeout: int = 20  # seconds


NETWORKS: Mapping[str, NetworkConfig] = MappingProxyType(
    {
        "mainnet": NetworkConfig(
            name="mainnet",
            rpc_url="https://fullnode.mainnet.sui.io:443",
            indexer_url="https://deepbook-indexer.mainnet.mystenlabs.com",
            package_id="0x97d9473771b01f77b0940c589484184b49f6444627ec121314fae6a6d36fb86b",
            explorer_url="https://suivision.xyz",
        ),
        "testnet": NetworkConfig(
            name="testnet",
            rpc_url="https://fullnode.testnet.sui.io:443",
            indexer_url="https://deepbook-indexer.testnet.mystenlabs.com",
            package_id="0xb8620c24c9ea1a4a41e79613d2b3d1d93648d1bb6f6b789a7c8f261c94110e4b",
            explorer_url="https://testnet.suivision.xyz",
        ),
    }
)


def get_network_config(
    network: str = DEFAULT_NETWORK, env: Optional[Mapping[str, str]] = None
) -> NetworkConfig:
    """Resolve a network config, applying environment overrides."""
    if network not in NETWORKS:
        raise ValueError(
            f"Unsupported network: {network}. Available: {list(NETWORKS.keys())}"
        )
    env = os.environ if env is None else env
    cfg = NETWORKS[network]
    overrides = {}
    if env.get("MARGIN_YIELD_RPC_URL"):
        overrides["rpc_url"] = env["MARGIN_YIELD_RPC_URL"]
    if env.get("MARGIN_YIELD_API_URL"):
        overrides["indexer_url"] = env["MARGIN_YIELD_API_URL"].rstrip("/")
    return replace(cfg, **overrides) if overrides else cfg


# ── Retry Policy ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for positions waiting on the indexer.

    delay(attempt) = min(initial_delay * multiplier^(attempt-1), max_delay)
    """

    initial_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 5.0
    max_attempts: int = 10

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


def retry_policy_from_env(env: Optional[Mapping[str, str]] = None) -> RetryPolicy:
    """Build a RetryPolicy from MARGIN_YIELD_RETRY_* variables."""
    env = os.environ if env is None else env
    policy = RetryPolicy()
    overrides = {}
    if env.get("MARGIN_YIELD_RETRY_MAX_ATTEMPTS"):
        overrides["max_attempts"] = int(env["MARGIN_YIELD_RETRY_MAX_ATTEMPTS"])
    if env.get("MARGIN_YIELD_RETRY_INITIAL_DELAY"):
        overrides["initial_delay"] = float(env["MARGIN_YIELD_RETRY_INITIAL_DELAY"])
    if env.get("MARGIN_YIELD_RETRY_MAX_DELAY"):
        overrides["max_delay"] = float(env["MARGIN_YIELD_RETRY_MAX_DELAY"])
    return replace(policy, **overrides) if overrides else policy
