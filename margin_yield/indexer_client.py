#!/usr/bin/env python3
"""
Margin Yield — DeepBook Indexer Client
=======================================

Async client for the DeepBook margin indexer HTTP API:

  GET /asset_supplied?margin_pool_id=…&supplier=…&limit=…
  GET /asset_withdrawn?margin_pool_id=…&supplier=…&limit=…

The indexer is eventually consistent: a deposit that is already visible
on chain may take a few checkpoints to appear here.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from margin_yield.central_config import EVENT_QUERY_LIMIT
from margin_yield.events import SUPPLY, WITHDRAW, LedgerEvent, decode_events

logger = logging.getLogger(__name__)


class IndexerError(RuntimeError):
    """Indexer answered with something other than a list of events."""


# ── Rate Limiter (CWE-770 mitigation) ────────────────────────────────────


class _RateLimiter:
    """Token-bucket rate limiter to respect API limits.

    CWE-770: Allocation of Resources Without Limits or Throttling.
    """

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            while True:
                now = time.monotonic()
                # Purge timestamps outside the current window
                self._timestamps = [t for t in self._timestamps if now - t < self._period]
                if len(self._timestamps) < self._max:
                    self._timestamps.append(now)
                    return
                # Wait until the oldest request expires, then re-check
                await asyncio.sleep(self._period - (now - self._timestamps[0]) + 0.1)


class IndexerClient:
    """
    Reads supply/withdraw history for one SupplierCap from the indexer.

    Usage:
        async with IndexerClient("https://deepbook-indexer.mainnet.mystenlabs.com") as idx:
            supplies = await idx.fetch_asset_supplied(pool_id, cap_id)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15,
        client: Optional[httpx.AsyncClient] = None,
        max_requests_per_minute: int = 240,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._limiter = _RateLimiter(max_requests_per_minute, 60)

    async def __aenter__(self) -> "IndexerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _session(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, verify=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_events(self, path: str, params: Dict[str, Any]) -> List[dict]:
        await self._limiter.acquire()
        url = f"{self.base_url}{path}"
        response = await self._session().get(url, params=params)
        response.raise_for_status()
        data = response.json()
        if data is None:
            return []
        if not isinstance(data, list):
            raise IndexerError(f"{path}: expected a list, got {type(data).__name__}")
        logger.debug("%s %s → %d rows", path, params.get("supplier", "")[:10], len(data))
        return data

    async def fetch_asset_supplied(
        self, pool_id: str, supplier: str, limit: int = EVENT_QUERY_LIMIT
    ) -> List[LedgerEvent]:
        """Deposits made with `supplier` (SupplierCap ID) into `pool_id`."""
        rows = await self._get_events(
            "/asset_supplied",
            {"margin_pool_id": pool_id, "supplier": supplier, "limit": limit},
        )
        return decode_events(rows, SUPPLY)

    async def fetch_asset_withdrawn(
        self, pool_id: str, supplier: str, limit: int = EVENT_QUERY_LIMIT
    ) -> List[LedgerEvent]:
        """Withdrawals made with `supplier` from `pool_id`."""
        rows = await self._get_events(
            "/asset_withdrawn",
            {"margin_pool_id": pool_id, "supplier": supplier, "limit": limit},
        )
        return decode_events(rows, WITHDRAW)
