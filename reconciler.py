#!/usr/bin/env python3
"""
Position Reconciler — Interest Earned from Two Feeds
=====================================================

Combines two sources that update on different schedules:

  • On chain (fast, authoritative): current supply value of each position,
    read for ALL positions in one batched simulated call.
  • Indexer (slow, eventually consistent): deposit/withdraw history, from
    which the cost basis of the current shares is derived.

  interest_earned = current_value − original_value

State machine per position:
───────────────────────────
  LOADING ──(value + cost basis)──────────────→ SETTLED
     │
     ├──(value, indexer has no deposits yet)──→ WAITING_ON_INDEX
     │        tick() at deadline re-runs ONLY the cost-basis fetch
     │        ├──(cost basis arrives)────────→ SETTLED
     │        └──(attempt budget spent)──────→ EXHAUSTED  (neutral "—")
     │
     └──(exception / value unavailable)──────→ FAILED

  Backoff: delay = min(initial × multiplier^(attempt−1), max_delay)
  (1s, 1.5s, 2.25s, … capped at 5s; 10 attempts by default).

Caching:
────────
  Entries are keyed on (pool_id, position_key_id) and valid for one
  share_count. A SETTLED entry with unchanged shares is skipped by later
  passes. A share change starts a new epoch: the old entry and its retry
  state are dropped and anything still in flight for the old epoch is
  ignored when it returns.

Concurrency:
────────────
  One pass at a time; a pass requested while another runs is dropped
  (reconcile() returns None). Retries are driven by tick() and never wait
  on a pass. Results are published as a fresh read-only mapping after
  every settle step.
"""

import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Union,
)

from cost_basis import LedgerInconsistencyError, fetch_original_value
from margin_yield.central_config import RetryPolicy
from margin_yield.models import Position, PositionKey
from share_math import format_interest

logger = logging.getLogger(__name__)

UNKNOWN_PLACEHOLDER = "—"

ValueFetcher = Callable[[Sequence[Position]], Awaitable[Mapping[PositionKey, int]]]
CostBasisFetcher = Callable[[Position], Awaitable[Optional[int]]]


class ReconciliationState(str, Enum):
    LOADING = "loading"
    WAITING_ON_INDEX = "waiting_on_index"
    SETTLED = "settled"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class CurrentValueUnavailable(RuntimeError):
    """The batched on-chain read returned nothing for this position."""


@dataclass(frozen=True)
class EnrichedPosition:
    """Reconciled view of one position, as published to readers."""

    position: Position
    state: ReconciliationState
    current_value: Optional[int] = None
    original_value: Optional[int] = None
    last_error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def interest_earned(self) -> Optional[int]:
        if self.current_value is None or self.original_value is None:
            return None
        return self.current_value - self.original_value

    @property
    def is_loading(self) -> bool:
        return self.state in (
            ReconciliationState.LOADING,
            ReconciliationState.WAITING_ON_INDEX,
        )

    def interest_display(self, decimals: int) -> Optional[str]:
        """Interest string for display; None while still loading or failed."""
        if self.state is ReconciliationState.EXHAUSTED:
            return UNKNOWN_PLACEHOLDER
        interest = self.interest_earned
        if interest is None:
            return None
        return format_interest(interest, decimals, self.position.asset_symbol)


@dataclass
class RetryState:
    attempt: int
    next_deadline: float


@dataclass
class _CacheEntry:
    position: Position
    epoch: int
    result: EnrichedPosition
    retry: Optional[RetryState] = None


class EnrichmentCache:
    """
    Reconciliation results owned by one Reconciler.

    An entry is valid only for the share_count it was created with.
    """

    def __init__(self):
        self._entries: Dict[PositionKey, _CacheEntry] = {}
        self._epochs = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: PositionKey) -> bool:
        return key in self._entries

    def items(self) -> Iterator:
        return iter(self._entries.items())

    def entry(self, key: PositionKey) -> Optional[_CacheEntry]:
        return self._entries.get(key)

    def lookup(self, position: Position) -> Optional[_CacheEntry]:
        """Entry for `position` if it was made for the same share count."""
        entry = self._entries.get(position.key)
        if entry is None or entry.position.share_count != position.share_count:
            return None
        return entry

    def start_epoch(self, position: Position) -> int:
        """Replace any entry for this key with a fresh LOADING one."""
        epoch = next(self._epochs)
        self._entries[position.key] = _CacheEntry(
            position=position,
            epoch=epoch,
            result=EnrichedPosition(position, ReconciliationState.LOADING),
        )
        return epoch

    def is_current(self, key: PositionKey, epoch: int) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.epoch == epoch

    def discard(self, key: PositionKey) -> None:
        self._entries.pop(key, None)

    def retain(self, keys: Set[PositionKey]) -> List[PositionKey]:
        """Drop every entry whose key is not in `keys`. Returns dropped keys."""
        dropped = [k for k in self._entries if k not in keys]
        for k in dropped:
            del self._entries[k]
        return dropped

    def due(self, now: float, exclude: Set[PositionKey] = frozenset()) -> List[_CacheEntry]:
        return [
            e
            for k, e in self._entries.items()
            if e.retry is not None and e.retry.next_deadline <= now and k not in exclude
        ]

    def next_deadline(self) -> Optional[float]:
        deadlines = [e.retry.next_deadline for e in self._entries.values() if e.retry]
        return min(deadlines) if deadlines else None

    def clear(self) -> None:
        self._entries.clear()


class Reconciler:
    """
    Enriches positions with current value, cost basis and interest earned.

    Usage:
        reconciler = Reconciler.from_clients(reader, indexer)
        await reconciler.reconcile(positions)      # one pass
        await reconciler.tick()                     # fire due retries
        reconciler.results[(pool_id, cap_id)]       # EnrichedPosition
    """

    def __init__(
        self,
        value_fetcher: ValueFetcher,
        cost_basis_fetcher: CostBasisFetcher,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch_values = value_fetcher
        self._fetch_cost_basis = cost_basis_fetcher
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._cache = EnrichmentCache()
        self._published: Mapping[PositionKey, EnrichedPosition] = MappingProxyType({})
        self._pass_in_flight = False
        self._retrying: Set[PositionKey] = set()
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_clients(cls, reader, indexer, policy: Optional[RetryPolicy] = None, **kwargs):
        """Wire a SupplyReader and an IndexerClient into a Reconciler."""

        async def cost_basis(position: Position) -> Optional[int]:
            return await fetch_original_value(
                indexer, position.pool_id, position.position_key_id, position.share_count
            )

        return cls(reader.fetch_position_values, cost_basis, policy=policy, **kwargs)

    # ── Published view ───────────────────────────────────────────────

    @property
    def results(self) -> Mapping[PositionKey, EnrichedPosition]:
        """Latest immutable snapshot of every tracked position."""
        return self._published

    @property
    def pass_in_flight(self) -> bool:
        return self._pass_in_flight

    def get(self, position: Union[Position, PositionKey]) -> Optional[EnrichedPosition]:
        key = position.key if isinstance(position, Position) else position
        return self._published.get(key)

    def pending_retries(self) -> Dict[PositionKey, RetryState]:
        return {k: replace(e.retry) for k, e in self._cache.items() if e.retry}

    def _publish(self) -> None:
        self._published = MappingProxyType(
            {key: entry.result for key, entry in self._cache.items()}
        )

    # ── Pass ─────────────────────────────────────────────────────────

    def _needs_fetch(self, position: Position) -> bool:
        entry = self._cache.lookup(position)
        if entry is None:
            return True
        # SETTLED is final for this epoch and WAITING belongs to the retry loop.
        # Passes never overlap, so a LOADING entry here was left by a
        # cancelled pass.
        return entry.result.state in (
            ReconciliationState.LOADING,
            ReconciliationState.EXHAUSTED,
            ReconciliationState.FAILED,
        )

    async def _fetch_values_safely(self, positions: Sequence[Position]) -> Mapping[PositionKey, int]:
        try:
            return await self._fetch_values(positions)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Batched value fetch failed: %s", exc)
            return {}

    async def _fetch_cost_basis_safely(self, position: Position) -> Union[int, None, Exception]:
        try:
            return await self._fetch_cost_basis(position)
        except Exception as exc:  # noqa: BLE001
            return exc

    async def reconcile(
        self, positions: Sequence[Position]
    ) -> Optional[Mapping[PositionKey, EnrichedPosition]]:
        """
        Run one reconciliation pass over `positions`.

        Returns:
            The published snapshot, or None if a pass was already running
            (the request is dropped, not queued) or the reconciler was
            cancelled meanwhile.
        """
        if self._pass_in_flight:
            logger.debug("Reconciliation pass already in flight; request dropped")
            return None

        self._pass_in_flight = True
        generation = self._generation
        try:
            current = {p.key: p for p in positions}
            for key in self._cache.retain(set(current)):
                logger.debug("Position %s left the set; dropped", key[1][:16])

            work = [p for p in current.values() if self._needs_fetch(p)]
            if not work:
                self._publish()
                return self.results

            epochs = {p.key: self._cache.start_epoch(p) for p in work}
            self._publish()
            logger.debug("Pass: %d of %d position(s) need data", len(work), len(current))

            values, *outcomes = await asyncio.gather(
                self._fetch_values_safely(work),
                *(self._fetch_cost_basis_safely(p) for p in work),
            )
            if generation != self._generation:
                return None

            now = self._clock()
            for position, outcome in zip(work, outcomes):
                if not self._cache.is_current(position.key, epochs[position.key]):
                    continue
                self._merge(position, values.get(position.key), outcome, now)
            self._publish()
            return self.results
        finally:
            self._pass_in_flight = False

    def _merge(
        self,
        position: Position,
        current_value: Optional[int],
        outcome: Union[int, None, Exception],
        now: float,
    ) -> None:
        entry = self._cache.entry(position.key)
        if isinstance(outcome, Exception) and not isinstance(outcome, LedgerInconsistencyError):
            logger.warning("Cost basis for %s failed: %s", position.position_key_id[:16], outcome)
            self._fail(entry, outcome, current_value=current_value, attempts=1)
            return
        if current_value is None:
            original = outcome if isinstance(outcome, int) else None
            self._fail(
                entry,
                CurrentValueUnavailable(f"No on-chain value for {position.position_key_id}"),
                original_value=original,
                attempts=1,
            )
            return
        entry.result = replace(entry.result, current_value=current_value)
        self._apply_cost_basis(entry, outcome, attempt=1, now=now)

    def _fail(self, entry: _CacheEntry, error: Exception, attempts: int, **values: Any) -> None:
        entry.retry = None
        entry.result = replace(
            entry.result,
            state=ReconciliationState.FAILED,
            last_error=error,
            attempts=attempts,
            **values,
        )

    def _apply_cost_basis(
        self, entry: _CacheEntry, outcome: Union[int, None, Exception], attempt: int, now: float
    ) -> None:
        """Settle, schedule a retry, or give up, after cost-basis attempt `attempt`."""
        error: Optional[Exception] = None
        original: Optional[int] = None
        if isinstance(outcome, LedgerInconsistencyError):
            logger.warning("Data integrity: %s", outcome)
            error = outcome
        else:
            original = outcome

        key_id = entry.position.position_key_id[:16]
        if original is not None:
            entry.retry = None
            entry.result = replace(
                entry.result,
                state=ReconciliationState.SETTLED,
                original_value=original,
                last_error=None,
                attempts=attempt,
            )
            return

        if attempt >= self.policy.max_attempts:
            entry.retry = None
            entry.result = replace(
                entry.result,
                state=ReconciliationState.EXHAUSTED,
                last_error=error,
                attempts=attempt,
            )
            logger.info("Indexer never caught up for %s after %d attempts", key_id, attempt)
            return

        delay = self.policy.delay_for(attempt)
        entry.retry = RetryState(attempt=attempt, next_deadline=now + delay)
        entry.result = replace(
            entry.result,
            state=ReconciliationState.WAITING_ON_INDEX,
            last_error=error,
            attempts=attempt,
        )
        logger.debug("Waiting on indexer for %s; retry %d in %.2fs", key_id, attempt + 1, delay)

    # ── Retries ──────────────────────────────────────────────────────

    async def tick(self, now: Optional[float] = None) -> int:
        """
        Re-run the cost-basis fetch for every position whose deadline passed.

        Returns:
            Number of retries started.
        """
        now = self._clock() if now is None else now
        due = self._cache.due(now, exclude=self._retrying)
        if not due:
            return 0
        generation = self._generation
        await asyncio.gather(
            *(self._retry(e.position, e.epoch, e.retry.attempt, generation) for e in due)
        )
        return len(due)

    async def _retry(self, position: Position, epoch: int, attempt: int, generation: int) -> None:
        key = position.key
        self._retrying.add(key)
        try:
            outcome = await self._fetch_cost_basis_safely(position)
            if generation != self._generation or not self._cache.is_current(key, epoch):
                logger.debug("Discarding stale retry for %s", position.position_key_id[:16])
                return
            entry = self._cache.entry(key)
            if isinstance(outcome, Exception) and not isinstance(outcome, LedgerInconsistencyError):
                logger.warning(
                    "Cost basis retry for %s failed: %s", position.position_key_id[:16], outcome
                )
                self._fail(entry, outcome, attempts=attempt + 1)
            else:
                self._apply_cost_basis(entry, outcome, attempt + 1, self._clock())
            self._publish()
        finally:
            self._retrying.discard(key)

    async def reconcile_until_settled(
        self, positions: Sequence[Position], timeout: Optional[float] = None
    ) -> Mapping[PositionKey, EnrichedPosition]:
        """One pass, then drive retries until nothing is waiting on the indexer."""
        started = self._clock()
        await self.reconcile(positions)
        while True:
            deadline = self._cache.next_deadline()
            if deadline is None:
                return self.results
            now = self._clock()
            if timeout is not None and now - started >= timeout:
                logger.info("Stopped waiting on the indexer after %.1fs", timeout)
                return self.results
            if deadline > now:
                await asyncio.sleep(deadline - now)
            await self.tick()

    # ── Background loop ──────────────────────────────────────────────

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, load_positions: Callable[[], Any]) -> None:
        try:
            positions = load_positions()
            if inspect.isawaitable(positions):
                positions = await positions
            await self.reconcile(positions)
        except Exception:  # noqa: BLE001
            logger.exception("Refresh failed")

    async def run_forever(
        self,
        load_positions: Callable[[], Any],
        refresh_interval: float = 30.0,
        tick_interval: float = 0.25,
    ) -> None:
        """
        Periodically reconcile the position set and fire due retries.

        `load_positions` may be sync or async. Passes that overlap a
        running one are dropped by reconcile().
        """
        next_refresh = self._clock()
        try:
            while True:
                now = self._clock()
                if now >= next_refresh:
                    next_refresh = now + refresh_interval
                    self._spawn(self._refresh(load_positions))
                self._spawn(self.tick(now))
                await asyncio.sleep(tick_interval)
        finally:
            for task in list(self._background):
                task.cancel()

    def start(self, load_positions: Callable[[], Any], **kwargs) -> asyncio.Task:
        """Launch run_forever as a task on the running loop."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("Reconciler already running")
        self._task = asyncio.ensure_future(self.run_forever(load_positions, **kwargs))
        return self._task

    def cancel(self) -> None:
        """
        Stop background work and discard every result and retry.

        Anything still in flight is ignored when it completes.
        """
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None
        for task in list(self._background):
            task.cancel()
        self._cache.clear()
        self._retrying.clear()
        self._publish()
