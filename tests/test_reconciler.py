"""
Reconciler Tests — Two-Feed State Machine
==========================================

Drives reconciler.Reconciler with in-memory feeds and a manual clock:
  - pass batching and idempotence
  - share-count epochs
  - bounded retries while the indexer lags
  - failure isolation, dropped overlapping passes, cancellation

All tests are offline.
"""

import asyncio

import pytest

from cost_basis import LedgerInconsistencyError
from margin_yield.central_config import RetryPolicy
from margin_yield.events import LedgerEvent
from margin_yield.models import Position
from reconciler import (
    UNKNOWN_PLACEHOLDER,
    CurrentValueUnavailable,
    EnrichedPosition,
    EnrichmentCache,
    ReconciliationState,
    Reconciler,
)

POOL = "0x" + "a" * 64
CAP_1 = "0x" + "1" * 64
CAP_2 = "0x" + "2" * 64

SETTLED = ReconciliationState.SETTLED
WAITING = ReconciliationState.WAITING_ON_INDEX
EXHAUSTED = ReconciliationState.EXHAUSTED
FAILED = ReconciliationState.FAILED


def position(cap=CAP_1, shares=700, symbol="SUI"):
    return Position(POOL, cap, symbol, shares, "0x2::sui::SUI")


class ManualClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeFeeds:
    """
    In-memory value and cost-basis feeds with call counters.

    cost[key] may be an int, None, an exception, or a list consumed one
    outcome per call (the last one repeats).
    """

    def __init__(self, values=None, cost=None):
        self.values = dict(values or {})
        self.cost = dict(cost or {})
        self.value_calls = []
        self.cost_calls = []

    async def fetch_values(self, positions):
        self.value_calls.append([p.key for p in positions])
        return {p.key: self.values[p.key] for p in positions if p.key in self.values}

    async def fetch_cost_basis(self, pos):
        self.cost_calls.append(pos.key)
        outcome = self.cost.get(pos.key)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make(feeds, policy=None, clock=None):
    return Reconciler(
        feeds.fetch_values,
        feeds.fetch_cost_basis,
        policy=policy,
        clock=clock or ManualClock(),
    )


def drain_retries(reconciler, clock, limit=50):
    """Advance the clock to each deadline and tick until no retry is left."""
    ticks = 0
    while reconciler.pending_retries() and ticks < limit:
        clock.now = min(r.next_deadline for r in reconciler.pending_retries().values())
        asyncio.run(reconciler.tick())
        ticks += 1
    return ticks


# ═══════════════════════════════════════════════════════════════════════════
# EnrichedPosition
# ═══════════════════════════════════════════════════════════════════════════


class TestEnrichedPosition:
    def test_interest(self):
        e = EnrichedPosition(position(), SETTLED, current_value=840, original_value=700)
        assert e.interest_earned == 140
        assert e.interest_display(0) == "140 SUI"

    def test_unknown_while_loading(self):
        e = EnrichedPosition(position(), ReconciliationState.LOADING, current_value=840)
        assert e.interest_earned is None
        assert e.interest_display(9) is None
        assert e.is_loading

    def test_exhausted_shows_placeholder(self):
        e = EnrichedPosition(position(), EXHAUSTED, current_value=840)
        assert e.interest_display(9) == UNKNOWN_PLACEHOLDER


class TestEnrichmentCache:
    def test_lookup_requires_same_shares(self):
        cache = EnrichmentCache()
        cache.start_epoch(position(shares=700))
        assert cache.lookup(position(shares=700)) is not None
        assert cache.lookup(position(shares=701)) is None

    def test_new_epoch_invalidates_old(self):
        cache = EnrichmentCache()
        old = cache.start_epoch(position())
        new = cache.start_epoch(position(shares=800))
        assert not cache.is_current(position().key, old)
        assert cache.is_current(position().key, new)

    def test_retain(self):
        cache = EnrichmentCache()
        cache.start_epoch(position(CAP_1))
        cache.start_epoch(position(CAP_2))
        assert cache.retain({position(CAP_1).key}) == [position(CAP_2).key]
        assert len(cache) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Reconciliation pass
# ═══════════════════════════════════════════════════════════════════════════


class TestReconcilePass:
    def test_settles_scenario(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: 700})
        rec = make(feeds)
        results = asyncio.run(rec.reconcile([p]))

        e = results[p.key]
        assert e.state is SETTLED
        assert (e.current_value, e.original_value, e.interest_earned) == (840, 700, 140)
        assert e.attempts == 1
        assert rec.pending_retries() == {}

    def test_one_value_call_for_all_positions(self):
        ps = [position(CAP_1), position(CAP_2, shares=10)]
        feeds = FakeFeeds({p.key: 1 for p in ps}, {p.key: 1 for p in ps})
        asyncio.run(make(feeds).reconcile(ps))
        assert len(feeds.value_calls) == 1
        assert sorted(feeds.value_calls[0]) == sorted(p.key for p in ps)
        assert len(feeds.cost_calls) == 2

    def test_idempotent_when_settled(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: 700})
        rec = make(feeds)
        asyncio.run(rec.reconcile([p]))
        asyncio.run(rec.reconcile([p]))
        asyncio.run(rec.reconcile([position()]))
        assert len(feeds.value_calls) == 1
        assert len(feeds.cost_calls) == 1

    def test_share_change_forces_refetch(self):
        p = position(shares=700)
        feeds = FakeFeeds({p.key: 840}, {p.key: 700})
        rec = make(feeds)
        asyncio.run(rec.reconcile([p]))

        feeds.values[p.key] = 960
        feeds.cost[p.key] = 800
        results = asyncio.run(rec.reconcile([p.with_shares(800)]))

        assert len(feeds.value_calls) == 2
        assert results[p.key].position.share_count == 800
        assert results[p.key].interest_earned == 160

    def test_removed_positions_dropped(self):
        a, b = position(CAP_1), position(CAP_2)
        feeds = FakeFeeds({a.key: 1, b.key: 1}, {a.key: 1, b.key: 1})
        rec = make(feeds)
        asyncio.run(rec.reconcile([a, b]))
        results = asyncio.run(rec.reconcile([a]))
        assert set(results) == {a.key}

    def test_snapshot_is_read_only(self):
        p = position()
        rec = make(FakeFeeds({p.key: 1}, {p.key: 1}))
        results = asyncio.run(rec.reconcile([p]))
        with pytest.raises(TypeError):
            results[p.key] = None

    def test_snapshot_replaced_not_mutated(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: 700})
        rec = make(feeds)
        before = rec.results
        asyncio.run(rec.reconcile([p]))
        assert p.key not in before
        assert rec.get(p).state is SETTLED
        assert rec.get(p.key) is rec.results[p.key]

    def test_empty_position_set(self):
        feeds = FakeFeeds()
        results = asyncio.run(make(feeds).reconcile([]))
        assert dict(results) == {}
        assert feeds.value_calls == []


class TestFailures:
    def test_failure_isolated_per_position(self):
        a, b = position(CAP_1), position(CAP_2)
        feeds = FakeFeeds({a.key: 840, b.key: 50}, {a.key: RuntimeError("boom"), b.key: 40})
        results = asyncio.run(make(feeds).reconcile([a, b]))

        assert results[a.key].state is FAILED
        assert isinstance(results[a.key].last_error, RuntimeError)
        assert results[a.key].current_value == 840
        assert results[b.key].state is SETTLED
        assert results[b.key].interest_earned == 10

    def test_missing_current_value_fails(self):
        p = position()
        feeds = FakeFeeds({}, {p.key: 700})
        results = asyncio.run(make(feeds).reconcile([p]))
        assert results[p.key].state is FAILED
        assert isinstance(results[p.key].last_error, CurrentValueUnavailable)
        assert results[p.key].original_value == 700
        assert results[p.key].interest_earned is None

    def test_value_feed_exception_degrades_to_unavailable(self):
        p = position()
        feeds = FakeFeeds({}, {p.key: 700})

        async def broken(positions):
            raise ConnectionError("rpc down")

        rec = Reconciler(broken, feeds.fetch_cost_basis, clock=ManualClock())
        results = asyncio.run(rec.reconcile([p]))
        assert results[p.key].state is FAILED
        assert isinstance(results[p.key].last_error, CurrentValueUnavailable)

    def test_failed_position_retried_next_pass(self):
        p = position()
        feeds = FakeFeeds({}, {p.key: 700})
        rec = make(feeds)
        asyncio.run(rec.reconcile([p]))
        feeds.values[p.key] = 840
        results = asyncio.run(rec.reconcile([p]))
        assert results[p.key].state is SETTLED
        assert len(feeds.value_calls) == 2

    def test_ledger_inconsistency_kept_as_pending(self):
        p = position()
        error = LedgerInconsistencyError(CAP_1, -50, -50)
        feeds = FakeFeeds({p.key: 840}, {p.key: error})
        rec = make(feeds)
        results = asyncio.run(rec.reconcile([p]))
        assert results[p.key].state is WAITING
        assert results[p.key].last_error is error
        assert p.key in rec.pending_retries()


# ═══════════════════════════════════════════════════════════════════════════
# Retries
# ═══════════════════════════════════════════════════════════════════════════


class TestRetries:
    def test_waiting_then_settled_by_tick(self):
        p = position()
        clock = ManualClock(100.0)
        feeds = FakeFeeds({p.key: 840}, {p.key: [None, 700]})
        rec = make(feeds, clock=clock)

        results = asyncio.run(rec.reconcile([p]))
        assert results[p.key].state is WAITING
        assert results[p.key].current_value == 840
        assert results[p.key].is_loading
        retry = rec.pending_retries()[p.key]
        assert (retry.attempt, retry.next_deadline) == (1, 101.0)

        assert asyncio.run(rec.tick()) == 0  # not due yet
        clock.now = 101.0
        assert asyncio.run(rec.tick()) == 1

        e = rec.get(p)
        assert e.state is SETTLED
        assert e.interest_earned == 140
        assert e.attempts == 2
        assert len(feeds.value_calls) == 1  # retries only hit the indexer
        assert rec.pending_retries() == {}

    def test_waiting_position_not_refetched_by_pass(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = make(feeds)
        asyncio.run(rec.reconcile([p]))
        asyncio.run(rec.reconcile([p]))
        assert len(feeds.value_calls) == 1
        assert len(feeds.cost_calls) == 1

    def test_backoff_schedule(self):
        p = position()
        clock = ManualClock(0.0)
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = make(feeds, clock=clock)
        asyncio.run(rec.reconcile([p]))

        deadlines = []
        while rec.pending_retries():
            deadline = rec.pending_retries()[p.key].next_deadline
            deadlines.append(deadline - clock.now)
            clock.now = deadline
            asyncio.run(rec.tick())
        assert deadlines == [1.0, 1.5, 2.25, 3.375, 5.0, 5.0, 5.0, 5.0, 5.0]

    def test_retry_bound_exhausts(self):
        p = position()
        clock = ManualClock()
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = make(feeds, clock=clock)
        asyncio.run(rec.reconcile([p]))
        drain_retries(rec, clock)

        e = rec.get(p)
        assert e.state is EXHAUSTED
        assert e.attempts == 10
        assert len(feeds.cost_calls) == 10
        assert rec.pending_retries() == {}
        assert e.interest_display(9) == UNKNOWN_PLACEHOLDER

        clock.now += 1000
        assert asyncio.run(rec.tick()) == 0

    def test_custom_budget(self):
        p = position()
        clock = ManualClock()
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = make(feeds, policy=RetryPolicy(max_attempts=3), clock=clock)
        asyncio.run(rec.reconcile([p]))
        drain_retries(rec, clock)
        assert rec.get(p).state is EXHAUSTED
        assert len(feeds.cost_calls) == 3

    def test_single_attempt_budget(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = make(feeds, policy=RetryPolicy(max_attempts=1))
        results = asyncio.run(rec.reconcile([p]))
        assert results[p.key].state is EXHAUSTED
        assert rec.pending_retries() == {}

    def test_exhausted_retried_by_next_pass(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = make(feeds, policy=RetryPolicy(max_attempts=1))
        asyncio.run(rec.reconcile([p]))
        feeds.cost[p.key] = 700
        results = asyncio.run(rec.reconcile([p]))
        assert results[p.key].state is SETTLED

    def test_retry_hard_failure(self):
        p = position()
        clock = ManualClock()
        feeds = FakeFeeds({p.key: 840}, {p.key: [None, TimeoutError("indexer slow")]})
        rec = make(feeds, clock=clock)
        asyncio.run(rec.reconcile([p]))
        drain_retries(rec, clock)
        e = rec.get(p)
        assert e.state is FAILED
        assert isinstance(e.last_error, TimeoutError)
        assert e.current_value == 840

    def test_independent_retry_timers(self):
        a, b = position(CAP_1), position(CAP_2)
        clock = ManualClock(0.0)
        feeds = FakeFeeds({a.key: 10, b.key: 20}, {a.key: [None, 5], b.key: None})
        rec = make(feeds, clock=clock)
        asyncio.run(rec.reconcile([a, b]))
        clock.now = 1.0
        asyncio.run(rec.tick())
        assert rec.get(a).state is SETTLED
        assert rec.get(b).state is WAITING
        assert rec.pending_retries()[b.key].attempt == 2


# ═══════════════════════════════════════════════════════════════════════════
# Concurrency & cancellation
# ═══════════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_overlapping_pass_dropped(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: 700})

        async def scenario():
            gate = asyncio.Event()

            async def slow_values(positions):
                await gate.wait()
                return await feeds.fetch_values(positions)

            rec = Reconciler(slow_values, feeds.fetch_cost_basis, clock=ManualClock())
            first = asyncio.ensure_future(rec.reconcile([p]))
            await asyncio.sleep(0)
            assert rec.pass_in_flight
            assert rec.get(p).state is ReconciliationState.LOADING
            dropped = await rec.reconcile([p])
            gate.set()
            return dropped, await first

        dropped, results = asyncio.run(scenario())
        assert dropped is None
        assert results[p.key].state is SETTLED
        assert len(feeds.value_calls) == 1

    def test_stale_retry_discarded_after_share_change(self):
        old = position(shares=1000)
        new = old.with_shares(800)
        clock = ManualClock(0.0)

        async def scenario():
            gate = asyncio.Event()
            calls = {"old": 0}

            async def values(positions):
                return {p.key: 900 for p in positions}

            async def cost(pos):
                if pos.share_count == 1000:
                    calls["old"] += 1
                    if calls["old"] > 1:
                        await gate.wait()
                        return 123  # stale answer for the old epoch
                    return None
                return 800

            rec = Reconciler(values, cost, clock=clock)
            await rec.reconcile([old])
            clock.now = 1.0
            retry = asyncio.ensure_future(rec.tick())
            await asyncio.sleep(0)
            await rec.reconcile([new])
            gate.set()
            await retry
            return rec.get(new)

        e = asyncio.run(scenario())
        assert e.state is SETTLED
        assert e.position.share_count == 800
        assert e.original_value == 800

    def test_cancel_clears_results_and_retries(self):
        p = position()
        clock = ManualClock()
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = make(feeds, clock=clock)
        asyncio.run(rec.reconcile([p]))
        assert rec.pending_retries()

        rec.cancel()
        assert dict(rec.results) == {}
        assert rec.pending_retries() == {}
        clock.now += 100
        assert asyncio.run(rec.tick()) == 0

    def test_cancel_during_pass_discards_result(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: 700})

        async def scenario():
            gate = asyncio.Event()

            async def slow_values(positions):
                await gate.wait()
                return await feeds.fetch_values(positions)

            rec = Reconciler(slow_values, feeds.fetch_cost_basis, clock=ManualClock())
            pending = asyncio.ensure_future(rec.reconcile([p]))
            await asyncio.sleep(0)
            rec.cancel()
            gate.set()
            return rec, await pending

        rec, result = asyncio.run(scenario())
        assert result is None
        assert dict(rec.results) == {}
        assert not rec.pass_in_flight

    def test_timed_out_pass_is_refetched_by_next_pass(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: 700})

        async def scenario():
            stalled = {"first": True}

            async def values(positions):
                if stalled.pop("first", False):
                    await asyncio.sleep(10)
                return await feeds.fetch_values(positions)

            rec = Reconciler(values, feeds.fetch_cost_basis, clock=ManualClock())
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(rec.reconcile([p]), 0.05)
            assert not rec.pass_in_flight
            assert rec.get(p).state is ReconciliationState.LOADING
            return await rec.reconcile([p])

        results = asyncio.run(scenario())
        e = results[p.key]
        assert e.state is SETTLED
        assert (e.current_value, e.original_value) == (840, 700)
        assert len(feeds.value_calls) == 1


class TestDriving:
    def test_reconcile_until_settled(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: [None, None, 700]})
        rec = Reconciler(
            feeds.fetch_values,
            feeds.fetch_cost_basis,
            policy=RetryPolicy(initial_delay=0.001, max_delay=0.001),
        )
        results = asyncio.run(rec.reconcile_until_settled([p], timeout=5))
        assert results[p.key].state is SETTLED
        assert results[p.key].attempts == 3

    def test_reconcile_until_settled_times_out(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: None})
        rec = Reconciler(
            feeds.fetch_values,
            feeds.fetch_cost_basis,
            policy=RetryPolicy(initial_delay=0.01, max_delay=0.01, max_attempts=1000),
        )
        results = asyncio.run(rec.reconcile_until_settled([p], timeout=0.05))
        assert results[p.key].state is WAITING

    def test_run_forever_settles_and_stops(self):
        p = position()
        feeds = FakeFeeds({p.key: 840}, {p.key: [None, 700]})

        async def scenario():
            rec = Reconciler(
                feeds.fetch_values,
                feeds.fetch_cost_basis,
                policy=RetryPolicy(initial_delay=0.01, max_delay=0.01),
            )

            async def load():
                return [p]

            task = rec.start(load, refresh_interval=60.0, tick_interval=0.005)
            with pytest.raises(RuntimeError, match="already running"):
                rec.start(load)
            state = None
            for _ in range(200):
                await asyncio.sleep(0.005)
                state = rec.get(p) and rec.get(p).state
                if state is SETTLED:
                    break
            rec.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return state

        assert asyncio.run(scenario()) is SETTLED
        assert len(feeds.value_calls) == 1

    def test_from_clients_wires_feeds(self):
        class Reader:
            def __init__(self):
                self.calls = 0

            async def fetch_position_values(self, positions):
                self.calls += 1
                return {p.key: 840 for p in positions}

        class Indexer:
            async def fetch_asset_supplied(self, pool_id, supplier, limit):
                return [LedgerEvent("supply", 1000, 1000, 1)]

            async def fetch_asset_withdrawn(self, pool_id, supplier, limit):
                return [LedgerEvent("withdraw", 300, 330, 2)]

        reader = Reader()
        rec = Reconciler.from_clients(reader, Indexer(), clock=ManualClock())
        results = asyncio.run(rec.reconcile([position(shares=700)]))
        assert results[position().key].interest_earned == 140
        assert reader.calls == 1
