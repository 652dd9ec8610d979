import asyncio
import time

import pytest

from ladderocr.budget import CancellationToken, PageBudget
from ladderocr.runner import guard, run_blocking, run_with_concurrency


def test_runner_respects_limit_and_keeps_order():
    active = 0
    peak = 0
    finished = []

    def make(i, delay):
        async def work():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(delay)
            active -= 1
            finished.append(i)
            return i * 10
        return work

    delays = [0.05, 0.01, 0.04, 0.0, 0.02]
    results = asyncio.run(run_with_concurrency([make(i, d) for i, d in enumerate(delays)], limit=2))

    assert results == [0, 10, 20, 30, 40]
    assert peak <= 2
    assert sorted(finished) == [0, 1, 2, 3, 4]
    assert finished != [0, 1, 2, 3, 4]


def test_runner_empty_and_oversized_limit():
    assert asyncio.run(run_with_concurrency([], limit=3)) == []

    async def one():
        return "x"

    assert asyncio.run(run_with_concurrency([one], limit=10)) == ["x"]


def test_runner_first_error_propagates():
    async def ok():
        await asyncio.sleep(0.01)
        return 1

    async def boom():
        raise ValueError("bad item")

    with pytest.raises(ValueError):
        asyncio.run(run_with_concurrency([ok, boom, ok], limit=2))


def test_guard_times_out_at_sub_budget_not_page_budget():
    budget = PageBudget(5_000)

    async def go():
        t0 = time.monotonic()
        r = await guard(asyncio.sleep(5), 100, "attempt")
        return r, time.monotonic() - t0

    r, elapsed = asyncio.run(go())
    assert not r.ok
    assert r.timed_out
    assert "attempt" in str(r.error)
    assert elapsed < 1.0
    assert not budget.over_budget()


def test_guard_captures_failure_without_raising():
    async def bad():
        raise RuntimeError("nope")

    r = asyncio.run(guard(bad(), 1_000, "x"))
    assert not r.ok
    assert not r.timed_out
    assert isinstance(r.error, RuntimeError)


def test_guard_returns_value():
    r = asyncio.run(guard(run_blocking(sum, [1, 2, 3]), 1_000, "sum"))
    assert r.ok
    assert r.value == 6


def test_page_budget_with_fake_clock():
    now = [100.0]
    b = PageBudget(1_000, 3_000, clock=lambda: now[0])
    assert b.remaining_ms == 1_000
    now[0] += 0.4
    assert b.elapsed_ms == pytest.approx(400)
    assert not b.over_budget()
    now[0] += 0.7
    assert b.over_budget()
    assert b.remaining_ms == 0
    assert b.timeout_left_ms == pytest.approx(1_900)
    assert b.grace_left_ms(500) == pytest.approx(400)


def test_cancellation_token_applies_once():
    t = CancellationToken()
    assert not t.consume()
    t.request_skip()
    assert t.is_set
    assert t.consume()
    assert not t.is_set
    assert not t.consume()
