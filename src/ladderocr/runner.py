# src/ladderocr/runner.py
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, List, Sequence

from .models import GuardResult

logger = logging.getLogger("ladderocr")

TaskFactory = Callable[[], Awaitable[Any]]


async def run_with_concurrency(factories: Sequence[TaskFactory], limit: int = 2) -> List[Any]:
    """
    Run task factories with at most `limit` of them active at once.

    The next factory starts as soon as a slot frees. Results are aligned with
    the input order. The first exception cancels the remaining work and is
    re-raised; callers that must keep going catch inside the factory.
    """
    results: List[Any] = [None] * len(factories)
    if not factories:
        return results

    pending = iter(range(len(factories)))

    async def slot():
        for i in pending:
            results[i] = await factories[i]()

    workers = [asyncio.ensure_future(slot()) for _ in range(max(1, min(int(limit), len(factories))))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return results


async def guard(operation: Awaitable[Any], deadline_ms: float, label: str) -> GuardResult:
    """
    Race `operation` against a deadline.

    Never raises for the operation's own failure: the outcome is always a
    tagged GuardResult. A timed out operation is cancelled.
    """
    task = asyncio.ensure_future(operation)
    timeout = max(0.0, float(deadline_ms)) / 1000.0
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        if task.cancelled():
            return GuardResult(ok=False, error=asyncio.CancelledError(label), timed_out=False)
        exc = task.exception()
        if exc is not None:
            return GuardResult(ok=False, error=exc, timed_out=False)
        return GuardResult(ok=True, value=task.result(), timed_out=False)

    task.cancel()
    logger.debug("Timed out, %s after %d ms", label, deadline_ms)
    return GuardResult(
        ok=False,
        error=TimeoutError(f"timeout: {label} > {int(deadline_ms)}ms"),
        timed_out=True,
    )


async def run_blocking(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run blocking image or engine work in the default thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
