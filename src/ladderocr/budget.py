# src/ladderocr/budget.py
from __future__ import annotations

import time
from typing import Callable, Optional


class PageBudget:
    """
    Wall-clock allowance for one page.

    The start timestamp is captured on construction from a monotonic clock.
    `timeout_ms` is the overall per-page timeout; `budget_ms` is the softer
    budget that gates every pipeline stage.
    """

    def __init__(self, budget_ms: float, timeout_ms: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.budget_ms = float(budget_ms)
        self.timeout_ms = float(timeout_ms if timeout_ms is not None else budget_ms)
        self._clock = clock
        self._t0 = clock()

    @property
    def elapsed_ms(self) -> float:
        return (self._clock() - self._t0) * 1000.0

    @property
    def remaining_ms(self) -> float:
        return max(0.0, self.budget_ms - self.elapsed_ms)

    @property
    def timeout_left_ms(self) -> float:
        return max(0.0, self.timeout_ms - self.elapsed_ms)

    def over_budget(self) -> bool:
        return self.elapsed_ms > self.budget_ms

    def grace_left_ms(self, grace_ms: float) -> float:
        """Time left until `grace_ms` past the budget is used up."""
        return max(0.0, self.budget_ms + grace_ms - self.elapsed_ms)


class CancellationToken:
    """
    Per-run cooperative "skip this page" flag.

    Raised from outside the pipeline, polled at ladder checkpoints, and cleared
    by the page that observes it so it only ever skips one page. With several
    pages in flight that is whichever reaches a checkpoint first.
    """

    def __init__(self):
        self._requested = False

    @property
    def is_set(self) -> bool:
        return self._requested

    def request_skip(self):
        self._requested = True

    def consume(self) -> bool:
        requested, self._requested = self._requested, False
        return requested
