# src/ladderocr/progress.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, replace
from typing import Optional

from . import logger as _logger  # noqa: F401  registers Logger.progress

logger = logging.getLogger("ladderocr")

SUBSTEPS = ("Render", "Preprocess", "OCR", "Post-process")
# time-based sub-phase progress never claims completion on its own
_SUBSTEP_CEILING = 94
_TICK_SECONDS = 0.25


@dataclass(frozen=True)
class ProgressEvent:
    phase: str
    page_index: Optional[int] = None
    total_pages: Optional[int] = None
    filename: Optional[str] = None
    overall_pct: Optional[float] = None
    sub_label: Optional[str] = None
    sub_pct: Optional[float] = None

    def as_dict(self) -> dict:
        return {
            "phase": self.phase,
            "pageIndex": self.page_index,
            "totalPages": self.total_pages,
            "filename": self.filename,
            "overallPercent": self.overall_pct,
            "subPhaseLabel": self.sub_label,
            "subPhasePercent": self.sub_pct,
        }


class ProgressChannel:
    """Publishes progress events as PROGRESS log records; see logger.UIEventHandler."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def publish(self, event: ProgressEvent):
        self._log.progress("%s", event.phase, extra={"event": event})


def timed_percent(elapsed_s: float, budget_ms: float) -> int:
    if budget_ms <= 0:
        return _SUBSTEP_CEILING
    pct = int((elapsed_s * 1000.0 / budget_ms) * _SUBSTEP_CEILING)
    return max(1, min(_SUBSTEP_CEILING, pct))


class PageProgress:
    """
    Progress emitter owned by a single page pipeline run.

    `substep()` starts a ticker that converts elapsed time into a sub-phase
    percentage against the stage budget, and stops it when the stage ends.
    """

    def __init__(self, channel: ProgressChannel, *, page_index: int, total_pages: int,
                 filename: str, overall_pct: float = 0.0):
        self.channel = channel
        self.base = ProgressEvent(
            phase="recognize",
            page_index=page_index,
            total_pages=total_pages,
            filename=filename,
            overall_pct=overall_pct,
        )
        self._ticker: Optional[asyncio.Task] = None

    def emit(self, **changes):
        self.channel.publish(replace(self.base, **changes))

    async def _tick(self, label: str, budget_ms: float):
        t0 = time.monotonic()
        while True:
            self.emit(sub_label=label, sub_pct=timed_percent(time.monotonic() - t0, budget_ms))
            await asyncio.sleep(_TICK_SECONDS)

    def start(self, label: str, budget_ms: float):
        self.stop()
        self._ticker = asyncio.ensure_future(self._tick(label, budget_ms))

    def stop(self):
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    @contextlib.asynccontextmanager
    async def substep(self, label: str, budget_ms: float):
        self.start(label, budget_ms)
        try:
            yield self
        finally:
            self.stop()
            self.emit(sub_label=label, sub_pct=100)
