# src/ladderocr/ladder.py
"""
Per-page recognition as an explicit finite state machine.

    LOAD -> PREPROCESS -> ATTEMPT[0..k] -> FALLBACK -> DONE

Every state entry polls the cancellation token and the page budget. The
first successful attempt goes straight to DONE. DONE always settles the
page, whatever the outcome.

Fallback policy: when no attempt succeeded, the one-shot fallback runs once
as long as the fixed grace allowance past the page budget is not used up,
even if the budget itself is already spent.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from PIL import Image

from .budget import CancellationToken, PageBudget
from .config import ActiveSettings
from .engines import BaseOCREngine, Recognition, SerializedSession
from .exceptions import (
    BudgetExceeded,
    IngestionError,
    LadderOCRError,
    RecognitionFailure,
    RecognitionTimeout,
    RenderTimeout,
    UserSkipped,
)
from .models import Attempt, Page, ProcessingResult
from .preprocess import FAST_MODE_OPTIONS, attempt_variant, fallback_variant, is_fast_mode, preprocess
from .progress import SUBSTEPS, PageProgress, ProgressChannel
from .reflow import ReflowOptions, Segmenter, postprocess
from .runner import guard, run_blocking

logger = logging.getLogger("ladderocr")

FALLBACK_GRACE_MS = 5_000
FALLBACK_MAX_MS = 20_000
LOAD_MAX_MS = 20_000
# nominal durations for the time-based sub-phase progress
PREPROCESS_NOMINAL_MS = 8_000
POSTPROCESS_NOMINAL_MS = 2_000


class LadderState(str, Enum):
    LOAD = "load"
    PREPROCESS = "preprocess"
    ATTEMPT = "attempt"
    FALLBACK = "fallback"
    DONE = "done"


TRANSITIONS: Dict[LadderState, frozenset] = {
    LadderState.LOAD: frozenset({LadderState.PREPROCESS, LadderState.DONE}),
    LadderState.PREPROCESS: frozenset({LadderState.ATTEMPT, LadderState.DONE}),
    LadderState.ATTEMPT: frozenset({LadderState.ATTEMPT, LadderState.FALLBACK, LadderState.DONE}),
    LadderState.FALLBACK: frozenset({LadderState.DONE}),
    LadderState.DONE: frozenset(),
}


@dataclass
class EngineHandle:
    """
    Engine access for one run. Without a session (creation failed) every
    call degrades to the stateless one-shot path.
    """
    engine: BaseOCREngine
    languages: Sequence[str]
    session: Optional[SerializedSession] = None
    resource_paths: Dict[str, str] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.session is None

    def recognize(self, image: Image.Image, psm: int, timeout_s: float = 0) -> Recognition:
        if self.session is not None:
            return self.session.recognize(image, psm, timeout_s)
        return self.recognize_once(image, timeout_s)

    def recognize_once(self, image: Image.Image, timeout_s: float = 0) -> Recognition:
        return self.engine.recognize_once(image, self.languages, self.resource_paths, timeout_s)


def _open_bitmap(src) -> Image.Image:
    if isinstance(src, Image.Image):
        return src
    if isinstance(src, bytes):
        im = Image.open(io.BytesIO(src))
    else:
        im = Image.open(src)
    im.load()
    return im.convert("RGB")


class PageLadder:
    def __init__(
        self,
        page: Page,
        *,
        settings: ActiveSettings,
        engine: EngineHandle,
        token: Optional[CancellationToken] = None,
        budget: Optional[PageBudget] = None,
        progress: Optional[PageProgress] = None,
        reflow: Optional[ReflowOptions] = None,
        segmenter: Optional[Segmenter] = None,
        name: str = "",
        label: str = "page 1",
    ):
        self.page = page
        self.settings = settings
        self.preset = settings.preset
        self.engine = engine
        self.token = token or CancellationToken()
        self.budget = budget or PageBudget(self.preset.page_budget_ms, self.preset.timeout_ms)
        self.progress = progress or PageProgress(ProgressChannel(), page_index=0, total_pages=1, filename=name)
        self.reflow = reflow or ReflowOptions()
        self.segmenter = segmenter
        self.name = name
        self.label = label

        self.state = LadderState.LOAD
        self.trace: List[LadderState] = [LadderState.LOAD]
        self.image: Optional[Image.Image] = None
        self.base: Optional[Image.Image] = None
        self.attempts: List[Attempt] = []
        self.index = 0
        self.fallback_used = False
        self.recognition: Optional[Recognition] = None
        self.last_error: Optional[LadderOCRError] = None
        self.final_error: Optional[LadderOCRError] = None

    # -----------------------------
    # Transition helpers
    # -----------------------------
    def _go(self, nxt: LadderState):
        if nxt not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal ladder transition {self.state.value} -> {nxt.value}")
        self.state = nxt
        self.trace.append(nxt)

    def _poll_skip(self):
        if self.token.consume():
            raise UserSkipped("User skipped this page")

    def _check_budget(self, stage: str):
        if self.budget.over_budget():
            raise BudgetExceeded(f"Page budget spent ({stage})")

    # -----------------------------
    # States
    # -----------------------------
    async def _load(self) -> LadderState:
        self._poll_skip()
        self._check_budget("before load")
        src = self.page.bitmap
        if src is None:
            raise IngestionError("Page has no bitmap")
        if isinstance(src, Image.Image):
            self.image = src
        else:
            deadline = min(LOAD_MAX_MS, self.preset.timeout_ms)
            async with self.progress.substep(SUBSTEPS[0], deadline):
                r = await guard(run_blocking(_open_bitmap, src), deadline, f"load bitmap {self.label}")
            if r.timed_out:
                raise RenderTimeout(str(r.error))
            if not r.ok:
                raise IngestionError(f"Cannot load bitmap, {r.error}")
            self.image = r.value
        self._check_budget("slow bitmap load")
        return LadderState.PREPROCESS

    async def _preprocess(self) -> LadderState:
        self._poll_skip()
        self._check_budget("before preprocess")
        fast_mode = is_fast_mode(self.image, self.name)
        options = FAST_MODE_OPTIONS if fast_mode else self.settings.options
        async with self.progress.substep(SUBSTEPS[1], PREPROCESS_NOMINAL_MS):
            self.base = await run_blocking(preprocess, self.image, options, self.preset.cap_mpx)
        self._check_budget("slow preprocess")
        self.attempts = self.preset.attempts(fast_mode, self.settings.options.psm)
        logger.debug("Ladder for %s, fast mode, %s, attempts, %s",
                     self.label, fast_mode, [a.label for a in self.attempts])
        return LadderState.ATTEMPT

    async def _attempt(self) -> LadderState:
        self._poll_skip()
        if self.index >= len(self.attempts) or self.budget.over_budget():
            return LadderState.FALLBACK

        at = self.attempts[self.index]
        self.index += 1
        variant = await run_blocking(attempt_variant, self.base, at, self.preset.cap_mpx)
        sub_budget = self.preset.attempt_budget.resolve(self.budget.remaining_ms)

        async with self.progress.substep(f"OCR ({at.label})", sub_budget):
            r = await guard(
                run_blocking(self.engine.recognize, variant, at.psm, sub_budget / 1000.0),
                sub_budget,
                f"{at.label} {self.label}",
            )

        if r.ok:
            self.page.record_attempt(at.label, "ok")
            self.recognition = r.value
            return LadderState.DONE

        outcome = "timeout" if r.timed_out else "error"
        detail = str(r.error) or type(r.error).__name__
        self.page.record_attempt(at.label, outcome, detail)
        self.page.error = f"OCR ({at.label}): {detail}"
        self.last_error = RecognitionTimeout(detail) if r.timed_out else RecognitionFailure(detail)
        logger.warning("Attempt %s failed on %s, %s", at.label, self.label, detail)
        return LadderState.ATTEMPT

    async def _fallback(self) -> LadderState:
        self._poll_skip()
        grace = self.budget.grace_left_ms(FALLBACK_GRACE_MS)
        deadline = min(grace, self.budget.timeout_left_ms, FALLBACK_MAX_MS)
        if deadline <= 0:
            raise self._exhausted()

        self.fallback_used = True
        tiny = await run_blocking(fallback_variant, self.base, self.preset.cap_mpx)
        async with self.progress.substep("Fallback (one-shot)", deadline):
            r = await guard(run_blocking(self.engine.recognize_once, tiny, deadline / 1000.0), deadline,
                            f"fallback {self.label}")
        if r.ok:
            self.page.record_attempt("fallback", "ok")
            self.recognition = r.value
            return LadderState.DONE

        detail = str(r.error) or type(r.error).__name__
        self.page.record_attempt("fallback", "timeout" if r.timed_out else "error", detail)
        self.last_error = RecognitionTimeout(detail) if r.timed_out else RecognitionFailure(detail)
        raise self._exhausted()

    def _exhausted(self) -> LadderOCRError:
        why = f" ({self.last_error})" if self.last_error else ""
        if self.budget.over_budget():
            return BudgetExceeded(f"Page budget spent{why}")
        return RecognitionFailure(f"OCR failed{why}")

    # -----------------------------
    # Driver
    # -----------------------------
    async def run(self) -> ProcessingResult:
        handlers = {
            LadderState.LOAD: self._load,
            LadderState.PREPROCESS: self._preprocess,
            LadderState.ATTEMPT: self._attempt,
            LadderState.FALLBACK: self._fallback,
        }
        while self.state is not LadderState.DONE:
            try:
                nxt = await handlers[self.state]()
            except LadderOCRError as e:
                self.final_error = e
                nxt = LadderState.DONE
            self._go(nxt)
        return await self._finish()

    async def _finish(self) -> ProcessingResult:
        page = self.page
        try:
            if self.recognition is None:
                err = self.final_error or self._exhausted()
                page.error = str(err)
                page.error_kind = err.code
                return ProcessingResult(error=err)

            text = self.recognition.text or ""
            async with self.progress.substep(SUBSTEPS[3], POSTPROCESS_NOMINAL_MS):
                try:
                    text = await run_blocking(postprocess, text, self.settings.options.languages,
                                              self.reflow, self.segmenter)
                except Exception:
                    logger.exception("Post-processing failed on %s, keeping raw text", self.label)
            page.text = text
            page.confidence = self.recognition.confidence
            page.error = None
            page.error_kind = None
            return ProcessingResult(text=text, confidence=self.recognition.confidence)
        finally:
            page.settle()
