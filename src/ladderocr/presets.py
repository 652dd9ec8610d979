# src/ladderocr/presets.py
"""
Named speed/quality profiles.

Presets are plain frozen data. The behaviour that used to live in per-preset
closures (concurrency sizing, ladder generation, attempt budgets) is expressed
as small tagged values that reference a fixed set of strategies.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .exceptions import UnknownPresetError
from .models import Attempt

CUSTOM_PRESET_ID = "custom"
DEFAULT_PRESET_ID = "fast"
DEFAULT_PSM = 6
# Single text line; used whenever the ladder wants the cheapest layout analysis
LINE_PSM = 7


@dataclass(frozen=True)
class ImageOptions:
    """Image-processing knobs. Every field can be overridden individually."""
    languages: Tuple[str, ...] = ("tha", "eng")
    psm: int = DEFAULT_PSM
    scale: float = 2.0
    contrast: float = 1.0
    sharpen: float = 0.0
    grayscale: bool = True
    binarize: bool = False

    @property
    def lang_key(self) -> str:
        return "+".join(self.languages)


class ConcurrencyKind(str, Enum):
    CAPPED = "capped"            # min(cap, hint)
    FIXED = "fixed"              # cap
    RESERVE_ONE = "reserve_one"  # clamp(hint - 1, floor, cap)


@dataclass(frozen=True)
class ConcurrencyRule:
    kind: ConcurrencyKind
    cap: int
    floor: int = 1

    def resolve(self, hint: Optional[int]) -> int:
        hc = hint or 4
        if self.kind is ConcurrencyKind.FIXED:
            n = self.cap
        elif self.kind is ConcurrencyKind.CAPPED:
            n = min(self.cap, hc)
        else:
            n = max(self.floor, min(self.cap, hc - 1))
        return max(1, int(n))


@dataclass(frozen=True)
class AttemptBudget:
    floor_ms: int
    ceiling_ms: int

    def resolve(self, remaining_ms: float) -> int:
        return int(max(self.floor_ms, min(self.ceiling_ms, remaining_ms)))


class LadderStrategy(str, Enum):
    SINGLE_TINY = "single_tiny"
    NORMAL_TINY = "normal_tiny"
    NORMAL_MID_TINY = "normal_mid_tiny"
    GRID = "grid"
    ACCURATE = "accurate"

    def build(self, fast_mode: bool, psm: Optional[int]) -> List[Attempt]:
        requested = psm if isinstance(psm, int) else DEFAULT_PSM
        normal_psm = LINE_PSM if fast_mode else requested

        if self is LadderStrategy.SINGLE_TINY:
            rows = [("tiny", LINE_PSM, 1.00, False)]
        elif self is LadderStrategy.NORMAL_TINY:
            rows = [
                ("normal", normal_psm, 1.00, False),
                ("tiny", LINE_PSM, 0.70, False),
            ]
        elif self is LadderStrategy.NORMAL_MID_TINY:
            rows = [
                ("normal", normal_psm, 1.00, False),
                ("mid", DEFAULT_PSM, 0.85, False),
                ("tiny", LINE_PSM, 0.70, False),
            ]
        elif self is LadderStrategy.GRID:
            rows = [
                ("grid-7", LINE_PSM, 1.00, True),
                ("grid-6", DEFAULT_PSM, 0.90, True),
                ("tiny", LINE_PSM, 0.75, False),
            ]
        else:
            # the accurate ladder ignores fast mode on purpose
            rows = [
                ("normal", requested, 1.00, True),
                ("mid", DEFAULT_PSM, 0.90, True),
                ("tiny", LINE_PSM, 0.75, False),
            ]
        return [
            Attempt(label=label, psm=p, scale_mul=mul, binarize=thr, ordinal=i)
            for i, (label, p, mul, thr) in enumerate(rows)
        ]


@dataclass(frozen=True)
class Preset:
    id: str
    name: str
    note: str
    defaults: ImageOptions
    cap_mpx: float
    page_budget_ms: int
    timeout_ms: int
    render_concurrency: ConcurrencyRule
    recognition_concurrency: ConcurrencyRule
    ladder: LadderStrategy
    attempt_budget: AttemptBudget
    engine_params: Dict[str, str] = field(default_factory=dict)

    def attempts(self, fast_mode: bool, psm: Optional[int]) -> List[Attempt]:
        return self.ladder.build(fast_mode, psm)

    def render_limit(self, hint: Optional[int]) -> int:
        return self.render_concurrency.resolve(hint)

    def recognition_limit(self, hint: Optional[int]) -> int:
        return self.recognition_concurrency.resolve(hint)


_LIGHT_DICT = {"load_system_dawg": "0", "load_freq_dawg": "0"}

PRESETS: Dict[str, Preset] = {
    p.id: p
    for p in (
        Preset(
            id="fastest",
            name="Super Turbo",
            note="Lowest resolution and a single OCR pass. Very fast, reduced accuracy.",
            defaults=ImageOptions(psm=7, scale=1.6, contrast=1.0, sharpen=0.0),
            cap_mpx=0.9,
            page_budget_ms=15_000,
            timeout_ms=60_000,
            render_concurrency=ConcurrencyRule(ConcurrencyKind.CAPPED, cap=8),
            recognition_concurrency=ConcurrencyRule(ConcurrencyKind.FIXED, cap=1),
            ladder=LadderStrategy.SINGLE_TINY,
            attempt_budget=AttemptBudget(4_000, 8_000),
            engine_params={"user_defined_dpi": "220", "tessedit_ocr_engine_mode": "1",
                           "preserve_interword_spaces": "0", **_LIGHT_DICT},
        ),
        Preset(
            id="fast",
            name="Turbo",
            note="Speed first. Good for large batches and dense tables, fair accuracy.",
            defaults=ImageOptions(psm=6, scale=1.8, contrast=1.05, sharpen=0.0),
            cap_mpx=1.2,
            page_budget_ms=25_000,
            timeout_ms=90_000,
            render_concurrency=ConcurrencyRule(ConcurrencyKind.CAPPED, cap=6),
            recognition_concurrency=ConcurrencyRule(ConcurrencyKind.RESERVE_ONE, cap=2),
            ladder=LadderStrategy.NORMAL_TINY,
            attempt_budget=AttemptBudget(6_000, 16_000),
            engine_params={"user_defined_dpi": "250", "tessedit_ocr_engine_mode": "1",
                           "preserve_interword_spaces": "0", **_LIGHT_DICT},
        ),
        Preset(
            id="balanced",
            name="Balanced",
            note="Balanced speed and quality.",
            defaults=ImageOptions(psm=6, scale=2.2, contrast=1.1, sharpen=0.2),
            cap_mpx=2.2,
            page_budget_ms=45_000,
            timeout_ms=120_000,
            render_concurrency=ConcurrencyRule(ConcurrencyKind.CAPPED, cap=5),
            recognition_concurrency=ConcurrencyRule(ConcurrencyKind.RESERVE_ONE, cap=2),
            ladder=LadderStrategy.NORMAL_MID_TINY,
            attempt_budget=AttemptBudget(8_000, 22_000),
            engine_params={"user_defined_dpi": "300", "tessedit_ocr_engine_mode": "1",
                           "preserve_interword_spaces": "0"},
        ),
        Preset(
            id="tables",
            name="Tables+",
            note="Table-heavy documents with small cells. Favors contrast, thresholding and line modes.",
            defaults=ImageOptions(psm=7, scale=2.4, contrast=1.15, sharpen=0.4, binarize=True),
            cap_mpx=2.6,
            page_budget_ms=55_000,
            timeout_ms=150_000,
            render_concurrency=ConcurrencyRule(ConcurrencyKind.CAPPED, cap=4),
            recognition_concurrency=ConcurrencyRule(ConcurrencyKind.FIXED, cap=1),
            ladder=LadderStrategy.GRID,
            attempt_budget=AttemptBudget(12_000, 28_000),
            engine_params={"user_defined_dpi": "320", "tessedit_ocr_engine_mode": "1",
                           "preserve_interword_spaces": "1"},
        ),
        Preset(
            id="accurate",
            name="Accurate",
            note="Slower for better quality, especially on small or blurry text.",
            defaults=ImageOptions(psm=6, scale=2.8, contrast=1.2, sharpen=0.6, binarize=True),
            cap_mpx=3.5,
            page_budget_ms=75_000,
            timeout_ms=180_000,
            render_concurrency=ConcurrencyRule(ConcurrencyKind.CAPPED, cap=4),
            recognition_concurrency=ConcurrencyRule(ConcurrencyKind.FIXED, cap=1),
            ladder=LadderStrategy.ACCURATE,
            attempt_budget=AttemptBudget(14_000, 30_000),
            engine_params={"user_defined_dpi": "350", "tessedit_ocr_engine_mode": "1",
                           "preserve_interword_spaces": "1"},
        ),
        Preset(
            id=CUSTOM_PRESET_ID,
            name="Custom",
            note="Individually tuned knobs.",
            defaults=ImageOptions(psm=6, scale=2.0, contrast=1.1, sharpen=0.1),
            cap_mpx=2.0,
            page_budget_ms=45_000,
            timeout_ms=120_000,
            render_concurrency=ConcurrencyRule(ConcurrencyKind.CAPPED, cap=5),
            recognition_concurrency=ConcurrencyRule(ConcurrencyKind.RESERVE_ONE, cap=2),
            ladder=LadderStrategy.NORMAL_TINY,
            attempt_budget=AttemptBudget(8_000, 18_000),
            engine_params={"user_defined_dpi": "280", "tessedit_ocr_engine_mode": "1",
                           "preserve_interword_spaces": "0"},
        ),
    )
}


def get_preset(preset_id: str) -> Preset:
    key = (preset_id or "").strip().lower()
    try:
        return PRESETS[key]
    except KeyError:
        raise UnknownPresetError(
            f"Unknown preset, '{preset_id}'. Available presets, {sorted(PRESETS)}"
        ) from None
