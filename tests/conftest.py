from __future__ import annotations

import dataclasses
import sys
import threading
import time
from pathlib import Path

import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from ladderocr.config import ActiveSettings  # noqa: E402
from ladderocr.engines import BaseOCREngine, EngineSession, Recognition  # noqa: E402
from ladderocr.presets import AttemptBudget  # noqa: E402

# how long an aborted engine call lingers past its deadline
ABORT_LAG_S = 0.05


class FakeSession(EngineSession):
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine

    def configure(self, psm, params=None):
        self.engine.configured.append((psm, dict(params or {})))

    def recognize(self, image, timeout_s=0):
        return self.engine.respond("session", image, timeout_s)


class FakeEngine(BaseOCREngine):
    """
    Scriptable engine. `delay` applies to session calls, `once_delay` to the
    one-shot path; `fail_first` session calls raise before answers succeed.
    `hang_first` makes only the first session call that slow. A call that
    would outlive its `timeout_s` is aborted shortly after the deadline, the
    way pytesseract kills a slow tesseract process.
    """

    def __init__(self, text="hello world", confidence=91.0, *, delay=0.0, once_delay=None,
                 fail_init=False, fail_first=0, fail_always=False, hang_first=None):
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.once_delay = delay if once_delay is None else once_delay
        self.fail_init = fail_init
        self.fail_first = fail_first
        self.fail_always = fail_always
        self.hang_first = hang_first
        self.aborted = 0
        self.configured = []
        self.calls = []
        self.init_calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def initialize(self, languages):
        self.init_calls += 1
        if self.fail_init:
            raise RuntimeError("traineddata missing")
        return FakeSession(self)

    def recognize_once(self, image, languages, resource_paths=None, timeout_s=0):
        return self.respond("once", image, timeout_s)

    def respond(self, path, image, timeout_s=0):
        with self._lock:
            self.calls.append((path, image.size))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            n_session = sum(1 for p, _ in self.calls if p == "session")
        try:
            delay = self.delay if path == "session" else self.once_delay
            if path == "session" and n_session == 1 and self.hang_first is not None:
                delay = self.hang_first
            if timeout_s and delay > timeout_s:
                time.sleep(timeout_s + ABORT_LAG_S)
                with self._lock:
                    self.aborted += 1
                raise RuntimeError("process timeout")
            time.sleep(delay)
            if self.fail_always or (path == "session" and n_session <= self.fail_first):
                raise RuntimeError("engine error")
            return Recognition(text=self.text, confidence=self.confidence)
        finally:
            with self._lock:
                self.active -= 1

    @property
    def once_calls(self):
        return sum(1 for p, _ in self.calls if p == "once")


def tight_settings(preset_id="fast", *, budget_ms=300, timeout_ms=600, floor_ms=60, ceiling_ms=100):
    """Preset with millisecond-scale budgets so timeout paths run quickly."""
    active = ActiveSettings.from_preset(preset_id)
    preset = dataclasses.replace(
        active.preset,
        page_budget_ms=budget_ms,
        timeout_ms=timeout_ms,
        attempt_budget=AttemptBudget(floor_ms, ceiling_ms),
    )
    return dataclasses.replace(active, preset=preset)


@pytest.fixture
def small_image():
    img = Image.new("RGB", (240, 120), "white")
    for x in range(40, 200):
        for y in range(50, 70):
            img.putpixel((x, y), (20, 20, 20))
    return img


@pytest.fixture
def fake_engine():
    return FakeEngine()
