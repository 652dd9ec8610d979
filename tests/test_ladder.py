import asyncio
import time

import pytest
from PIL import Image

from conftest import FakeEngine, tight_settings
from ladderocr.budget import CancellationToken, PageBudget
from ladderocr.config import ActiveSettings
from ladderocr.engines import SerializedSession
from ladderocr.ladder import TRANSITIONS, EngineHandle, LadderState, PageLadder
from ladderocr.models import Page
from ladderocr.presets import LINE_PSM
from ladderocr.reflow import ReflowOptions

S = LadderState


def make_ladder(page, engine, settings=None, *, session=True, token=None, name="scan.png"):
    settings = settings or ActiveSettings.from_preset("fast")
    sess = SerializedSession(engine.initialize(settings.options.languages)) if session else None
    handle = EngineHandle(engine=engine, languages=settings.options.languages, session=sess)
    return PageLadder(page, settings=settings, engine=handle, token=token, name=name,
                      reflow=ReflowOptions(auto_wrap=False))


def test_transition_table_shape():
    assert TRANSITIONS[S.LOAD] == {S.PREPROCESS, S.DONE}
    assert TRANSITIONS[S.PREPROCESS] == {S.ATTEMPT, S.DONE}
    assert TRANSITIONS[S.ATTEMPT] == {S.ATTEMPT, S.FALLBACK, S.DONE}
    assert TRANSITIONS[S.FALLBACK] == {S.DONE}
    assert TRANSITIONS[S.DONE] == frozenset()


def test_illegal_transition_raises(small_image):
    ladder = make_ladder(Page(bitmap=small_image), FakeEngine())
    with pytest.raises(RuntimeError):
        ladder._go(S.FALLBACK)
    ladder.state = S.FALLBACK
    with pytest.raises(RuntimeError):
        ladder._go(S.ATTEMPT)


def test_first_success_goes_straight_to_done(small_image):
    engine = FakeEngine(text="hello world", confidence=88.5)
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, engine)

    result = asyncio.run(ladder.run())

    assert result.ok
    assert ladder.trace == [S.LOAD, S.PREPROCESS, S.ATTEMPT, S.DONE]
    assert page.text == "hello world"
    assert page.confidence == 88.5
    assert page.progress == 1
    assert [(a.label, a.outcome) for a in page.attempts] == [("normal", "ok")]
    # small images run in fast mode, which asks for single-line layout
    assert engine.configured[0][0] == LINE_PSM
    assert engine.configured[0][1] == {}


def test_failed_attempt_records_warning_then_advances(small_image):
    engine = FakeEngine(fail_first=1)
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, engine)

    result = asyncio.run(ladder.run())

    assert result.ok
    assert ladder.trace == [S.LOAD, S.PREPROCESS, S.ATTEMPT, S.ATTEMPT, S.DONE]
    assert [a.outcome for a in page.attempts] == ["error", "ok"]
    assert page.error is None
    assert engine.once_calls == 0


def test_all_attempts_fail_then_fallback_succeeds(small_image):
    engine = FakeEngine(fail_first=99)
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, engine)

    result = asyncio.run(ladder.run())

    assert result.ok
    assert ladder.trace[-2:] == [S.FALLBACK, S.DONE]
    assert ladder.fallback_used
    assert page.attempts[-1].label == "fallback"
    assert engine.once_calls == 1


def test_everything_fails_is_classified_and_settled(small_image):
    engine = FakeEngine(fail_always=True)
    page = Page(bitmap=small_image)
    result = asyncio.run(make_ladder(page, engine).run())

    assert not result.ok
    assert page.progress == 1
    assert page.error_kind == "recognition_failure"
    assert page.text == ""


def test_engine_timeouts_end_in_budget_or_failure_after_fallback(small_image):
    engine = FakeEngine(delay=1.2)
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, engine, tight_settings("fast", budget_ms=500, timeout_ms=900))

    result = asyncio.run(ladder.run())

    assert not result.ok
    assert page.error_kind in ("budget_exceeded", "recognition_failure")
    assert S.FALLBACK in ladder.trace
    assert page.attempts[-1].label == "fallback"
    assert page.attempts[0].outcome == "timeout"
    assert page.progress == 1


def test_skip_request_aborts_and_clears_token(small_image):
    token = CancellationToken()
    token.request_skip()
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, FakeEngine(), token=token)

    result = asyncio.run(ladder.run())

    assert ladder.trace == [S.LOAD, S.DONE]
    assert page.error_kind == "user_skipped"
    assert page.progress == 1
    assert not token.is_set
    assert result.error.code == "user_skipped"


def test_spent_budget_short_circuits_before_attempts(small_image):
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, FakeEngine())
    now = [0.0]
    ladder.budget = PageBudget(10, 10_000, clock=lambda: now[0])
    now[0] = 1.0

    asyncio.run(ladder.run())

    assert ladder.trace == [S.LOAD, S.DONE]
    assert page.error_kind == "budget_exceeded"


def test_degraded_handle_uses_one_shot_for_attempts(small_image):
    engine = FakeEngine()
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, engine, session=False)

    result = asyncio.run(ladder.run())

    assert result.ok
    assert engine.once_calls == 1
    assert engine.configured == []


def test_bitmap_loaded_from_path(tmp_path, small_image):
    path = tmp_path / "page.png"
    small_image.save(path)
    page = Page(bitmap=path)
    ladder = make_ladder(page, FakeEngine())

    assert asyncio.run(ladder.run()).ok
    assert ladder.image.size == small_image.size


def test_unreadable_bitmap_is_ingestion_error(tmp_path):
    path = tmp_path / "broken.png"
    path.write_bytes(b"not an image")
    page = Page(bitmap=path)
    asyncio.run(make_ladder(page, FakeEngine()).run())
    assert page.error_kind == "ingestion_error"
    assert page.progress == 1


def test_large_image_uses_preset_psm():
    engine = FakeEngine()
    page = Page(bitmap=Image.new("RGB", (1300, 900), "white"))
    settings = ActiveSettings.from_preset("balanced").override(psm=4)
    asyncio.run(make_ladder(page, engine, settings).run())
    assert engine.configured[0][0] == 4


def test_timed_out_attempt_frees_the_session_for_the_next_one(small_image):
    # only the first session call hangs; the engine aborts it at its deadline
    engine = FakeEngine(hang_first=2.0)
    page = Page(bitmap=small_image)
    settings = tight_settings("fast", budget_ms=5_000, timeout_ms=8_000, floor_ms=300, ceiling_ms=300)
    ladder = make_ladder(page, engine, settings)

    t0 = time.monotonic()
    result = asyncio.run(ladder.run())
    elapsed = time.monotonic() - t0

    assert result.ok
    assert [(a.label, a.outcome) for a in page.attempts] == [("normal", "timeout"), ("tiny", "ok")]
    assert engine.aborted == 1
    assert engine.once_calls == 0
    assert not ladder.fallback_used
    assert elapsed < 1.5


class ClockedEngine(FakeEngine):
    """Every session call moves the fake clock forward by `step` seconds."""

    def __init__(self, now, step, **kwargs):
        super().__init__(**kwargs)
        self.now = now
        self.step = step

    def respond(self, path, image, timeout_s=0):
        if path == "session":
            self.now[0] += self.step
        return super().respond(path, image, timeout_s)


def test_fallback_runs_once_while_inside_grace(small_image):
    now = [0.0]
    # 2 s spent against a 1 s budget, 4 s of grace left
    engine = ClockedEngine(now, 2.0, fail_first=99, text="rescued")
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, engine)
    ladder.budget = PageBudget(1_000, 60_000, clock=lambda: now[0])

    result = asyncio.run(ladder.run())

    assert result.ok
    assert page.text == "rescued"
    assert ladder.trace == [S.LOAD, S.PREPROCESS, S.ATTEMPT, S.ATTEMPT, S.FALLBACK, S.DONE]
    assert [(a.label, a.outcome) for a in page.attempts] == [("normal", "error"), ("fallback", "ok")]
    assert ladder.fallback_used
    assert engine.once_calls == 1


def test_spent_grace_skips_fallback_and_reports_budget(small_image):
    now = [0.0]
    # 7 s spent against a 1 s budget, past the 5 s grace
    engine = ClockedEngine(now, 7.0, fail_first=99)
    page = Page(bitmap=small_image)
    ladder = make_ladder(page, engine)
    ladder.budget = PageBudget(1_000, 60_000, clock=lambda: now[0])

    result = asyncio.run(ladder.run())

    assert not result.ok
    assert ladder.trace == [S.LOAD, S.PREPROCESS, S.ATTEMPT, S.ATTEMPT, S.FALLBACK, S.DONE]
    assert page.error_kind == "budget_exceeded"
    assert not ladder.fallback_used
    assert engine.once_calls == 0
    assert page.progress == 1
