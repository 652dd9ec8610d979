import pytest

from ladderocr.exceptions import UnknownPresetError
from ladderocr.presets import (
    CUSTOM_PRESET_ID,
    LINE_PSM,
    PRESETS,
    AttemptBudget,
    ConcurrencyKind,
    ConcurrencyRule,
    get_preset,
)


@pytest.mark.parametrize("preset_id", sorted(PRESETS))
@pytest.mark.parametrize("fast_mode", [False, True])
def test_ladder_non_empty_and_strictly_cheaper(preset_id, fast_mode):
    attempts = PRESETS[preset_id].attempts(fast_mode, 6)
    assert attempts
    scales = [a.scale_mul for a in attempts]
    assert all(a > b for a, b in zip(scales, scales[1:]))
    assert [a.ordinal for a in attempts] == list(range(len(attempts)))


def test_fast_mode_uses_line_mode_for_normal_attempt():
    assert PRESETS["fast"].attempts(True, 3)[0].psm == LINE_PSM
    assert PRESETS["fast"].attempts(False, 3)[0].psm == 3


def test_accurate_ignores_fast_mode():
    assert PRESETS["accurate"].attempts(True, 4) == PRESETS["accurate"].attempts(False, 4)


def test_non_int_psm_falls_back_to_default():
    assert PRESETS["balanced"].attempts(False, None)[0].psm == 6


@pytest.mark.parametrize("hint", [None, 0, 1, 2, 8, 64])
@pytest.mark.parametrize("preset_id", sorted(PRESETS))
def test_concurrency_always_at_least_one(preset_id, hint):
    p = PRESETS[preset_id]
    assert p.render_limit(hint) >= 1
    assert p.recognition_limit(hint) >= 1
    assert p.recognition_limit(hint) <= p.recognition_concurrency.cap


def test_concurrency_kinds():
    assert ConcurrencyRule(ConcurrencyKind.CAPPED, cap=6).resolve(3) == 3
    assert ConcurrencyRule(ConcurrencyKind.CAPPED, cap=6).resolve(None) == 4
    assert ConcurrencyRule(ConcurrencyKind.FIXED, cap=1).resolve(32) == 1
    assert ConcurrencyRule(ConcurrencyKind.RESERVE_ONE, cap=2).resolve(1) == 1
    assert ConcurrencyRule(ConcurrencyKind.RESERVE_ONE, cap=2).resolve(16) == 2


def test_attempt_budget_is_clamped():
    b = AttemptBudget(6_000, 16_000)
    assert b.resolve(500) == 6_000
    assert b.resolve(10_000) == 10_000
    assert b.resolve(90_000) == 16_000


def test_get_preset_is_case_insensitive_and_rejects_unknown():
    assert get_preset(" Fast ").id == "fast"
    assert get_preset(CUSTOM_PRESET_ID).id == CUSTOM_PRESET_ID
    with pytest.raises(UnknownPresetError) as exc:
        get_preset("warp")
    assert isinstance(exc.value, KeyError)
    assert "warp" in str(exc.value)
