import math

import pytest

from ladderocr.reflow import (
    ReflowOptions,
    break_into_lines,
    clean_locale_text,
    collapse_blank_lines,
    format_readable,
    is_structural_line,
    postprocess,
    space_words,
    split_long,
)

THAI_HELLO = "สวัสดี"  # sawasdee
THAI_WORD = "ภาษาไทย"  # phasa thai


def chunk_segmenter(size):
    return lambda s: [s[i:i + size] for i in range(0, len(s), size)]


@pytest.mark.parametrize("width", [1, 7, 60, 97])
def test_single_huge_token_wraps_to_exact_line_count(width):
    token = "a" * 10_000
    lines = break_into_lines(token, max_chars=width, non_spaced=False).split("\n")
    assert len(lines) == math.ceil(10_000 / width)
    assert all(len(ln) <= width for ln in lines)


def test_huge_token_from_segmenter_terminates():
    token = THAI_WORD * 1_500
    lines = break_into_lines(token, max_chars=60, non_spaced=True, segmenter=lambda s: [s]).split("\n")
    assert len(lines) == math.ceil(len(token) / 60)


def test_spaced_text_never_exceeds_width():
    text = "The quick brown fox, jumps over the lazy dog; then rests. " * 40
    for width in (12, 40, 60):
        out = break_into_lines(text, max_chars=width, non_spaced=False)
        assert all(len(ln) <= width for ln in out.split("\n"))
        assert out.replace("\n", " ").split() == text.split()


def test_non_spaced_text_never_exceeds_width():
    text = (THAI_HELLO + THAI_WORD) * 30
    out = break_into_lines(text, max_chars=20, non_spaced=True, segmenter=chunk_segmenter(5))
    lines = out.split("\n")
    assert all(len(ln) <= 20 for ln in lines)
    assert "".join(lines) == text


def test_sentence_end_flushes_line():
    text = "This sentence is long enough to flush. Next one"
    out = break_into_lines(text, max_chars=60, non_spaced=False)
    assert out.split("\n") == ["This sentence is long enough to flush.", "Next one"]


def test_overflow_backs_up_to_soft_break():
    text = "alpha, beta gamma delta"
    out = break_into_lines(text, max_chars=18, non_spaced=False)
    assert out.split("\n")[0] == "alpha,"


def test_paragraphs_are_kept_apart():
    out = break_into_lines("one two\n\n\n\nthree four", max_chars=60, non_spaced=False)
    assert out == "one two\n\nthree four"


def test_split_long():
    assert split_long("abcdefg", 3) == ["abc", "def", "g"]
    assert split_long("ab", 3) == ["ab"]


def test_structural_lines():
    assert is_structural_line("- first item")
    assert is_structural_line("12. numbered")
    assert is_structural_line("• bullet")
    assert is_structural_line("Intro")
    assert not is_structural_line("A regular sentence of text")


def test_format_readable_passes_structural_lines_verbatim():
    bullet = "- " + "word " * 30
    text = f"Heading\n{bullet.strip()}\n\n\n\nbody text " + "more words " * 20
    out = format_readable(text, languages=("eng",), max_line=40)
    lines = out.split("\n")
    assert lines[0] == "Heading"
    assert lines[1] == bullet.strip()
    assert "\n\n\n" not in out
    assert all(len(ln) <= 40 for ln in lines[2:])


def test_collapse_blank_lines():
    assert collapse_blank_lines(["a", "", " ", "", "b", ""]) == ["a", "", "b", ""]


def test_clean_locale_text_removes_spacing_artifacts():
    noisy = "  สว ัส ดี  \n\n\n\n\nok"
    assert clean_locale_text(noisy) == THAI_HELLO + "\n\nok"


def test_clean_locale_text_leaves_latin_spacing():
    assert clean_locale_text("hello   world") == "hello   world"


def test_space_words_with_injected_segmenter():
    seg = lambda line: line.split("|")  # noqa: E731
    assert space_words("ab|cd|,|ef\nx|y", seg) == "ab cd, ef\nx y"


def test_postprocess_respects_switches():
    text = "word " * 30
    plain = postprocess(text, ("eng",), ReflowOptions(auto_wrap=False))
    assert plain == text
    wrapped = postprocess(text, ("eng",), ReflowOptions(wrap_width=20))
    assert all(len(ln) <= 20 for ln in wrapped.split("\n"))


def test_postprocess_thai_cleanup_and_wrap():
    text = " ".join([THAI_HELLO] * 20)
    out = postprocess(text, ("tha",), ReflowOptions(wrap_width=25), segmenter=chunk_segmenter(6))
    assert " " not in out
    assert all(len(ln) <= 25 for ln in out.split("\n"))
