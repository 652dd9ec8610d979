# src/ladderocr/reflow.py
"""
Text post-processing: locale cleanup for scripts written without spaces
between words, optional word segmentation, and line reflow.

Line wrapping is a plain loop over a token queue. It must stay free of
recursion so that arbitrarily long input always terminates.
"""
from __future__ import annotations

import re
import unicodedata
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

Segmenter = Callable[[str], List[str]]

THAI_CHAR = re.compile(r"[\u0E00-\u0E7F]")
# dependent vowels, tone marks and other combining signs
_THAI_MARK = r"\u0E31\u0E34-\u0E3A\u0E47-\u0E4E"

_SPACE_BETWEEN_THAI = re.compile(r"([\u0E00-\u0E7F])[ \t]+(?=[\u0E00-\u0E7F])")
_SPACE_BEFORE_MARK = re.compile(rf"[ \t]+(?=[{_THAI_MARK}])")
_SPACE_AFTER_MARK = re.compile(rf"([{_THAI_MARK}])[ \t]+")
_MANY_BLANKS = re.compile(r"\n{3,}")
_MULTI_SPACE = re.compile(r"[ \t]{2,}")
_SPACE_BEFORE_CLOSING = re.compile(r"[ \t]+([,.;:!?)\]])")

_SENTENCE_STOP = re.compile(r"[\u3002\u3001.!?\u2026\u201D\u2019)\]\u0E2F\u0E46]")
_SOFT_STOP = re.compile(r"[,;:)\]]")
_STRUCTURAL = re.compile(r"^\s*([-*\u2022]|\d+\.)\s+")
_HEADING_START = re.compile(r"^[A-Za-z0-9#>]")
_HEADING_MAX_LEN = 8


@dataclass(frozen=True)
class ReflowOptions:
    locale_cleanup: bool = True
    word_spacing: bool = False
    auto_wrap: bool = True
    wrap_width: int = 60


def thai_segments(text: str) -> List[str]:
    from pythainlp.tokenize import word_tokenize

    return word_tokenize(text, engine="newmm", keep_whitespace=True)


def clean_locale_text(raw: str) -> str:
    if not raw:
        return ""
    t = unicodedata.normalize("NFC", raw)
    t = _SPACE_BETWEEN_THAI.sub(r"\1", t)
    t = _SPACE_BEFORE_MARK.sub("", t)
    t = _SPACE_AFTER_MARK.sub(r"\1", t)
    t = "\n".join(line.strip() for line in t.split("\n"))
    t = _MANY_BLANKS.sub("\n\n", t)
    return t.strip()


def space_words(text: str, segmenter: Optional[Segmenter] = None) -> str:
    """Insert single spaces at word boundaries, line by line."""
    if not text:
        return text
    seg = segmenter or thai_segments
    out = []
    for line in text.split("\n"):
        joined = " ".join(tok for tok in seg(line) if tok.strip())
        joined = _MULTI_SPACE.sub(" ", joined)
        out.append(_SPACE_BEFORE_CLOSING.sub(r"\1", joined).strip())
    return "\n".join(out)


def split_long(token: str, max_chars: int) -> List[str]:
    if len(token) <= max_chars:
        return [token]
    return [token[i:i + max_chars] for i in range(0, len(token), max_chars)]


def _ends_sentence(token: str) -> bool:
    return bool(_SENTENCE_STOP.search(token)) or token.endswith((".", "!", "?"))


def _last_soft_break(line: str) -> int:
    """Position just after the last soft-break character, or -1."""
    for j in range(len(line) - 1, -1, -1):
        if _SOFT_STOP.match(line[j]) or _SENTENCE_STOP.match(line[j]):
            return j + 1
    return -1


def collapse_blank_lines(lines: Iterable[str]) -> List[str]:
    out: List[str] = []
    blank = False
    for ln in lines:
        if ln.strip() == "":
            if not blank:
                out.append("")
                blank = True
        else:
            out.append(ln)
            blank = False
    return out


def break_into_lines(text: str, max_chars: int = 60, non_spaced: bool = True,
                     segmenter: Optional[Segmenter] = None) -> str:
    """
    Greedy line packing. No output line is longer than `max_chars`.

    Tokens come from the segmenter for non-spaced scripts and from splitting
    on spaces otherwise; over-long tokens are hard-split into chunks first.
    """
    if not text:
        return ""
    max_chars = max(1, int(max_chars))
    seg = segmenter or thai_segments
    flush_at = min(24, max_chars * 0.4)
    joiner = "" if non_spaced else " "
    out_lines: List[str] = []

    for para in re.split(r"\n{2,}", text):
        flat = re.sub(r"\s{2,}", " ", re.sub(r"\s*\n\s*", " ", para)).strip()
        if not flat:
            out_lines.append("")
            continue

        raw = seg(flat) if non_spaced else flat.split(" ")
        tokens = deque(chunk for tk in raw if tk for chunk in split_long(tk, max_chars))
        line = ""
        while tokens:
            tk = tokens.popleft()
            candidate = line + (joiner if line else "") + tk
            if len(candidate) <= max_chars:
                line = candidate
                if _ends_sentence(tk) and len(line) >= flush_at:
                    out_lines.append(line.strip())
                    line = ""
                continue

            cut = _last_soft_break(line)
            if cut > 0:
                out_lines.append(line[:cut].strip())
                line = line[cut:].strip()
                # the remainder holds no soft break, so the retry cannot loop
                tokens.appendleft(tk)
            else:
                if line.strip():
                    out_lines.append(line.strip())
                line = tk

        if line.strip():
            out_lines.append(line.strip())
        out_lines.append("")

    return "\n".join(collapse_blank_lines(out_lines)).strip()


def is_structural_line(line: str) -> bool:
    """Bullets, numbered items and short heading-like lines are kept verbatim."""
    if _STRUCTURAL.match(line):
        return True
    return bool(_HEADING_START.match(line)) and len(line) < _HEADING_MAX_LEN


def _has(languages: Sequence[str], code: str) -> bool:
    return any(code in str(lang).lower() for lang in languages)


def format_readable(text: str, *, languages: Sequence[str] = ("tha", "eng"), max_line: int = 60,
                    locale_cleanup: bool = False, word_spacing: bool = False,
                    segmenter: Optional[Segmenter] = None) -> str:
    if not text:
        return ""
    has_thai = _has(languages, "tha")
    has_eng = _has(languages, "eng")

    t = text
    if has_thai and locale_cleanup:
        t = clean_locale_text(t)
    if has_thai and word_spacing:
        t = space_words(t, segmenter)

    preserved: List[str] = []
    buf: List[str] = []

    def flush():
        para = "\n".join(buf).strip()
        if para:
            non_spaced = has_thai and (not has_eng or bool(THAI_CHAR.search(para)))
            preserved.append(break_into_lines(para, max_line, non_spaced, segmenter))
        buf.clear()

    for block in t.split("\n"):
        if is_structural_line(block):
            flush()
            preserved.append(block.strip())
        elif block.strip() == "":
            flush()
            preserved.append("")
        else:
            buf.append(block)
    flush()

    return "\n".join(collapse_blank_lines(preserved)).strip()


def postprocess(text: str, languages: Sequence[str], options: ReflowOptions,
                segmenter: Optional[Segmenter] = None) -> str:
    t = text or ""
    if _has(languages, "tha"):
        if options.locale_cleanup:
            t = clean_locale_text(t)
        if options.word_spacing:
            t = space_words(t, segmenter)
    if options.auto_wrap:
        t = format_readable(t, languages=languages, max_line=options.wrap_width, segmenter=segmenter)
    return t
