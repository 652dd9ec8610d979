# ladderocr/engines/tesseract_backend.py
from __future__ import annotations

import logging
import os
import platform
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytesseract as pt
from PIL import Image

from .base import BaseOCREngine, EngineSession, Recognition

logger = logging.getLogger("ladderocr")


def _as_int(x, default: int) -> int:
    try:
        if isinstance(x, str):
            x = x.strip().rstrip(",}] ")
        return int(x)
    except Exception:
        m = re.search(r"-?\d+", str(x))
        return int(m.group()) if m else default


def resolve_tesseract_cmd() -> str | None:
    # 1) explicit env override
    cmd = os.getenv("TESSERACT_CMD")
    if cmd and Path(cmd).exists():
        return cmd

    # 2) look on PATH
    cmd = shutil.which("tesseract")
    if cmd:
        return cmd

    # 3) common fallbacks by OS
    system = platform.system()
    if system == "Windows":
        candidates = [
            r"C:\Program Files\Tesseract-OCR\tesseract.exe",
            r"C:\Program Files (x86)\Tesseract-OCR\tesseract.exe",
        ]
    elif system == "Darwin":
        candidates = ["/opt/homebrew/bin/tesseract", "/usr/local/bin/tesseract"]
    else:
        candidates = ["/usr/bin/tesseract", "/usr/local/bin/tesseract", "/snap/bin/tesseract"]

    for p in candidates:
        if Path(p).exists():
            return p
    return None


# Map common ISO codes to Tesseract's traineddata names
_TESS_LANG_MAP = {
    "th": "tha",
    "en": "eng",
    "vi": "vie",
}

# Engine parameters that map to command line flags rather than -c variables
_FLAG_PARAMS = {
    "tessedit_ocr_engine_mode": "--oem",
    "user_defined_dpi": "--dpi",
}


def tesseract_lang(languages: Sequence[str]) -> str:
    if isinstance(languages, str):
        languages = languages.replace(",", "+").split("+")
    codes = [_TESS_LANG_MAP.get(str(l).strip().lower(), str(l).strip().lower()) for l in languages if l]
    # keep caller order, Tesseract weights the first language
    seen: List[str] = []
    for c in codes:
        if c and c not in seen:
            seen.append(c)
    return "+".join(seen) or "eng"


def build_config(psm: int, params: Optional[Dict[str, Any]] = None,
                 tessdata_dir: Optional[str] = None, extra_config: str = "") -> str:
    parts = [f"--psm {_as_int(psm, 6)}"]
    for key, value in (params or {}).items():
        flag = _FLAG_PARAMS.get(key)
        if flag:
            parts.append(f"{flag} {_as_int(value, 0)}")
        else:
            parts.append(f"-c {key}={value}")
    if tessdata_dir:
        parts.append(f'--tessdata-dir "{tessdata_dir}"')
    if extra_config:
        parts.append(extra_config)
    return " ".join(parts)


def _to_pil(img) -> Image.Image:
    if isinstance(img, Image.Image):
        return img if img.mode in ("RGB", "L") else img.convert("RGB")
    return Image.open(img).convert("RGB")


def data_to_recognition(data: Dict[str, List[Any]]) -> Recognition:
    """
    Rebuild text from image_to_data output: words joined per line, lines per
    paragraph, paragraphs separated by a blank line. Confidence is the mean of
    the word confidences Tesseract reported (>= 0).
    """
    paragraphs: Dict[tuple, Dict[int, List[str]]] = {}
    confs: List[float] = []
    n = len(data.get("text", []))
    for i in range(n):
        word = str(data["text"][i] or "").strip()
        conf = float(data.get("conf", [-1] * n)[i])
        if not word:
            continue
        if conf >= 0:
            confs.append(conf)
        para_key = (data["block_num"][i], data["par_num"][i])
        lines = paragraphs.setdefault(para_key, {})
        lines.setdefault(data["line_num"][i], []).append(word)

    blocks = []
    for lines in paragraphs.values():
        blocks.append("\n".join(" ".join(words) for words in lines.values()))
    text = "\n\n".join(blocks)
    confidence = round(sum(confs) / len(confs), 2) if confs else None
    return Recognition(text=text, confidence=confidence)


def _run(image, lang: str, config: str, timeout: float = 0) -> Recognition:
    # pytesseract kills the tesseract child once `timeout` seconds pass (0 = no limit)
    data = pt.image_to_data(
        _to_pil(image), lang=lang, config=config, output_type=pt.Output.DICT, timeout=timeout
    )
    return data_to_recognition(data)


class TesseractSession(EngineSession):
    def __init__(self, lang: str, tessdata_dir: Optional[str] = None, extra_config: str = ""):
        self.lang = lang
        self.tessdata_dir = tessdata_dir
        self.extra_config = extra_config
        self._config = build_config(6, None, tessdata_dir, extra_config)

    def configure(self, psm: int, params: Optional[Dict[str, Any]] = None) -> None:
        self._config = build_config(psm, params, self.tessdata_dir, self.extra_config)

    def recognize(self, image: Image.Image, timeout_s: float = 0) -> Recognition:
        return _run(image, self.lang, self._config, timeout_s)


class TesseractOCREngine(BaseOCREngine):
    """
    Pytesseract-based backend.

    Kwargs supported (all optional):
      - tesseract_cmd: full path to tesseract binary (Windows)
      - tessdata_prefix / tessdata_dir: path to tessdata directory
      - extra_config: str of extra flags (appended to config string)
      - (ignored safely if present): gpu, use_gpu, languages, lang
    """

    def __init__(self, **kwargs: Any):
        k = dict(kwargs)
        for junk in ("gpu", "use_gpu", "languages", "lang"):
            k.pop(junk, None)

        tesseract_cmd = k.pop("tesseract_cmd", None) or k.pop("tesseract_path", None) or resolve_tesseract_cmd()
        if tesseract_cmd:
            pt.pytesseract.tesseract_cmd = str(tesseract_cmd)

        tessdata = k.pop("tessdata_dir", None) or k.pop("tessdata_prefix", None)
        self.tessdata_dir = str(tessdata) if tessdata else None
        self.extra_config = str(k.pop("extra_config", "")).strip()
        if k:
            logger.warning("Ignoring unknown Tesseract backend options, %s", sorted(k))

    def initialize(self, languages: Sequence[str]) -> EngineSession:
        # raises TesseractNotFoundError when the binary is missing
        version = pt.get_tesseract_version()
        lang = tesseract_lang(languages)
        available = set(pt.get_languages(config=build_config(6, None, self.tessdata_dir)))
        missing = [c for c in lang.split("+") if available and c not in available]
        if missing:
            raise RuntimeError(f"Tesseract traineddata not installed, {missing}")
        logger.info("Tesseract %s session ready, lang, %s", version, lang)
        return TesseractSession(lang, self.tessdata_dir, self.extra_config)

    def recognize_once(self, image: Image.Image, languages: Sequence[str],
                       resource_paths: Optional[Dict[str, str]] = None,
                       timeout_s: float = 0) -> Recognition:
        tessdata = (resource_paths or {}).get("tessdata_dir") or self.tessdata_dir
        config = build_config(6, None, tessdata, self.extra_config)
        return _run(image, tesseract_lang(languages), config, timeout_s)
