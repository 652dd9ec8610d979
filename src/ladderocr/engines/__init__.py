# ladderocr/engines/__init__.py
from __future__ import annotations

import importlib
import logging
from typing import Any, Dict, Optional

from .base import BaseOCREngine, EngineSession, Recognition, SerializedSession

logger = logging.getLogger("ladderocr")

__all__ = [
    "BaseOCREngine",
    "EngineSession",
    "Recognition",
    "SerializedSession",
    "load_engine",
    "normalize_engine_alias",
]

_TESSERACT = "ladderocr.engines.tesseract_backend.TesseractOCREngine"


def normalize_engine_alias(name: str) -> str:
    """
    Allow short aliases (case-insensitive) and the module-only shorthand.
    Returns a fully qualified dotted path 'module.Class'.
    """
    if not name:
        return _TESSERACT
    original = name.strip().strip('"\'')
    alias = original.lower()
    if alias in ("tess", "tesseract", "pytesseract"):
        return _TESSERACT
    if alias.endswith(".tesseract_backend"):
        return _TESSERACT
    return original


def _import_obj(dotted: str):
    mod_path, _, attr = dotted.rpartition(".")
    if not mod_path or not attr:
        raise ImportError(f"Invalid backend path, {dotted}")
    mod = importlib.import_module(mod_path)
    try:
        return getattr(mod, attr)
    except AttributeError as e:
        raise ImportError(f"Backend class not found, {dotted}") from e


def load_engine(dotted: str, kwargs: Optional[Dict[str, Any]] = None) -> BaseOCREngine:
    path = normalize_engine_alias(dotted)
    try:
        EngineCls = _import_obj(path)
    except Exception:
        logger.exception("Cannot import backend, %s", path)
        raise
    engine = EngineCls(**(kwargs or {}))
    logger.info("OCR backend ready, %s", path)
    return engine
