# src/ladderocr/__init__.py
from .config import ActiveSettings, OCRConfig
from .exceptions import LadderOCRError
from .models import Document, Page, ProcessingResult
from .pipeline import OCRRunner
from .presets import PRESETS, get_preset

__version__ = "0.1.0"

__all__ = [
    "ActiveSettings",
    "Document",
    "LadderOCRError",
    "OCRConfig",
    "OCRRunner",
    "Page",
    "PRESETS",
    "ProcessingResult",
    "get_preset",
]
