# src/ladderocr/models.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Union

from PIL import Image

from .exceptions import LadderOCRError

# Text layers shorter than this are ignored and the page is recognized instead
MIN_PRE_EXTRACTED_CHARS = 50

BitmapSource = Union[Image.Image, Path, str, bytes]


@dataclass(frozen=True)
class Attempt:
    """One configured recognition try within the ladder."""
    label: str
    psm: int
    scale_mul: float
    binarize: bool
    ordinal: int = 0


@dataclass
class AttemptRecord:
    label: str
    outcome: str  # "ok" | "timeout" | "error"
    detail: Optional[str] = None


@dataclass
class Page:
    """Represents a single recognizable unit: an image or one page of a paged source."""
    bitmap: Optional[BitmapSource] = None
    pre_extracted: Optional[str] = None
    text: str = ""
    confidence: Optional[float] = None
    progress: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: List[AttemptRecord] = field(default_factory=list)

    def __post_init__(self):
        if self.pre_extracted is not None and len(self.pre_extracted) < MIN_PRE_EXTRACTED_CHARS:
            self.pre_extracted = None

    @property
    def is_settled(self) -> bool:
        return self.progress == 1

    def record_attempt(self, label: str, outcome: str, detail: Optional[str] = None):
        self.attempts.append(AttemptRecord(label=label, outcome=outcome, detail=detail))

    def settle(self):
        """The only 0 -> 1 progress transition. Called once, at a terminal state."""
        if self.progress != 0:
            raise RuntimeError("Page progress already settled")
        self.progress = 1


@dataclass
class Document:
    """A source file and its ordered pages."""
    name: str
    kind: str  # "image" | "paged"
    pages: List[Page] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class QueueItem:
    doc_index: int
    page_index: int


@dataclass
class ProcessingResult:
    text: str = ""
    confidence: Optional[float] = None
    error: Optional[LadderOCRError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class GuardResult:
    """Tagged outcome of a timeout-guarded operation."""
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    timed_out: bool = False
