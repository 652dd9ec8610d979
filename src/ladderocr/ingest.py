# src/ladderocr/ingest.py
from __future__ import annotations

import functools
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Sequence, Union

import fitz  # PyMuPDF
from PIL import Image

from .exceptions import IngestionError, PasswordIncorrect, PasswordRequired, RenderTimeout
from .models import MIN_PRE_EXTRACTED_CHARS, Document, Page
from .progress import ProgressChannel, ProgressEvent
from .runner import guard, run_blocking, run_with_concurrency

logger = logging.getLogger("ladderocr")

# Called with `incorrect=True` after a wrong password; returning None cancels.
PasswordProvider = Callable[[bool], Optional[str]]

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".bmp", ".gif", ".tif", ".tiff", ".webp"}
PAGED_SUFFIXES = {".pdf"}

RENDER_MAX_MS = 20_000

# MuPDF is not thread safe; every fitz call goes through this lock. Render
# workers therefore overlap only the Pillow side of a page.
_FITZ_LOCK = threading.Lock()
_MANY_BLANKS = re.compile(r"\n{3,}")


class RenderedPage(NamedTuple):
    text: Optional[str]
    image: Image.Image


# --- Step 1, interface ---
class DocumentRenderer(ABC):
    """
    Interface for any paged-document engine.
    """

    @abstractmethod
    def needs_password(self, file_path: Path) -> bool:
        raise NotImplementedError

    @abstractmethod
    def check_password(self, file_path: Path, password: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def page_count(self, file_path: Path, password: Optional[str] = None) -> int:
        raise NotImplementedError

    @abstractmethod
    def load_page(self, file_path: Path, index: int, scale: float,
                  password: Optional[str] = None) -> RenderedPage:
        """
        Rasterize one page and read its embedded text. The text is None when
        it is missing, too short or unreadable; only a failed raster raises.
        """
        raise NotImplementedError


# --- Step 2, concrete implementation with PyMuPDF ---
class PyMuPDFRenderer(DocumentRenderer):
    """Paged-document renderer that uses PyMuPDF."""

    @staticmethod
    def _open(file_path: Path, password: Optional[str]):
        doc = fitz.open(file_path)
        if doc.needs_pass and not doc.authenticate(password or ""):
            doc.close()
            raise PasswordIncorrect(f"{file_path.name} could not be unlocked")
        return doc

    def needs_password(self, file_path: Path) -> bool:
        with _FITZ_LOCK, fitz.open(file_path) as doc:
            return bool(doc.needs_pass)

    def check_password(self, file_path: Path, password: str) -> bool:
        with _FITZ_LOCK, fitz.open(file_path) as doc:
            return bool(doc.authenticate(password))

    def page_count(self, file_path: Path, password: Optional[str] = None) -> int:
        with _FITZ_LOCK, self._open(file_path, password) as doc:
            return len(doc)

    @staticmethod
    def _page_text(page, label: str) -> Optional[str]:
        """
        Extract text using layout aware blocks.
        Fails soft: a broken text layer only means the page gets recognized.
        """
        try:
            # sort=True gives reading order, b[6] == 0 means text block
            blocks = page.get_text("blocks", sort=True)
        except Exception as e:
            logger.warning("PyMuPDF failed to extract text from %s, %s", label, e)
            return None
        parts = [b[4] for b in blocks if len(b) > 6 and b[6] == 0]
        text = _MANY_BLANKS.sub("\n\n", "\n".join(parts)).strip()
        if len(text) < MIN_PRE_EXTRACTED_CHARS:
            return None
        return text

    def load_page(self, file_path: Path, index: int, scale: float,
                  password: Optional[str] = None) -> RenderedPage:
        with _FITZ_LOCK, self._open(file_path, password) as doc:
            page = doc.load_page(index)
            text = self._page_text(page, f"{file_path.name} page {index + 1}")
            pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            size, samples = (pix.width, pix.height), pix.samples
        # samples is a bytes copy, so Pillow can build the image outside the lock
        return RenderedPage(text, Image.frombytes("RGB", size, samples))


# --- Step 3, factory ---
def get_renderer(engine_name: str = "pymupdf") -> DocumentRenderer:
    name = (engine_name or "").lower()
    if name == "pymupdf":
        return PyMuPDFRenderer()
    raise ValueError(f"Unknown document engine, '{engine_name}'. Supported engines, ['pymupdf']")


def source_kind(file_path: Path) -> str:
    suffix = file_path.suffix.lower()
    if suffix in PAGED_SUFFIXES:
        return "paged"
    if suffix in IMAGE_SUFFIXES:
        return "image"
    raise IngestionError(f"Unsupported file type, {file_path.name}")


def unlock(renderer: DocumentRenderer, file_path: Path,
           password_provider: Optional[PasswordProvider]) -> Optional[str]:
    """
    Prompt-retry loop for encrypted sources. Returns the working password, or
    None when the source is not encrypted.
    """
    if not renderer.needs_password(file_path):
        return None
    incorrect = False
    while True:
        password = password_provider(incorrect) if password_provider else None
        if password is None:
            if incorrect:
                raise PasswordIncorrect(f"Wrong password for {file_path.name}, prompt cancelled")
            raise PasswordRequired(f"{file_path.name} is password protected")
        if renderer.check_password(file_path, password):
            return password
        logger.warning("Wrong password for %s", file_path.name)
        incorrect = True


async def _render_one(renderer: DocumentRenderer, file_path: Path, index: int, total: int,
                      scale: float, password: Optional[str], channel: ProgressChannel) -> Page:
    channel.publish(ProgressEvent(phase="render", page_index=index, total_pages=total,
                                  filename=file_path.name))

    r = await guard(run_blocking(renderer.load_page, file_path, index, scale, password),
                    RENDER_MAX_MS, f"render {index + 1}")
    if r.timed_out:
        raise RenderTimeout(f"{file_path.name}, {r.error}")
    if not r.ok:
        raise IngestionError(f"Cannot render page {index + 1} of {file_path.name}, {r.error}") from r.error
    return Page(bitmap=r.value.image, pre_extracted=r.value.text)


async def load_document(
    file_path: Union[str, Path],
    *,
    renderer: DocumentRenderer,
    scale: float = 2.0,
    limit: int = 4,
    password_provider: Optional[PasswordProvider] = None,
    channel: Optional[ProgressChannel] = None,
) -> Document:
    """
    Turn one source file into a Document.

    Images become a single page whose bitmap is loaded lazily by the ladder.
    Paged sources are rasterized page by page on the render pool; a page with
    a usable text layer carries it as pre-extracted text.
    """
    fp = Path(file_path)
    channel = channel or ProgressChannel()
    if not fp.is_file():
        raise IngestionError(f"File not found, {fp}")

    kind = source_kind(fp)
    if kind == "image":
        return Document(name=fp.name, kind="image", pages=[Page(bitmap=fp)])

    try:
        password = await run_blocking(unlock, renderer, fp, password_provider)
        total = await run_blocking(renderer.page_count, fp, password)
    except IngestionError:
        raise
    except Exception as e:
        raise IngestionError(f"Cannot open {fp.name}, {e}") from e
    if total == 0:
        logger.warning("Document has zero pages, %s", fp.name)

    factories = [
        functools.partial(_render_one, renderer, fp, i, total, scale, password, channel)
        for i in range(total)
    ]
    pages: List[Page] = await run_with_concurrency(factories, limit)
    n_text = sum(1 for p in pages if p.pre_extracted)
    logger.info("Loaded %s, %d page(s), %d with a text layer", fp.name, total, n_text)
    return Document(name=fp.name, kind="paged", pages=pages)


async def load_documents(paths: Sequence[Union[str, Path]], **kwargs) -> List[Document]:
    """Sources are loaded one after another; the first failure aborts the batch."""
    documents = []
    for p in paths:
        documents.append(await load_document(p, **kwargs))
    return documents
