# src/ladderocr/export.py
"""Export surfaces. Every function reads in-memory documents only."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Sequence, Union

from slugify import slugify

from .models import Document

logger = logging.getLogger("ladderocr")

PathLike = Union[str, Path]


def safe_fname(name: str, fallback: str = "file") -> str:
    """
    Create a filesystem safe name, preserve extension when present.
    """
    name = (name or "").strip() or fallback
    if "." in name:
        base, ext = name.rsplit(".", 1)
        return f"{slugify(base)[:100] or fallback}.{ext}"
    return slugify(name)[:100] or fallback


def _page_body(text: str, error: str) -> str:
    return (text or error or "").strip()


def document_text(doc: Document) -> str:
    if doc.kind == "image":
        page = doc.pages[0] if doc.pages else None
        body = _page_body(page.text, page.error) if page else ""
        return f"# Image: {doc.name}\n{body}\n"
    blocks = [
        f"----- Page {i} -----\n{_page_body(p.text, p.error)}\n"
        for i, p in enumerate(doc.pages, start=1)
    ]
    return f"# PDF: {doc.name}\n" + "\n".join(blocks) + "\n"


def all_text(documents: Sequence[Document]) -> str:
    """Flat text of every page; failed pages show their error message instead."""
    return "\n".join(document_text(d) for d in documents).strip()


def page_records(documents: Sequence[Document]) -> List[Dict]:
    return [
        {
            "name": doc.name,
            "kind": doc.kind,
            "page": i,
            "confidence": page.confidence,
            "text": page.text,
            "error": page.error,
        }
        for doc in documents
        for i, page in enumerate(doc.pages, start=1)
    ]


def document_records(documents: Sequence[Document]) -> List[Dict]:
    """Per-document view, pages nested under their source."""
    out = []
    for doc in documents:
        out.append({
            "name": doc.name,
            "kind": doc.kind,
            "pages": [
                {
                    "page": i,
                    "confidence": p.confidence,
                    "text": p.text,
                    "error": p.error,
                    "error_kind": p.error_kind,
                    "attempts": [{"label": a.label, "outcome": a.outcome} for a in p.attempts],
                }
                for i, p in enumerate(doc.pages, start=1)
            ],
        })
    return out


def write_text(documents: Sequence[Document], path: PathLike) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(all_text(documents) + "\n", encoding="utf-8")
    return out


def write_json(documents: Sequence[Document], path: PathLike, flat: bool = False) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    data = page_records(documents) if flat else document_records(documents)
    out.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    return out


def write_per_document_txt(documents: Sequence[Document], out_dir: PathLike) -> List[Path]:
    """One .txt per document, named after the slugified source name."""
    folder = Path(out_dir)
    folder.mkdir(parents=True, exist_ok=True)
    written = []
    for doc in documents:
        text = "\n\n--- PAGE BREAK ---\n\n".join(p.text for p in doc.pages if p.text)
        if not text:
            continue
        stem = safe_fname(Path(doc.name).stem, fallback="document")
        target = folder / f"{stem}.txt"
        target.write_text(text, encoding="utf-8")
        written.append(target)
    logger.info("Wrote %d text file(s) to %s", len(written), folder)
    return written
