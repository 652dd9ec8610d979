# src/ladderocr/pipeline.py
from __future__ import annotations

import functools
import json
import logging
import time
from pathlib import Path
from typing import List, Optional, Sequence, Union

from tqdm import tqdm

from . import export
from .budget import CancellationToken, PageBudget
from .config import OCRConfig
from .engines import BaseOCREngine, SerializedSession, load_engine
from .exceptions import EngineInitFailure, IngestionError, LadderOCRError, RecognitionFailure
from .ingest import DocumentRenderer, PasswordProvider, get_renderer, load_documents
from .logger import attach_queue_handler
from .ladder import EngineHandle, PageLadder
from .models import Document, Page, ProcessingResult, QueueItem
from .progress import PageProgress, ProgressChannel, ProgressEvent
from .reflow import ReflowOptions, Segmenter
from .runner import guard, run_blocking, run_with_concurrency

logger = logging.getLogger("ladderocr")

ENGINE_INIT_MAX_MS = 60_000


class OCRRunner:
    """
    Owns the in-memory documents of one session and drives the two phases:
    rendering (`ingest`) and recognition (`run`). Nothing is persisted except
    the optional exports and the JSONL error log.
    """

    def __init__(
        self,
        config: OCRConfig,
        *,
        engine: Optional[BaseOCREngine] = None,
        renderer: Optional[DocumentRenderer] = None,
        segmenter: Optional[Segmenter] = None,
        channel: Optional[ProgressChannel] = None,
    ):
        self.config = config
        if config.log_queue is not None:
            attach_queue_handler(config.log_queue)
        self.settings = config.settings()
        self.renderer = renderer or get_renderer("pymupdf")
        self.segmenter = segmenter
        self.channel = channel or ProgressChannel()
        self.reflow = ReflowOptions(
            locale_cleanup=config.locale_cleanup,
            word_spacing=config.word_spacing,
            auto_wrap=config.auto_wrap,
            wrap_width=config.wrap_width,
        )
        self._engine = engine
        self.documents: List[Document] = []
        self.queue: List[QueueItem] = []

    # -----------------------------
    # Logging helpers
    # -----------------------------
    def _log_error(self, source_path: str, error: LadderOCRError):
        if not self.config.error_log_path:
            return
        try:
            self.config.error_log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config.error_log_path, "a", encoding="utf-8") as f:
                log_entry = {
                    "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
                    "source_path": source_path,
                    "error_kind": getattr(error, "code", "error"),
                    "error_reason": str(error),
                }
                f.write(json.dumps(log_entry, ensure_ascii=False) + "\n")
        except Exception:
            logger.exception("Failed to write error log")

    # -----------------------------
    # State
    # -----------------------------
    @property
    def engine(self) -> BaseOCREngine:
        if self._engine is None:
            self._engine = load_engine(self.config.ocr_backend, self.config.ocr_backend_kwargs)
        return self._engine

    @property
    def pages(self) -> List[Page]:
        return [p for d in self.documents for p in d.pages]

    @property
    def overall(self) -> float:
        """Percentage of settled pages across all documents."""
        pages = self.pages
        if not pages:
            return 0.0
        return round(100.0 * sum(1 for p in pages if p.is_settled) / len(pages), 1)

    def _page(self, item: QueueItem) -> Page:
        return self.documents[item.doc_index].pages[item.page_index]

    def clear(self):
        self.documents = []
        self.queue = []
        logger.info("Cleared all documents")

    # -----------------------------
    # Stage 1. Render sources into documents
    # -----------------------------
    async def ingest(self, paths: Sequence[Union[str, Path]],
                     password_provider: Optional[PasswordProvider] = None) -> List[Document]:
        limit = self.settings.preset.render_limit(self.config.hardware_concurrency)
        try:
            docs = await load_documents(
                paths,
                renderer=self.renderer,
                scale=self.config.render_scale,
                limit=limit,
                password_provider=password_provider,
                channel=self.channel,
            )
        except LadderOCRError as e:
            logger.error("Ingestion aborted, %s", e)
            self._log_error(", ".join(str(p) for p in paths), e)
            raise
        except Exception as e:
            err = IngestionError(str(e))
            self._log_error(", ".join(str(p) for p in paths), err)
            raise err from e
        self.documents.extend(docs)
        return docs

    # -----------------------------
    # Stage 2. Recognition
    # -----------------------------
    async def _open_engine(self) -> EngineHandle:
        languages = self.settings.options.languages
        engine = self.engine
        r = await guard(run_blocking(engine.initialize, languages), ENGINE_INIT_MAX_MS, "engine init")
        handle = EngineHandle(
            engine=engine,
            languages=languages,
            session=SerializedSession(r.value, self.settings.preset.engine_params) if r.ok else None,
            resource_paths=self.config.resource_paths(),
        )
        if handle.degraded:
            err = EngineInitFailure(f"Engine session unavailable, {r.error}")
            logger.warning("%s. Using one-shot recognition for the rest of this run", err)
            self._log_error("<engine>", err)
        else:
            logger.info("Engine session ready, %s", type(engine).__name__)
        return handle

    def _publish(self, **fields):
        self.channel.publish(ProgressEvent(overall_pct=self.overall, **fields))

    async def _process(self, item: QueueItem, handle: EngineHandle, token: CancellationToken,
                       bar: tqdm) -> ProcessingResult:
        doc = self.documents[item.doc_index]
        page = self._page(item)
        label = f"page {item.page_index + 1}"
        progress = PageProgress(self.channel, page_index=item.page_index, total_pages=len(doc.pages),
                                filename=doc.name, overall_pct=self.overall)
        preset = self.settings.preset
        ladder = PageLadder(
            page,
            settings=self.settings,
            engine=handle,
            token=token,
            budget=PageBudget(preset.page_budget_ms, preset.timeout_ms),
            progress=progress,
            reflow=self.reflow,
            segmenter=self.segmenter,
            name=doc.name,
            label=label,
        )
        try:
            result = await ladder.run()
        except Exception as e:
            # a bug in one page must not take the batch down
            logger.exception("Unexpected failure on %s %s", doc.name, label)
            err = RecognitionFailure(f"Unexpected failure, {e}")
            if not page.is_settled:
                page.error, page.error_kind = str(err), err.code
                page.settle()
            result = ProcessingResult(error=err)
        finally:
            progress.stop()

        if result.error is not None:
            logger.warning("%s %s failed, %s", doc.name, label, result.error)
            self._log_error(f"{doc.name}#{item.page_index + 1}", result.error)
        bar.update(1)
        self._publish(phase="page done", page_index=item.page_index, total_pages=len(doc.pages),
                      filename=doc.name)
        return result

    async def run(self, documents: Optional[Sequence[Document]] = None,
                  token: Optional[CancellationToken] = None) -> List[ProcessingResult]:
        """
        Recognize every unsettled page. Results are aligned with `self.queue`.
        Per-page failures are recorded on the page and never abort the run.
        """
        if documents is not None:
            self.documents = list(documents)
        token = token or CancellationToken()
        self.queue = [
            QueueItem(d, p) for d, doc in enumerate(self.documents) for p in range(len(doc.pages))
        ]
        results: List[Optional[ProcessingResult]] = [None] * len(self.queue)
        logger.info("Run started, preset, %s, %d page(s)", self.settings.preset_id, len(self.queue))

        pending = []
        for pos, item in enumerate(self.queue):
            page = self._page(item)
            if page.is_settled:
                results[pos] = ProcessingResult(text=page.text, confidence=page.confidence)
            elif page.pre_extracted:
                page.text = page.pre_extracted
                page.confidence = 100.0
                page.settle()
                results[pos] = ProcessingResult(text=page.text, confidence=100.0)
            else:
                pending.append(pos)

        if pending:
            handle = await self._open_engine()
            limit = self.settings.preset.recognition_limit(self.config.hardware_concurrency)
            with tqdm(total=len(self.queue), initial=len(self.queue) - len(pending),
                      desc="Recognizing pages", disable=not self.config.show_progress) as bar:
                factories = [
                    functools.partial(self._process, self.queue[pos], handle, token, bar)
                    for pos in pending
                ]
                done = await run_with_concurrency(factories, limit)
            for pos, res in zip(pending, done):
                results[pos] = res

        failed = sum(1 for r in results if r is not None and not r.ok)
        logger.info("Run finished, %d page(s), %d failed", len(self.queue), failed)
        self._publish(phase="done", sub_pct=100)
        return results

    # -----------------------------
    # Export
    # -----------------------------
    def export(self) -> List[Path]:
        written: List[Path] = []
        out = self.config.output_path
        if out:
            if out.suffix.lower() == ".json":
                written.append(export.write_json(self.documents, out))
            else:
                written.append(export.write_text(self.documents, out))
        if self.config.export_txt:
            folder = out.parent if out else Path.cwd()
            written.extend(export.write_per_document_txt(self.documents, folder))
        return written
