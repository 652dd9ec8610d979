# ladderocr/engines/base.py
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from PIL import Image


@dataclass
class Recognition:
    text: str
    confidence: Optional[float] = None


class EngineSession(ABC):
    """A persistent, configured engine instance. Not safe for concurrent calls."""

    @abstractmethod
    def configure(self, psm: int, params: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    def recognize(self, image: Image.Image, timeout_s: float = 0) -> Recognition:
        """
        Recognize one image. A positive `timeout_s` is a hard limit: the engine
        must abort the call (and raise) once it is reached. 0 means no limit.
        """
        pass


class BaseOCREngine(ABC):
    @abstractmethod
    def initialize(self, languages: Sequence[str]) -> EngineSession:
        """Create a persistent session. Raise on failure."""
        pass

    @abstractmethod
    def recognize_once(self, image: Image.Image, languages: Sequence[str],
                       resource_paths: Optional[Dict[str, str]] = None,
                       timeout_s: float = 0) -> Recognition:
        """Stateless one-shot recognition that needs no session. Same `timeout_s` contract."""
        pass


class SerializedSession:
    """
    Enforces at most one in-flight call on a shared session.

    configure + recognize run under one lock. With a deadline, the wait for
    the lock counts against it and the engine gets only what is left, so an
    abandoned call frees the session no later than its own deadline.
    """

    def __init__(self, session: EngineSession, params: Optional[Dict[str, Any]] = None):
        self.session = session
        self.params = dict(params or {})
        self._lock = threading.Lock()

    def recognize(self, image: Image.Image, psm: int, timeout_s: float = 0) -> Recognition:
        if timeout_s <= 0:
            with self._lock:
                self.session.configure(psm, self.params)
                return self.session.recognize(image)

        t0 = time.monotonic()
        if not self._lock.acquire(timeout=timeout_s):
            raise TimeoutError(f"engine busy for {timeout_s:.2f}s")
        try:
            left = timeout_s - (time.monotonic() - t0)
            if left <= 0:
                raise TimeoutError(f"engine busy for {timeout_s:.2f}s")
            self.session.configure(psm, self.params)
            return self.session.recognize(image, left)
        finally:
            self._lock.release()
