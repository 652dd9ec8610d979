# src/ladderocr/logger.py

import logging
import queue
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union

LOGGER_NAME = "ladderocr"

# Page-progress records travel at their own level so sinks can split them off
PROGRESS = 25
logging.addLevelName(PROGRESS, "PROGRESS")


def progress(self, msg, *args, **kwargs):
    if self.isEnabledFor(PROGRESS):
        self._log(PROGRESS, msg, args, **kwargs)


logging.Logger.progress = progress

FILE_FORMAT = "%(asctime)s | %(threadName)-15s | %(levelname)-8s | %(message)s"
CONSOLE_FORMAT = "%(levelname)-8s | %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024


class UILogHandler(logging.Handler):
    """Formatted log lines for a UI text pane."""
    def __init__(self, q: queue.Queue):
        super().__init__()
        self.q = q
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord):
        try:
            self.q.put_nowait(self.format(record))
        except queue.Full:
            pass


class UIEventHandler(logging.Handler):
    """
    Turns records carrying an `event` (a ProgressEvent) into wire dicts.

    Delivery is best-effort: when the queue is bounded and full the event is
    dropped and counted, so a slow consumer never stalls page processing.
    """
    def __init__(self, q: queue.Queue):
        super().__init__()
        self.q = q
        self.dropped = 0

    def emit(self, record: logging.LogRecord):
        event = getattr(record, "event", None)
        if event is None:
            return
        try:
            self.q.put_nowait(event.as_dict() if hasattr(event, "as_dict") else dict(event))
        except queue.Full:
            self.dropped += 1
        except Exception:
            self.handleError(record)


class LevelFilter(logging.Filter):
    """Keep only records at `levelno`, or everything except them when `exclude`."""
    def __init__(self, levelno: int, exclude: bool = False):
        super().__init__()
        self.levelno = levelno
        self.exclude = exclude

    def filter(self, record: logging.LogRecord) -> bool:
        return (record.levelno == self.levelno) != self.exclude


def _sink(handler: logging.Handler, level: int, *, progress_only: bool = False) -> logging.Handler:
    handler.setLevel(level)
    handler.addFilter(LevelFilter(PROGRESS, exclude=not progress_only))
    return handler


def setup_logging(
    log_queue: queue.Queue,
    *,
    text_ui_queue: Optional[queue.Queue] = None,
    event_ui_queue: Optional[queue.Queue] = None,
    console: bool = False,
    level: int = logging.INFO,
    file_path: Optional[Union[str, Path]] = None,
    file_level: Optional[int] = None,
) -> QueueListener:
    """
    Build the listener side of the logging setup.

    Args:
        log_queue: Queue the "ladderocr" logger writes into
            (see `attach_queue_handler`).
        text_ui_queue: Receives formatted log lines.
        event_ui_queue: Receives progress event dicts, never plain log lines.
        console: Also print log lines to stderr.
        level: Level for the console and UI sinks.
        file_path: Rotating log file; parent directories are created.
        file_level: Level for the file sink, defaults to `level`.

    Returns:
        An unstarted QueueListener. The caller owns start() and stop().
    """
    sinks: List[logging.Handler] = []

    if file_path:
        fp = Path(file_path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(fp, maxBytes=LOG_FILE_MAX_BYTES, backupCount=2, encoding="utf-8")
        fh.setFormatter(logging.Formatter(FILE_FORMAT))
        sinks.append(_sink(fh, file_level if file_level is not None else level))

    if console:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        sinks.append(_sink(ch, level))

    if text_ui_queue is not None:
        sinks.append(_sink(UILogHandler(text_ui_queue), level))

    if event_ui_queue is not None:
        sinks.append(_sink(UIEventHandler(event_ui_queue), PROGRESS, progress_only=True))

    return QueueListener(log_queue, *sinks, respect_handler_level=True)


def attach_queue_handler(log_queue: queue.Queue, level: int = logging.DEBUG) -> logging.Logger:
    """
    Route the package logger into `log_queue`, replacing any handlers it had.
    A logger already routed into `log_queue` is left as it is.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if any(isinstance(h, QueueHandler) and h.queue is log_queue for h in logger.handlers):
        return logger
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(QueueHandler(log_queue))
    return logger
