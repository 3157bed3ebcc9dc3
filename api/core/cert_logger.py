"""
Per-operation log for certificate lifecycle operations.

Every line is kept in an in-memory transcript (persisted to the
certificate record when the operation ends) and offered to at most one
live listener through a bounded queue. A slow listener loses lines; the
transcript never does.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from datetime import datetime

from config import settings
from core.cert_store import get_cert_store

logger = logging.getLogger(__name__)

_CLOSED = object()


class CertLogger:
    """
    Operation log bound to an optional managed certificate.

    Lines may be produced from worker threads (the ACME client runs in
    ``asyncio.to_thread``); delivery to the listener always happens on
    the event loop that created the logger.
    """

    def __init__(self, cert_id: int | None = None, queue_size: int | None = None):
        self.cert_id = cert_id
        self.dropped = 0
        self._lines: list[str] = []
        self._lock = threading.Lock()
        self._closed = False
        self._queue_size = queue_size or settings.cert_log_queue_size
        # One slot is reserved for the end-of-stream marker
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size + 1)
        self._loop = asyncio.get_running_loop()

    def set_cert_id(self, cert_id: int | None) -> None:
        self.cert_id = cert_id

    def info(self, message: str) -> None:
        self._emit("INFO", message)

    def error(self, err: Exception | str) -> None:
        self._emit("ERROR", str(err) or type(err).__name__)

    def _emit(self, level: str, message: str) -> None:
        line = f"[{datetime.now():%Y-%m-%d %H:%M:%S}] [{level}] {message}"
        logger.debug(line)
        with self._lock:
            if self._closed:
                return
            self._lines.append(line)
            self._schedule(line)

    def _schedule(self, item) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._deliver, item)

    def _deliver(self, item) -> None:
        if item is _CLOSED:
            if self.dropped:
                logger.warning(f"Operation log listener missed {self.dropped} line(s)")
            self._queue.put_nowait(item)
            return
        if self._queue.qsize() >= self._queue_size:
            self.dropped += 1
            return
        self._queue.put_nowait(item)

    def transcript(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    async def stream(self):
        """Yield lines in production order until the log is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self) -> None:
        """End the stream and save the transcript to the bound certificate."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._schedule(_CLOSED)

        if self.cert_id:
            try:
                await get_cert_store().update_log(self.cert_id, self.transcript())
            except Exception as e:
                logger.warning(f"Failed to save operation log for certificate {self.cert_id}: {e}")

    @contextmanager
    def capture(self, logger_name: str = "acme"):
        """Forward records of a library logger into this log while the block runs."""
        target = logging.getLogger(logger_name)
        handler = OperationLogHandler(self)
        previous_level = target.level
        target.addHandler(handler)
        if target.getEffectiveLevel() > logging.INFO:
            target.setLevel(logging.INFO)
        try:
            yield handler
        finally:
            target.removeHandler(handler)
            target.setLevel(previous_level)


class OperationLogHandler(logging.Handler):
    """logging.Handler that writes into a CertLogger."""

    def __init__(self, cert_logger: CertLogger, level: int = logging.INFO):
        super().__init__(level)
        self.cert_logger = cert_logger

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        if record.levelno >= logging.ERROR:
            self.cert_logger.error(message)
        else:
            self.cert_logger.info(message)
