"""Buffered log streams bound to standard output and standard error."""

from __future__ import annotations

import atexit
import contextlib
import enum
import io
import sys
import threading
from typing import Callable, TextIO

DEFAULT_BUFFER_SIZE = 1024


class LogLevel(enum.Enum):
    """Severity attached to a log stream."""

    INFO = "info"
    ERROR = "error"


class LogStream:
    """A write-only, thread-safe buffered stream over stdout or stderr.

    Text is collected until the buffer fills or ``flush`` is called, then
    written to the underlying stream and flushed there.
    """

    def __init__(self, stream: TextIO | None, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if stream is None:
            raise ValueError("Stream passed to LogStream cannot be None")
        if stream is not sys.stdout and stream is not sys.stderr:
            raise ValueError("The custom logger only supports stdout and stderr.")
        if buffer_size < 1:
            raise ValueError("buffer_size must be positive")
        self._stream = stream
        self.level = LogLevel.INFO if stream is sys.stdout else LogLevel.ERROR
        self.buffer_size = buffer_size
        self._parts: list[str] = []
        self._pending = 0
        self._lock = threading.RLock()

    @property
    def stream(self) -> TextIO:
        """The stream the log writes to."""
        return self._stream

    def write(self, text: str) -> int:
        """Buffer ``text``; emit the buffer once it holds ``buffer_size`` characters."""
        with self._lock:
            self._parts.append(text)
            self._pending += len(text)
            if self._pending >= self.buffer_size:
                self._emit()
        return len(text)

    def flush(self) -> None:
        """Write out everything buffered so far."""
        with self._lock:
            self._emit()

    def read(self, *args: object) -> str:
        """Always fails: log streams are write-only."""
        raise io.UnsupportedOperation("Attempt to read on a stream meant only for writing.")

    def _emit(self) -> None:
        if not self._parts:
            return
        text = "".join(self._parts)
        self._parts.clear()
        self._pending = 0
        self._stream.write(text)
        self._stream.flush()


_TARGETS: dict[str, Callable[[], TextIO]] = {
    "cout": lambda: sys.stdout,
    "cerr": lambda: sys.stderr,
}
_cache: dict[str, LogStream] = {}
_cache_lock = threading.Lock()


def get_stream(name: str) -> LogStream:
    """Return the shared log stream ``"cout"`` or ``"cerr"``."""
    try:
        target = _TARGETS[name]()
    except KeyError:
        raise ValueError(f"Unknown log stream: {name!r}") from None
    with _cache_lock:
        log = _cache.get(name)
        if log is None or log.stream is not target:
            if log is not None:
                with contextlib.suppress(ValueError, OSError):
                    log.flush()
            log = LogStream(target)
            _cache[name] = log
        return log


@atexit.register
def _flush_all() -> None:
    with _cache_lock:
        for log in _cache.values():
            with contextlib.suppress(ValueError, OSError):
                log.flush()