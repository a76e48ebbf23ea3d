"""Batched positional reads from a file, with per-thread I/O contexts."""

from __future__ import annotations

import itertools
import os
import threading
from dataclasses import dataclass, field
from types import TracebackType
from typing import Iterable

from vamana.logger import get_stream

MAX_EVENTS = 1024

_context_ids = itertools.count(1)


class ReaderError(Exception):
    """Raised when a file read cannot be carried out."""


@dataclass
class AlignedRead:
    """A request to read ``length`` bytes at ``offset`` into ``buf``."""

    offset: int
    length: int
    buf: bytearray | memoryview = field(repr=False)


@dataclass(frozen=True)
class _IOContext:
    thread_id: int
    context_id: int


def _log(name: str, message: str) -> None:
    stream = get_stream(name)
    stream.write(message + "\n")
    stream.flush()


class AlignedFileReader:
    """Reads batches of requests from one file; each thread registers a context."""

    def __init__(self) -> None:
        self._fd: int | None = None
        self._contexts: dict[int, _IOContext] = {}
        self._ctx_lock = threading.Lock()
        self._seek_lock = threading.Lock()

    def open(self, path: str | os.PathLike[str]) -> None:
        """Open ``path`` read-only."""
        try:
            self._fd = os.open(os.fspath(path), os.O_RDONLY | getattr(os, "O_BINARY", 0))
        except OSError as exc:
            raise ReaderError(f"Cannot open {path}: {exc}") from exc
        _log("cerr", f"Opened file : {os.fspath(path)}")

    def close(self) -> None:
        """Close the file if it is open."""
        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)

    def register_thread(self) -> None:
        """Give the calling thread its own I/O context."""
        my_id = threading.get_ident()
        with self._ctx_lock:
            if my_id in self._contexts:
                _log("cerr", "multiple calls to register_thread from the same thread")
                return
            ctx = _IOContext(my_id, next(_context_ids))
            self._contexts[my_id] = ctx
        _log("cout", f"allocating ctx: {ctx.context_id} to thread-id:{my_id}")

    def deregister_thread(self) -> None:
        """Release the calling thread's I/O context."""
        my_id = threading.get_ident()
        with self._ctx_lock:
            if self._contexts.pop(my_id, None) is None:
                raise ReaderError("Thread was not registered")
        _log("cerr", f"returned ctx from thread-id:{my_id}")

    def get_ctx(self) -> _IOContext:
        """Return the calling thread's I/O context."""
        with self._ctx_lock:
            try:
                return self._contexts[threading.get_ident()]
            except KeyError:
                raise ReaderError("bad thread access; no I/O context registered") from None

    def read(self, requests: Iterable[AlignedRead], ctx: _IOContext, async_: bool = False) -> None:
        """Carry out every request, filling each request's buffer in place."""
        if self._fd is None:
            raise ReaderError("File is not open")
        with self._ctx_lock:
            if self._contexts.get(ctx.thread_id) != ctx:
                raise ReaderError("I/O context is not registered")
        pending = list(requests)
        for start in range(0, len(pending), MAX_EVENTS):
            for request in pending[start:start + MAX_EVENTS]:
                self._execute(request)

    def _execute(self, request: AlignedRead) -> None:
        target = memoryview(request.buf).cast("B")
        if request.length < 0 or request.offset < 0:
            raise ReaderError(f"Invalid read request: {request!r}")
        if len(target) < request.length:
            raise ReaderError(
                f"Buffer of {len(target)} bytes cannot hold a {request.length}-byte read"
            )
        data = self._pread(request.length, request.offset)
        target[: len(data)] = data

    def _pread(self, length: int, offset: int) -> bytes:
        assert self._fd is not None
        try:
            if hasattr(os, "pread"):
                return os.pread(self._fd, length, offset)
            with self._seek_lock:
                os.lseek(self._fd, offset, os.SEEK_SET)
                return os.read(self._fd, length)
        except OSError as exc:
            raise ReaderError(f"Read of {length} bytes at {offset} failed: {exc}") from exc

    def __enter__(self) -> AlignedFileReader:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()