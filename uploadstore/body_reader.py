"""A request body wrapper that records read errors instead of raising them."""

from __future__ import annotations

import threading
from typing import BinaryIO


class BodyReader:
    """Wrap a binary stream, counting bytes and storing the first read error.

    After an error or end of stream every further read returns ``b""``, so a
    storage backend copying from this reader simply sees the stream end. The
    caller inspects :attr:`error` afterwards.
    """

    def __init__(self, reader: BinaryIO) -> None:
        self._reader = reader
        self._error: BaseException | None = None
        self._eof = False
        self._bytes_read = 0
        self._lock = threading.Lock()

    def read(self, size: int = -1) -> bytes:
        if self._error is not None or self._eof:
            return b""
        try:
            data = self._reader.read(size)
        except Exception as exc:
            self._error = exc
            return b""
        data = data or b""
        with self._lock:
            self._bytes_read += len(data)
        if not data and size != 0:
            self._eof = True
        return data

    @property
    def error(self) -> BaseException | None:
        """The stored error, or ``None`` if the stream ended normally."""
        return self._error

    @property
    def bytes_read(self) -> int:
        """Number of bytes read so far."""
        with self._lock:
            return self._bytes_read