"""
In-memory byte pipe connecting a tar producer to a remote exec consumer.

Writes block while the buffer is full, reads block while it is empty, so the
archive is never held in memory as a whole. Either side can close the pipe
with an error; the other side's next (or pending) read/write raises it.
"""

import threading
from typing import Optional

from ...errors import StreamFailureError

DEFAULT_MAX_BUFFER = 256 * 1024


class BytePipe:
    """
    A bounded, thread-safe byte pipe.

    Usage:
        pipe = BytePipe()
        # producer thread
        pipe.writer.write(b"...")
        pipe.writer.close()
        # consumer thread
        while chunk := pipe.reader.read(65536):
            ...
    """

    def __init__(self, max_buffer: int = DEFAULT_MAX_BUFFER):
        if max_buffer <= 0:
            raise ValueError("max_buffer must be positive")
        self.max_buffer = max_buffer
        self._cond = threading.Condition()
        self._buffer = bytearray()
        self._write_closed = False
        self._read_closed = False
        self._error: Optional[BaseException] = None
        self.reader = PipeReader(self)
        self.writer = PipeWriter(self)

    @property
    def error(self) -> Optional[BaseException]:
        """The first error either side closed the pipe with."""
        return self._error

    def _closed_error(self, message: str) -> BaseException:
        return self._error or StreamFailureError(message)

    def write(self, data) -> int:
        view = memoryview(data).cast("B")
        total = len(view)
        offset = 0
        with self._cond:
            while offset < total:
                if self._read_closed:
                    raise self._closed_error("write on a pipe whose reader is closed")
                if self._write_closed:
                    raise self._closed_error("write on a closed pipe")
                room = self.max_buffer - len(self._buffer)
                if room <= 0:
                    self._cond.wait()
                    continue
                chunk = view[offset:offset + room]
                self._buffer.extend(chunk)
                offset += len(chunk)
                self._cond.notify_all()
        return total

    def read(self, size: int = -1) -> bytes:
        """
        Read up to size bytes, blocking until some are available.

        Returns b"" once the writer closed cleanly and the buffer is drained.
        A negative size reads until end of stream.
        """
        if size is None or size < 0:
            parts = []
            while True:
                chunk = self.read(self.max_buffer)
                if not chunk:
                    return b"".join(parts)
                parts.append(chunk)

        with self._cond:
            while not self._buffer and not self._write_closed and not self._read_closed:
                self._cond.wait()
            if self._read_closed:
                raise self._closed_error("read on a closed pipe")
            if self._buffer:
                data = bytes(self._buffer[:size])
                del self._buffer[:size]
                self._cond.notify_all()
                return data
            if self._error is not None:
                raise self._error
            return b""

    def close_writer(self, error: Optional[BaseException] = None) -> None:
        """Signal end of stream, or failure when error is given."""
        with self._cond:
            if error is not None and self._error is None:
                self._error = error
            self._write_closed = True
            self._cond.notify_all()

    def close_reader(self, error: Optional[BaseException] = None) -> None:
        """Stop consuming; pending and later writes raise."""
        with self._cond:
            if error is not None and self._error is None:
                self._error = error
            self._read_closed = True
            self._cond.notify_all()


class PipeReader:
    """File-like read end of a BytePipe."""

    def __init__(self, pipe: BytePipe):
        self._pipe = pipe

    def read(self, size: int = -1) -> bytes:
        return self._pipe.read(size)

    def readable(self) -> bool:
        return True

    def close(self, error: Optional[BaseException] = None) -> None:
        self._pipe.close_reader(error)


class PipeWriter:
    """File-like write end of a BytePipe."""

    def __init__(self, pipe: BytePipe):
        self._pipe = pipe

    def write(self, data) -> int:
        return self._pipe.write(data)

    def writable(self) -> bool:
        return True

    def flush(self) -> None:
        pass

    def close(self, error: Optional[BaseException] = None) -> None:
        self._pipe.close_writer(error)
