"""
Bounded in-memory byte pipe between one writer thread and one reader thread.

Writes block while the buffer is full and reads block while it is empty,
so memory use stays bounded by the capacity no matter how much data flows
through. Either end can close the pipe with an error; the other end then
sees that error on its next read or write.
"""

import threading
from typing import Optional, Tuple


class PipeClosedError(IOError):
    """Raised when writing to or reading from a pipe closed by the other end."""
    pass


class _PipeState:
    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"Pipe capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.buffer = bytearray()
        self.cond = threading.Condition()
        self.writer_closed = False
        self.writer_error: Optional[BaseException] = None
        self.reader_closed = False
        self.reader_error: Optional[BaseException] = None


class PipeWriter:
    """Writing end of a pipe."""

    def __init__(self, state: _PipeState):
        self._state = state

    def write(self, data) -> int:
        """
        Write all of ``data``, blocking while the buffer is full.

        Raises:
            PipeClosedError: If the reader closed its end (chained to its error)
        """
        state = self._state
        view = memoryview(data).cast('B')
        written = 0

        with state.cond:
            if state.writer_closed:
                raise PipeClosedError("write to closed pipe")

            while written < len(view):
                while len(state.buffer) >= state.capacity and not state.reader_closed:
                    state.cond.wait()

                if state.reader_closed:
                    raise PipeClosedError("read end of pipe closed") from state.reader_error

                room = state.capacity - len(state.buffer)
                chunk = view[written:written + room]
                state.buffer += chunk
                written += len(chunk)
                state.cond.notify_all()

        return written

    def flush(self):
        pass

    def writable(self) -> bool:
        return True

    def close(self, error: Optional[BaseException] = None):
        """
        Close the write end. Pending data stays readable.

        Args:
            error: If given, the reader raises it instead of seeing end-of-stream
        """
        state = self._state
        with state.cond:
            if state.writer_closed:
                return
            state.writer_closed = True
            state.writer_error = error
            state.cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._state.writer_closed


class PipeReader:
    """Reading end of a pipe."""

    def __init__(self, state: _PipeState):
        self._state = state

    def read(self, size: int = -1) -> bytes:
        """
        Read up to ``size`` bytes, blocking until data is available.

        Returns b'' at end of stream. ``size < 0`` reads until the writer closes.

        Raises:
            The writer's close error, if it closed with one
            PipeClosedError: If this end was already closed
        """
        if size is None or size < 0:
            return self._read_all()

        state = self._state
        with state.cond:
            if state.reader_closed:
                raise PipeClosedError("read from closed pipe")

            while not state.buffer and not state.writer_closed:
                state.cond.wait()

            if not state.buffer:
                if state.writer_error is not None:
                    raise state.writer_error
                return b''

            data = bytes(state.buffer[:size])
            del state.buffer[:size]
            state.cond.notify_all()
            return data

    def _read_all(self) -> bytes:
        chunks = []
        while True:
            data = self.read(self._state.capacity)
            if not data:
                return b''.join(chunks)
            chunks.append(data)

    def readable(self) -> bool:
        return True

    def close(self, error: Optional[BaseException] = None):
        """
        Close the read end. Blocked and future writes fail with PipeClosedError.

        Args:
            error: Cause attached to the writer's PipeClosedError
        """
        state = self._state
        with state.cond:
            if state.reader_closed:
                return
            state.reader_closed = True
            state.reader_error = error
            state.buffer.clear()
            state.cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._state.reader_closed


def make_pipe(capacity: int = 1024 * 1024) -> Tuple[PipeReader, PipeWriter]:
    """
    Create a connected (reader, writer) pair.

    Args:
        capacity: Maximum number of buffered bytes
    """
    state = _PipeState(capacity)
    return PipeReader(state), PipeWriter(state)
