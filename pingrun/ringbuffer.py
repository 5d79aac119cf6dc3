"""
Capture buffers for ping bodies.

Both buffers accept writes until the first read, seek or tell. From then on
they are read only and replay the same snapshot every time they are rewound
with seek(0), which lets an HTTP request carrying one as its body be
resubmitted without running the command again.
"""

from __future__ import annotations

import abc
import os
from typing import Iterator

from pingrun.errors import BufferReadOnlyError


class SeekableSizedBody(abc.ABC):
    """A request body with a known length that can be replayed from the start."""

    @abc.abstractmethod
    def read(self, size: int = -1) -> bytes: ...

    @abc.abstractmethod
    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int: ...

    @abc.abstractmethod
    def tell(self) -> int: ...

    @abc.abstractmethod
    def __len__(self) -> int: ...

    @abc.abstractmethod
    def wrapped(self) -> bool: ...

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(8192)
            if not chunk:
                return
            yield chunk


def _check_rewind(offset: int, whence: int) -> None:
    if whence != os.SEEK_SET:
        raise ValueError("invalid whence, only SEEK_SET is supported")
    if offset != 0:
        raise ValueError(f"can only rewind to position 0, got {offset}")


class CaptureBuffer(SeekableSizedBody):
    """Fixed capacity ring buffer keeping the last `capacity` bytes written."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._cap = capacity
        self._buf = bytearray()
        self._idx = 0
        self._idx_at_close = 0
        self._unread = 0
        self._total = 0
        self._write_closed = False

    @property
    def cap(self) -> int:
        return self._cap

    @property
    def closed_for_write(self) -> bool:
        return self._write_closed

    def __len__(self) -> int:
        return len(self._buf)

    def __repr__(self) -> str:
        return f"CaptureBuffer(len={len(self)}, cap={self._cap}, read_only={self._write_closed})"

    def wrapped(self) -> bool:
        return self._total > self._cap

    def write(self, data: bytes) -> int:
        if self._write_closed:
            raise BufferReadOnlyError()

        view = memoryview(data).cast("B")
        size = len(view)
        if size == 0:
            return 0
        self._total += size

        # Grow the backing store by the write size, up to capacity.
        if len(self._buf) < self._cap:
            new_len = min(self._idx + size, self._cap)
            self._buf.extend(bytes(new_len - len(self._buf)))

        # Bytes that would be overwritten within this same write are skipped.
        offset = 0
        if size > self._cap:
            offset = size - self._cap
            self._idx = (self._idx + offset) % self._cap

        while offset < size:
            chunk = min(self._cap - self._idx, size - offset)
            self._buf[self._idx:self._idx + chunk] = view[offset:offset + chunk]
            offset += chunk
            self._idx = (self._idx + chunk) % self._cap

        return size

    def _close_for_write(self) -> None:
        if self._write_closed:
            return
        self._write_closed = True
        self._unread = len(self._buf)
        if not self.wrapped():
            self._idx = 0
        self._idx_at_close = self._idx

    def read(self, size: int = -1) -> bytes:
        self._close_for_write()
        if self._unread == 0 or size == 0:
            return b""

        goal = self._unread if size < 0 else min(size, self._unread)
        out = bytearray()
        while len(out) < goal:
            end = min(self._idx + goal - len(out), len(self._buf))
            out += self._buf[self._idx:end]
            self._unread -= end - self._idx
            self._idx = end % len(self._buf)
        return bytes(out)

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        self._close_for_write()
        _check_rewind(offset, whence)
        self._idx = self._idx_at_close
        self._unread = len(self._buf)
        return 0

    def tell(self) -> int:
        self._close_for_write()
        return len(self._buf) - self._unread


class UnboundedBuffer(SeekableSizedBody):
    """Growable accumulator with the same read-once contract as CaptureBuffer."""

    def __init__(self) -> None:
        self._buf = bytearray()
        self._pos = 0
        self._write_closed = False

    @property
    def closed_for_write(self) -> bool:
        return self._write_closed

    def __len__(self) -> int:
        return len(self._buf)

    def wrapped(self) -> bool:
        return False

    def write(self, data: bytes) -> int:
        if self._write_closed:
            raise BufferReadOnlyError()
        self._buf += data
        return len(data)

    def read(self, size: int = -1) -> bytes:
        self._write_closed = True
        end = len(self._buf) if size < 0 else min(self._pos + size, len(self._buf))
        out = bytes(self._buf[self._pos:end])
        self._pos = end
        return out

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        self._write_closed = True
        _check_rewind(offset, whence)
        self._pos = 0
        return 0

    def tell(self) -> int:
        self._write_closed = True
        return self._pos
