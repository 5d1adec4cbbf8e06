"""
Positioned Read Sources
========================

The :class:`ReadAt` capability: read bytes at an absolute offset without
relying on a caller-visible cursor.  Three backings are provided:

    - :class:`FileReadAt` -- an OS file handle read with ``os.pread``.
      No shared cursor, so concurrent reads need no locking.  Platforms
      without ``pread`` fall back to seek+read under a lock.
    - :class:`BytesReadAt` -- an in-memory buffer.
    - :class:`StreamReadAt` -- any seekable binary file object.  The
      object's cursor is shared, so every read is serialised with a lock.

:class:`ReadAtReader` turns any :class:`ReadAt` back into a sequential
:class:`io.RawIOBase` stream.
"""

from __future__ import annotations

import io
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Optional

from pelens.core.errors import UnexpectedEOF

_OFFSET_LIMIT: int = 1 << 64
_DEFAULT_BATCH: int = 1024


def _check_range(offset: int, size: int) -> None:
    if offset < 0:
        raise UnexpectedEOF(f"negative offset {offset}")
    if offset + size > _OFFSET_LIMIT:
        raise UnexpectedEOF(f"offset 0x{offset:x} + {size} exceeds 64-bit range")


class ReadAt(ABC):
    """Random-access byte source."""

    @abstractmethod
    def read_at(self, buf: bytearray | memoryview, offset: int) -> int:
        """Read up to ``len(buf)`` bytes at *offset* into *buf*.

        Returns the number of bytes read; ``0`` means end of source.  A
        short count is not an error.
        """

    def read_exact_at(self, buf: bytearray | memoryview, offset: int) -> None:
        """Fill *buf* completely from *offset*.

        *buf* may have been partially overwritten when this raises.

        Raises:
            UnexpectedEOF: If the source ends before *buf* is full.
        """
        _check_range(offset, len(buf))
        view = memoryview(buf).cast("B")
        pos = offset
        while view:
            n = self.read_at(view, pos)
            if n == 0:
                raise UnexpectedEOF(
                    f"EOF at 0x{pos:x} with {len(view)} of {len(buf)} bytes unread"
                )
            view = view[n:]
            pos += n

    def read_exact_at_advance(self, buf: bytearray | memoryview, offset: int) -> int:
        """:meth:`read_exact_at`, returning the offset just past the read."""
        self.read_exact_at(buf, offset)
        return offset + len(buf)

    def read_bytes_at(self, size: int, offset: int) -> bytes:
        """Return exactly *size* bytes from *offset*."""
        buf = bytearray(size)
        self.read_exact_at(buf, offset)
        return bytes(buf)

    def read_until_at(
        self,
        terminator: int,
        buf: bytearray,
        offset: int,
        batch_size: int = _DEFAULT_BATCH,
        limit: Optional[int] = None,
    ) -> int:
        """Append bytes from *offset* to *buf* up to and including *terminator*.

        Reads in batches of *batch_size*; bytes read past the terminator
        are discarded.  Stops without error when the source is exhausted
        or, if given, after *limit* bytes.  Existing contents of *buf* are
        kept.

        Returns:
            The number of bytes appended.
        """
        appended = 0
        pos = offset
        chunk = bytearray(batch_size)
        while limit is None or appended < limit:
            _check_range(pos, 0)
            want = len(chunk) if limit is None else min(len(chunk), limit - appended)
            n = self.read_at(memoryview(chunk)[:want], pos)
            if n == 0:
                break
            end = chunk.find(terminator, 0, n)
            if end != -1:
                buf += chunk[: end + 1]
                appended += end + 1
                break
            buf += chunk[:n]
            appended += n
            pos += n
        return appended

    def read_asciiz_at(self, offset: int, batch_size: int = _DEFAULT_BATCH) -> bytes:
        """Read a NUL-terminated byte string at *offset* (NUL excluded)."""
        buf = bytearray()
        self.read_until_at(0, buf, offset, batch_size)
        if buf.endswith(b"\x00"):
            del buf[-1]
        return bytes(buf)

    def close(self) -> None:
        """Release any resource held by the source."""

    def __enter__(self) -> ReadAt:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Backings
# ---------------------------------------------------------------------------

class BytesReadAt(ReadAt):
    """In-memory source over any bytes-like object."""

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._data = memoryview(data).cast("B").toreadonly()

    def read_at(self, buf: bytearray | memoryview, offset: int) -> int:
        if offset < 0:
            raise UnexpectedEOF(f"negative offset {offset}")
        if offset >= len(self._data):
            return 0
        chunk = self._data[offset : offset + len(buf)]
        memoryview(buf).cast("B")[: len(chunk)] = chunk
        return len(chunk)

    def __len__(self) -> int:
        return len(self._data)


class FileReadAt(ReadAt):
    """OS file handle read with positional reads.

    Args:
        fileobj: An open binary file; only its descriptor is used.
        owns: Close *fileobj* when this source is closed.
    """

    def __init__(self, fileobj: BinaryIO, owns: bool = False) -> None:
        self._file = fileobj
        self._fd = fileobj.fileno()
        self._owns = owns
        self._lock: Optional[threading.Lock] = (
            None if hasattr(os, "pread") else threading.Lock()
        )

    def read_at(self, buf: bytearray | memoryview, offset: int) -> int:
        _check_range(offset, 0)
        if self._lock is None:
            data = os.pread(self._fd, len(buf), offset)
        else:
            with self._lock:
                os.lseek(self._fd, offset, os.SEEK_SET)
                data = os.read(self._fd, len(buf))
        memoryview(buf).cast("B")[: len(data)] = data
        return len(data)

    def close(self) -> None:
        if self._owns:
            self._file.close()


class StreamReadAt(ReadAt):
    """Seekable binary stream with a shared cursor.

    The stream position is moved by every read, so reads are serialised
    with a lock and the position is left wherever the last read ended.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def read_at(self, buf: bytearray | memoryview, offset: int) -> int:
        _check_range(offset, 0)
        with self._lock:
            self._stream.seek(offset, io.SEEK_SET)
            readinto = getattr(self._stream, "readinto", None)
            if readinto is not None:
                return readinto(buf) or 0
            data = self._stream.read(len(buf))
        memoryview(buf).cast("B")[: len(data)] = data
        return len(data)


def open_source(path: str | os.PathLike[str]) -> FileReadAt:
    """Open *path* for positional reads.  The returned source owns the file."""
    return FileReadAt(open(Path(path), "rb"), owns=True)


# ---------------------------------------------------------------------------
# Sequential adapter
# ---------------------------------------------------------------------------

class ReadAtReader(io.RawIOBase):
    """Sequential stream over a :class:`ReadAt`, starting at *pos*."""

    def __init__(self, source: ReadAt, pos: int = 0) -> None:
        super().__init__()
        self._source = source
        self._pos = pos

    def readable(self) -> bool:
        return True

    def readinto(self, buf: bytearray | memoryview) -> int:  # type: ignore[override]
        n = self._source.read_at(buf, self._pos)
        self._pos += n
        return n

    def tell(self) -> int:
        return self._pos
