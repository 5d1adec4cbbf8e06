"""
pelens I/O
===========

Positioned reads over files, in-memory buffers and seekable streams.
"""

from pelens.io.read_at import (
    BytesReadAt,
    FileReadAt,
    ReadAt,
    ReadAtReader,
    StreamReadAt,
    open_source,
)

__all__ = [
    "ReadAt",
    "BytesReadAt",
    "FileReadAt",
    "StreamReadAt",
    "ReadAtReader",
    "open_source",
]
