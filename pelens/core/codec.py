"""
Little-Endian Field Codec
==========================

Explicit, field-by-field decoding of fixed-size on-disk records.

Every multi-byte integer in the MZ and PE/COFF formats is little-endian,
so all decoding goes through :mod:`struct` with the ``<`` prefix, which
also guarantees that no alignment padding is inserted between fields.
A record schema is therefore exactly as large as the sum of its fields.

Decoding never exposes partial results: a window shorter than the record
raises :class:`~pelens.core.errors.UnexpectedEOF` before any field is
returned.

References:
    - Python docs. struct -- Interpret bytes as packed binary data.
      https://docs.python.org/3/library/struct.html
"""

from __future__ import annotations

import struct
from typing import Any, Optional, Sequence, TYPE_CHECKING

from pelens.core.errors import UnexpectedEOF

if TYPE_CHECKING:
    from pelens.io.read_at import ReadAt


# ---------------------------------------------------------------------------
# Integer codes
# ---------------------------------------------------------------------------

_INT_CODES: dict[tuple[int, bool], str] = {
    (1, False): "B",
    (2, False): "H",
    (4, False): "I",
    (8, False): "Q",
    (1, True): "b",
    (2, True): "h",
    (4, True): "i",
    (8, True): "q",
}


def _int_format(width: int, signed: bool) -> struct.Struct:
    try:
        return struct.Struct("<" + _INT_CODES[(width, signed)])
    except KeyError:
        raise ValueError(f"unsupported integer width: {width}") from None


def decode_int(data: bytes | bytearray | memoryview, width: int, signed: bool = False) -> int:
    """Decode the first *width* bytes of *data* as a little-endian integer.

    Args:
        data: Byte window; must hold at least *width* bytes.
        width: Integer width in bytes (1, 2, 4 or 8).
        signed: Two's-complement interpretation if ``True``.

    Raises:
        UnexpectedEOF: If *data* is shorter than *width*.
    """
    fmt = _int_format(width, signed)
    if len(data) < width:
        raise UnexpectedEOF(
            f"need {width} bytes for a {width * 8}-bit integer, have {len(data)}"
        )
    return fmt.unpack_from(data, 0)[0]


def decode_nullable(data: bytes | bytearray | memoryview, width: int) -> Optional[int]:
    """Decode an unsigned pointer-like field where ``0`` means absent."""
    value = decode_int(data, width)
    return value or None


# ---------------------------------------------------------------------------
# Composite records
# ---------------------------------------------------------------------------

class RawRecord:
    """Schema of a tightly packed little-endian record.

    Each field is a ``(name, code)`` pair using :mod:`struct` codes:
    ``B H I Q`` / ``b h i q`` for integers and ``Ns`` for an *N*-byte
    string.  Names starting with ``_`` are decoded (to keep offsets
    correct) but dropped from the result.  Fields listed in *nullable*
    decode a zero value as ``None``.

    Usage::

        DATA_DIRECTORY = RawRecord("DataDirectory", [
            ("virtual_address", "I"),
            ("size", "I"),
        ])
        fields = DATA_DIRECTORY.decode(window)
    """

    __slots__ = ("name", "fields", "nullable", "_struct")

    def __init__(
        self,
        name: str,
        fields: Sequence[tuple[str, str]],
        nullable: Sequence[str] = (),
    ) -> None:
        self.name = name
        self.fields: tuple[tuple[str, str], ...] = tuple(fields)
        self.nullable: frozenset[str] = frozenset(nullable)
        self._struct = struct.Struct("<" + "".join(code for _, code in self.fields))

    @property
    def size(self) -> int:
        """Size of the record on disk in bytes."""
        return self._struct.size

    def offset_of(self, field_name: str) -> int:
        """Byte offset of *field_name* within the record."""
        offset = 0
        for name, code in self.fields:
            if name == field_name:
                return offset
            offset += struct.calcsize("<" + code)
        raise KeyError(field_name)

    def decode(self, window: bytes | bytearray | memoryview) -> dict[str, Any]:
        """Decode *window* into a ``{field: value}`` mapping.

        The window must be exactly :attr:`size` bytes; a longer one is
        truncated, a shorter one raises :class:`UnexpectedEOF`.
        """
        if len(window) < self.size:
            raise UnexpectedEOF(
                f"{self.name} needs {self.size} bytes, have {len(window)}"
            )
        values = self._struct.unpack_from(window, 0)
        return {
            name: (value or None) if name in self.nullable else value
            for (name, _), value in zip(self.fields, values)
            if not name.startswith("_")
        }

    def decode_from(self, source: ReadAt, offset: int) -> dict[str, Any]:
        """Read :attr:`size` bytes at *offset* from *source* and decode them."""
        buf = bytearray(self.size)
        try:
            source.read_exact_at(buf, offset)
        except UnexpectedEOF as exc:
            raise exc.add_context(f"reading {self.name} at 0x{offset:x}")
        return self.decode(buf)

    def __repr__(self) -> str:
        return f"RawRecord({self.name!r}, size={self.size})"
