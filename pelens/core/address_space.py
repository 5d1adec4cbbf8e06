"""
RVA Address Space
==================

Maps relative virtual addresses onto the file through the section table
and reads data by RVA without the caller walking sections by hand.

Resolution rules:

    - An RVA belongs to the *first* section, in table order, whose
      half-open range ``[virtual_address, virtual_address + virtual_size)``
      contains it.  Section tables from hostile files may overlap; the
      first-match policy keeps resolution deterministic.
    - Inside a section, bytes below ``size_of_raw_data`` come from the file
      at ``exe_start + pointer_to_raw_data + (rva - virtual_address)``.
      An absent ``pointer_to_raw_data`` counts as zero.  Bytes past the raw
      data but still inside ``virtual_size`` read as zero.
    - An RVA outside every section lies in a gap.  The gap extends to the
      nearest section starting above it (or :data:`GAP_SENTINEL` when none
      does) and reads as zero.

Range and string reads stitch successive resolutions together until the
request is satisfied.  Nothing read is cached.
"""

from __future__ import annotations

import io
from typing import NamedTuple, Optional, Sequence

from pelens.core.errors import InvalidStringEncoding, UnexpectedEOF
from pelens.core.models import RVA, SectionHeader
from pelens.io.read_at import ReadAt

GAP_SENTINEL: int = 1 << 64
ADDRESS_SPACE_END: int = RVA.MAX + 1


class Resolution(NamedTuple):
    """Where an RVA lands and how far the same answer holds.

    ``available`` counts the bytes from ``rva`` onward that resolve to the
    same section (or gap) before anything else could take over.
    """
    rva: int
    section_index: Optional[int]
    section: Optional[SectionHeader]
    offset: int
    available: int

    @property
    def is_gap(self) -> bool:
        return self.section is None

    @property
    def raw_available(self) -> int:
        """Bytes from ``rva`` onward that are backed by file data."""
        sec = self.section
        if sec is None:
            return 0
        return max(0, min(sec.size_of_raw_data - self.offset, self.available))


class AddressSpace:
    """RVA view over a parsed section table.

    Args:
        source: Random-access source holding the image.
        sections: Section headers in table order.
        exe_start: Absolute offset of the image's MZ header in *source*.
        batch_size: Chunk size for terminator scans.
        max_string_length: Longest NUL-terminated string accepted.
    """

    def __init__(
        self,
        source: ReadAt,
        sections: Sequence[SectionHeader],
        exe_start: int = 0,
        *,
        batch_size: int = 1024,
        max_string_length: int = 4096,
    ) -> None:
        self._source = source
        self._sections: tuple[SectionHeader, ...] = tuple(sections)
        self._exe_start = exe_start
        self._batch_size = batch_size
        self._max_string_length = max_string_length

    @property
    def sections(self) -> tuple[SectionHeader, ...]:
        return self._sections

    # ------------------------------------------------------------------ #
    #  Resolution
    # ------------------------------------------------------------------ #

    def find_section(self, rva: int) -> Resolution:
        """Resolve *rva* to a section, or to the gap that contains it."""
        rva = int(rva)
        for index, sec in enumerate(self._sections):
            if sec.contains(rva):
                available = sec.virtual_end - rva
                # an earlier section starting inside the rest of this one
                # takes over from its start
                for earlier in self._sections[:index]:
                    start = int(earlier.virtual_address)
                    if rva < start < rva + available and earlier.virtual_size:
                        available = start - rva
                return Resolution(
                    rva, index, sec, rva - int(sec.virtual_address), available
                )

        gap = GAP_SENTINEL
        for sec in self._sections:
            start = int(sec.virtual_address)
            if start > rva and sec.virtual_size:
                gap = min(gap, start - rva)
        return Resolution(rva, None, None, 0, gap)

    def file_offset(self, rva: int) -> Optional[int]:
        """Absolute source offset backing *rva*, or ``None`` if zero-filled."""
        res = self.find_section(rva)
        if res.raw_available == 0:
            return None
        return self._raw_offset(res)

    def _raw_offset(self, res: Resolution) -> int:
        assert res.section is not None
        return self._exe_start + (res.section.pointer_to_raw_data or 0) + res.offset

    # ------------------------------------------------------------------ #
    #  Range reads
    # ------------------------------------------------------------------ #

    def _fill(self, res: Resolution, view: memoryview) -> int:
        """Fill the head of *view* from one resolution; return bytes written."""
        n = min(len(view), res.available)
        raw = min(n, res.raw_available)
        if raw:
            self._source.read_exact_at(view[:raw], self._raw_offset(res))
        if n > raw:
            view[raw:n] = bytes(n - raw)
        return n

    def read_into_rva(self, rva: int, buf: bytearray | memoryview) -> None:
        """Fill *buf* with the image bytes at ``[rva, rva + len(buf))``.

        *buf* may be partially written if this raises.

        Raises:
            UnexpectedEOF: The range leaves the 32-bit address space or a
                section's raw data runs past the end of the source.
        """
        view = memoryview(buf).cast("B")
        pos = int(rva)
        if pos + len(view) > ADDRESS_SPACE_END:
            raise UnexpectedEOF(
                f"RVA range 0x{pos:08x}+{len(view)} exceeds the 32-bit address space"
            )
        while view:
            n = self._fill(self.find_section(pos), view)
            view = view[n:]
            pos += n

    def read_exact_rva(self, rva: int, size: int) -> bytes:
        """Return ``size`` image bytes starting at *rva*."""
        buf = bytearray(size)
        self.read_into_rva(rva, buf)
        return bytes(buf)

    # ------------------------------------------------------------------ #
    #  String reads
    # ------------------------------------------------------------------ #

    def read_asciiz_rva(self, rva: int, limit: Optional[int] = None) -> bytes:
        """Read the NUL-terminated byte string at *rva* (NUL excluded).

        Gaps and zero-filled section tails terminate the string at once.

        Raises:
            UnexpectedEOF: No NUL within *limit* bytes (default
                ``max_string_length``), the source ends inside section raw
                data, or the scan runs off the 32-bit address space.
        """
        limit = self._max_string_length if limit is None else limit
        out = bytearray()
        pos = int(rva)
        while True:
            if pos >= ADDRESS_SPACE_END:
                raise UnexpectedEOF(
                    f"unterminated string at 0x{int(rva):08x} reaches the end of the address space"
                )
            res = self.find_section(pos)
            raw = res.raw_available
            if raw == 0:
                return bytes(out)

            budget = min(raw, limit + 1 - len(out))
            assert res.section is not None
            got = self._source.read_until_at(
                0, out, self._raw_offset(res), self._batch_size, limit=budget
            )
            if out.endswith(b"\x00") and got:
                del out[-1]
                if len(out) > limit:
                    break
                return bytes(out)
            if got < budget:
                raise UnexpectedEOF(
                    f"source ended inside section {res.section.name!r} "
                    f"while reading string at 0x{int(rva):08x}"
                )
            if len(out) > limit:
                break
            pos += got

        raise UnexpectedEOF(
            f"no NUL terminator within {limit} bytes of 0x{int(rva):08x}"
        )

    def read_str_rva(self, rva: int, encoding: str = "ascii", limit: Optional[int] = None) -> str:
        """Read and decode the NUL-terminated string at *rva*.

        Raises:
            InvalidStringEncoding: The bytes are not valid *encoding*.
        """
        raw = self.read_asciiz_rva(rva, limit)
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError as exc:
            raise InvalidStringEncoding(raw, encoding, exc.reason) from exc

    def stream(self, rva: int) -> RvaStream:
        """Sequential reader over the image starting at *rva*."""
        return RvaStream(self, rva)


class RvaStream(io.RawIOBase):
    """:class:`io.RawIOBase` that reads the image sequentially by RVA."""

    def __init__(self, space: AddressSpace, rva: int) -> None:
        super().__init__()
        self._space = space
        self._pos = int(rva)

    def readable(self) -> bool:
        return True

    def readinto(self, buf: bytearray | memoryview) -> int:  # type: ignore[override]
        view = memoryview(buf).cast("B")
        n = min(len(view), ADDRESS_SPACE_END - self._pos)
        if n <= 0:
            return 0
        self._space.read_into_rva(self._pos, view[:n])
        self._pos += n
        return n

    def tell(self) -> int:
        return self._pos
