"""Tests for RVA resolution, stitched reads and string reads."""

from __future__ import annotations

import pytest

from pelens.core.address_space import GAP_SENTINEL, AddressSpace
from pelens.core.errors import InvalidStringEncoding, UnexpectedEOF
from pelens.core.models import SectionHeader
from pelens.io.read_at import BytesReadAt


def _section(name, va, vsize, ptr=None, raw=0):
    return SectionHeader(
        name=name,
        raw_name=name.encode(),
        virtual_address=va,
        virtual_size=vsize,
        pointer_to_raw_data=ptr,
        size_of_raw_data=raw,
    )


@pytest.fixture
def file_bytes() -> bytes:
    data = bytearray(0x400)
    data[0x100:0x200] = bytes(range(256))
    data[0x200:0x210] = b"hello\x00world\x00\xff\xfe\x00\x00"
    data[0x300:0x400] = b"\xaa" * 0x100
    return bytes(data)


@pytest.fixture
def space(file_bytes) -> AddressSpace:
    return AddressSpace(
        BytesReadAt(file_bytes),
        [
            _section(".text", 0x1000, 0x100, ptr=0x100, raw=0x100),
            _section(".data", 0x1100, 0x80, ptr=0x200, raw=0x10),   # zero tail after 0x10
            _section(".bss", 0x2000, 0x100),                        # no raw data
            _section(".tail", 0x3000, 0x100, ptr=0x300, raw=0x100),
        ],
        max_string_length=64,
    )


class TestFindSection:
    def test_start_of_section_is_offset_zero(self, space):
        res = space.find_section(0x1000)
        assert res.section_index == 0
        assert res.offset == 0
        assert res.available == 0x100

    def test_end_of_section_belongs_to_next(self, space):
        res = space.find_section(0x1100)
        assert res.section_index == 1
        assert res.offset == 0

    def test_end_of_last_section_is_gap(self, space):
        res = space.find_section(0x3100)
        assert res.is_gap
        assert res.available == GAP_SENTINEL

    def test_gap_extends_to_nearest_section(self, space):
        res = space.find_section(0x1180)
        assert res.is_gap
        assert res.section_index is None
        assert res.available == 0x2000 - 0x1180

    def test_headers_region_is_gap(self, space):
        res = space.find_section(0)
        assert res.is_gap and res.available == 0x1000

    def test_resolution_is_deterministic(self, space):
        assert space.find_section(0x1042) == space.find_section(0x1042)

    def test_scenario_d_boundaries(self):
        space = AddressSpace(BytesReadAt(b""), [_section(".text", 0x1000, 0x500)])
        assert space.find_section(0x14FF).section_index == 0
        assert space.find_section(0x1500).is_gap

    def test_overlap_first_match_wins(self):
        space = AddressSpace(
            BytesReadAt(b""),
            [_section("first", 0x1000, 0x100), _section("second", 0x1080, 0x100)],
        )
        res = space.find_section(0x10A0)
        assert res.section.name == "first"
        assert res.offset == 0xA0
        assert space.find_section(0x1100).section.name == "second"

    def test_overlap_available_stops_at_earlier_section(self):
        space = AddressSpace(
            BytesReadAt(b""),
            [_section("inner", 0x1080, 0x10), _section("outer", 0x1000, 0x100)],
        )
        res = space.find_section(0x1000)
        assert res.section.name == "outer"
        assert res.available == 0x80

    def test_zero_size_section_never_matches(self):
        space = AddressSpace(BytesReadAt(b""), [_section("empty", 0x1000, 0)])
        res = space.find_section(0x1000)
        assert res.is_gap
        assert res.available == GAP_SENTINEL

    def test_file_offset(self, space):
        assert space.file_offset(0x1010) == 0x110
        assert space.file_offset(0x1110) is None     # zero tail
        assert space.file_offset(0x2000) is None     # no raw data
        assert space.file_offset(0x500) is None      # gap


class TestRangeReads:
    def test_within_section(self, space):
        assert space.read_exact_rva(0x1000, 4) == bytes([0, 1, 2, 3])

    def test_stitches_across_sections(self, space):
        data = space.read_exact_rva(0x10FE, 4)
        assert data == bytes([0xFE, 0xFF]) + b"he"

    def test_zero_tail_past_raw_data(self, space):
        data = space.read_exact_rva(0x110C, 8)
        assert data == b"\xff\xfe\x00\x00" + bytes(4)

    def test_gap_is_zero_filled(self, space):
        data = space.read_exact_rva(0x2FFE, 4)
        assert data == b"\x00\x00\xaa\xaa"

    def test_section_without_raw_data_reads_zero(self, space):
        assert space.read_exact_rva(0x2000, 0x100) == bytes(0x100)

    def test_absent_raw_pointer_reads_from_file_start(self):
        data = b"MZ" + bytes(range(1, 15)) + b"\xee" * 0x10
        space = AddressSpace(BytesReadAt(data), [_section(".odd", 0x3000, 0x20, raw=0x10)])
        assert space.file_offset(0x3004) == 4
        assert space.read_exact_rva(0x3000, 0x20) == data[:0x10] + bytes(0x10)
        assert space.read_asciiz_rva(0x3002) == bytes(range(1, 15))

    def test_read_into(self, space):
        buf = bytearray(3)
        space.read_into_rva(0x3000, buf)
        assert buf == b"\xaa\xaa\xaa"

    def test_matches_bytewise_reads(self, space):
        whole = space.read_exact_rva(0x10F0, 0x40)
        assert whole == b"".join(space.read_exact_rva(0x10F0 + i, 1) for i in range(0x40))

    def test_end_of_address_space(self, space):
        assert space.read_exact_rva(0xFFFF_FFFC, 4) == bytes(4)
        with pytest.raises(UnexpectedEOF):
            space.read_exact_rva(0xFFFF_FFFE, 4)

    def test_truncated_file_raises(self):
        space = AddressSpace(
            BytesReadAt(b"\x01" * 0x10), [_section(".text", 0x1000, 0x100, ptr=0, raw=0x100)]
        )
        with pytest.raises(UnexpectedEOF):
            space.read_exact_rva(0x1008, 0x10)

    def test_exe_start_shifts_file_offsets(self):
        data = b"JUNK" + b"\x00" * 0x10 + b"ABCD"
        space = AddressSpace(
            BytesReadAt(data), [_section(".text", 0x1000, 0x10, ptr=0x10, raw=0x10)], exe_start=4
        )
        assert space.read_exact_rva(0x1000, 4) == b"ABCD"

    def test_stream(self, space):
        stream = space.stream(0x10FC)
        assert stream.read(6) == bytes([0xFC, 0xFD, 0xFE, 0xFF]) + b"he"
        assert stream.tell() == 0x1102
        assert stream.read(2) == b"ll"


class TestStringReads:
    def test_asciiz(self, space):
        assert space.read_asciiz_rva(0x1100) == b"hello"
        assert space.read_asciiz_rva(0x1106) == b"world"

    def test_empty_string(self, space):
        assert space.read_asciiz_rva(0x1105) == b""

    def test_zero_tail_terminates(self):
        data = b"abc"
        space = AddressSpace(BytesReadAt(data), [_section(".d", 0x1000, 0x10, ptr=0, raw=3)])
        assert space.read_asciiz_rva(0x1000) == b"abc"

    def test_gap_terminates(self, space):
        assert space.read_asciiz_rva(0x1800) == b""

    def test_string_crosses_into_next_section(self, file_bytes):
        data = bytearray(file_bytes)
        data[0x1FE:0x200] = b"ab"
        space = AddressSpace(
            BytesReadAt(bytes(data)),
            [
                _section("a", 0x1000, 0x100, ptr=0x100, raw=0x100),
                _section("b", 0x1100, 0x80, ptr=0x200, raw=0x10),
            ],
        )
        assert space.read_asciiz_rva(0x10FE) == b"abhello"

    def test_limit(self, space):
        with pytest.raises(UnexpectedEOF, match="no NUL terminator within 4 bytes"):
            space.read_asciiz_rva(0x1100, limit=4)
        assert space.read_asciiz_rva(0x1100, limit=5) == b"hello"

    def test_default_limit_from_constructor(self, space):
        # .tail holds 0x100 non-NUL bytes, more than max_string_length
        with pytest.raises(UnexpectedEOF):
            space.read_asciiz_rva(0x3000)

    def test_file_ends_inside_raw_data(self):
        space = AddressSpace(BytesReadAt(b"abc"), [_section(".d", 0x1000, 0x10, ptr=0, raw=0x10)])
        with pytest.raises(UnexpectedEOF, match="source ended"):
            space.read_asciiz_rva(0x1000)

    def test_end_of_address_space(self):
        data = b"\x41" * 0x10
        space = AddressSpace(
            BytesReadAt(data), [_section(".top", 0xFFFF_FFF0, 0x10, ptr=0, raw=0x10)]
        )
        with pytest.raises(UnexpectedEOF, match="end of the address space"):
            space.read_asciiz_rva(0xFFFF_FFF8)

    def test_str(self, space):
        assert space.read_str_rva(0x1100) == "hello"

    def test_invalid_encoding_is_not_truncated(self, space):
        with pytest.raises(InvalidStringEncoding) as info:
            space.read_str_rva(0x110C)
        assert info.value.raw == b"\xff\xfe"
        assert info.value.encoding == "ascii"

    def test_other_encoding(self, space):
        assert space.read_str_rva(0x110C, encoding="latin-1") == "\xff\xfe"
