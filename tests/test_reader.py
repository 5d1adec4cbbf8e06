"""End-to-end tests for :class:`PEReader`."""

from __future__ import annotations

import io
import logging
import struct

import pytest

from conftest import build_import_image, build_pe
from pelens.core.errors import (
    InvalidSignature,
    SourceIOError,
    UnexpectedEOF,
    UnsupportedOptionalHeaderMagic,
)
from pelens.core.models import RVA, DataDirectories
from pelens.core.reader import PEReader
from pelens.shared.config import LensConfig, ReaderConfig


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def test_minimal_image(quiet_config):
    pe = PEReader.from_bytes(build_pe(pe_offset=64, optional=False), config=quiet_config)
    assert pe.mz_header.pe_header_start == 64
    assert pe.pe_header.optional_header is None
    assert pe.section_headers == ()
    assert pe.data_directory is DataDirectories.EMPTY
    assert pe.pointer_size == 4
    assert pe.name == "unknown"


@pytest.mark.parametrize("bits", [32, 64])
def test_headers_and_sections(bits, quiet_config):
    pe = PEReader.from_bytes(build_import_image(bits), name="sample.exe", config=quiet_config)
    assert pe.name == "`sample.exe`"
    assert pe.pointer_size == bits // 8
    assert [s.name for s in pe.section_headers] == [".text", ".idata"]
    assert pe.section_header(1).virtual_address == RVA(0x2000)
    assert pe.get_section_header(".idata") is pe.section_header(1)
    assert pe.get_section_header(".rsrc") is None
    assert pe.data_directory["import"].size == 0x3C
    assert pe.address_space.sections == pe.section_headers
    with pytest.raises(IndexError):
        pe.section_header(2)


def test_open_path(tmp_path, pe32_image, quiet_config):
    path = tmp_path / "app.exe"
    path.write_bytes(pe32_image)
    with PEReader.open(path, config=quiet_config) as pe:
        assert pe.name == f"`{path}`"
        assert [m.dll_name for m in pe.imports()] == ["KERNEL32.dll", "USER32.dll"]


def test_open_missing_file(tmp_path, quiet_config):
    path = tmp_path / "missing.exe"
    with pytest.raises(SourceIOError) as info:
        PEReader.open(path, config=quiet_config)
    assert info.value.notes == [f"`{path}`", "error opening file"]
    assert isinstance(info.value.__cause__, FileNotFoundError)


def test_from_stream_uses_current_position(pe32_image, quiet_config):
    stream = io.BytesIO(b"\xcc" * 0x30 + pe32_image)
    stream.seek(0x30)
    pe = PEReader.from_stream(stream, config=quiet_config)
    assert pe.exe_start == 0x30
    assert pe.read_str_rva(0x2100) == "KERNEL32.dll"
    assert pe.read_section_data(0)[:4] == b"\xc3" * 4


def test_signature_error_message(quiet_config):
    with pytest.raises(InvalidSignature) as info:
        PEReader.from_bytes(build_pe(pe_signature=b"PX\x00\x00"), name="bad.exe", config=quiet_config)
    assert str(info.value) == (
        "`bad.exe`: error reading pe header: "
        "pe header signature b'PX\\x00\\x00' != b'PE\\x00\\x00'"
    )


def test_unknown_source_label(quiet_config):
    with pytest.raises(InvalidSignature) as info:
        PEReader.from_bytes(build_pe(mz_signature=b"ZM"), config=quiet_config)
    assert info.value.context_chain[:2] == ["unknown", "error reading mz header"]


def test_magic_error_keeps_value(quiet_config):
    with pytest.raises(UnsupportedOptionalHeaderMagic) as info:
        PEReader.from_bytes(build_pe(magic=0x107), config=quiet_config)
    assert info.value.magic == 0x107


def test_truncated_section_table(quiet_config):
    image = build_pe(sections=[{"name": ".text", "va": 0x1000, "vsize": 0x10}])
    with pytest.raises(UnexpectedEOF) as info:
        PEReader.from_bytes(image[:-20], name="cut.exe", config=quiet_config)
    assert info.value.notes[:3] == ["`cut.exe`", "error reading section table", "section header [0] of 1"]


def test_failure_is_logged_then_raised(quiet_config, quiet_logger):
    handler = _ListHandler()
    quiet_logger.underlying.addHandler(handler)
    with pytest.raises(InvalidSignature):
        PEReader.from_bytes(build_pe(mz_signature=b"XX"), config=quiet_config, logger=quiet_logger)
    warnings = [r for r in handler.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "error reading mz header" in warnings[0].getMessage()
    assert warnings[0].source == "unknown"


def test_parse_progress_logged_at_debug(pe32_image, quiet_config, quiet_logger):
    handler = _ListHandler()
    quiet_logger.underlying.addHandler(handler)
    PEReader.from_bytes(pe32_image, name="a.exe", config=quiet_config, logger=quiet_logger)
    messages = [r.getMessage() for r in handler.records if r.levelno == logging.DEBUG]
    assert any("Read 2 section headers" in m for m in messages)
    assert all(r.operation == "parse_headers" for r in handler.records)


class TestSectionData:
    SECTIONS = [
        {"name": ".text", "va": 0x1000, "vsize": 0x10, "data": b"ABCDEFGH"},
        {"name": ".bss", "va": 0x2000, "vsize": 0x100},
    ]

    @pytest.fixture
    def pe(self, quiet_config):
        return PEReader.from_bytes(build_pe(sections=self.SECTIONS), config=quiet_config)

    def test_read_by_index_and_header(self, pe):
        assert pe.read_section_data(0) == b"ABCDEFGH"
        assert pe.read_section_data(pe.section_header(0)) == b"ABCDEFGH"

    def test_section_without_raw_data(self, pe):
        assert pe.read_section_data(1) == b""

    def test_absent_raw_pointer_reads_from_file_start(self, quiet_config):
        image = build_pe(
            sections=[{"name": ".odd", "va": 0x3000, "vsize": 0x100, "ptr": None, "raw_size": 0x10}]
        )
        pe = PEReader.from_bytes(image, config=quiet_config)
        assert pe.section_header(0).pointer_to_raw_data is None
        assert pe.read_section_data(0) == image[:0x10]
        assert pe.read_exact_rva(0x3000, 4) == b"MZ\x00\x00"
        assert pe.read_exact_rva(0x3010, 4) == bytes(4)

    def test_read_into(self, pe):
        buf = bytearray(3)
        pe.read_section_data_into(0, 2, buf)
        assert buf == b"CDE"

    def test_read_into_outside_raw_data(self, pe):
        with pytest.raises(UnexpectedEOF):
            pe.read_section_data_into(0, 6, bytearray(4))


class TestRvaAccess:
    def test_reads(self, pe32_image, quiet_config):
        pe = PEReader.from_bytes(pe32_image, config=quiet_config)
        assert pe.read_exact_rva(0x2100, 4) == b"KERN"
        buf = bytearray(6)
        pe.read_into_rva(0x2110, buf)
        assert buf == b"USER32"
        assert pe.read_asciiz_rva(0x2122) == b"ExitProcess"
        assert pe.rva_stream(0x2142).read(7) == b"Message"

    def test_errors_carry_source(self, pe32_image, quiet_config):
        pe = PEReader.from_bytes(pe32_image, name="x.exe", config=quiet_config)
        with pytest.raises(UnexpectedEOF) as info:
            pe.read_exact_rva(0xFFFF_FFF0, 0x20)
        assert info.value.notes[0] == "`x.exe`"

    def test_configured_encoding(self, quiet_config):
        idata = bytearray(0x20)
        idata[0:4] = b"caf\xe9"
        image = build_pe(sections=[{"name": ".rdata", "va": 0x3000, "vsize": 0x20, "data": bytes(idata)}])
        latin = LensConfig(global_settings=quiet_config.global_settings,
                           reader=ReaderConfig(string_encoding="latin-1"))
        assert PEReader.from_bytes(image, config=latin).read_str_rva(0x3000) == "caf\xe9"


def test_mz_relocations(quiet_config):
    image = bytearray(build_pe())
    struct.pack_into("<HH", image, 6, 1, 0)
    struct.pack_into("<H", image, 24, 0x40)
    struct.pack_into("<HH", image, 0x40, 0x1234, 0x0010)
    pe = PEReader.from_bytes(bytes(image), config=quiet_config)
    (reloc,) = pe.mz_relocations()
    assert (reloc.offset, reloc.segment) == (0x1234, 0x0010)
