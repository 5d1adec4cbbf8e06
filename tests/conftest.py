"""Shared fixtures: synthetic PE32 / PE32+ images assembled with ``struct``."""

from __future__ import annotations

import struct
from typing import Any, Optional

import pytest

from pelens.shared.config import GlobalConfig, LensConfig, ReaderConfig
from pelens.shared.logger import LensLogger


PE_OFFSET = 0x80
FILE_ALIGNMENT = 0x200

OPTIONAL_FIXED = {32: 96, 64: 112}
NUMBER_OF_RVA_AND_SIZES_AT = {32: 92, 64: 108}

IDATA_RVA = 0x2000


def _align(value: int, alignment: int = FILE_ALIGNMENT) -> int:
    return (value + alignment - 1) // alignment * alignment


def _optional_header(bits: int, magic: int, directories: dict[int, tuple[int, int]]) -> bytearray:
    fixed = OPTIONAL_FIXED[bits]
    opt = bytearray(fixed + 16 * 8)
    struct.pack_into("<H", opt, 0, magic)
    struct.pack_into("<BB", opt, 2, 14, 29)               # linker 14.29
    struct.pack_into("<I", opt, 16, 0x1000)               # entry point
    struct.pack_into("<I", opt, 20, 0x1000)               # base of code
    if bits == 32:
        struct.pack_into("<I", opt, 24, 0x2000)           # base of data
        struct.pack_into("<I", opt, 28, 0x400000)         # image base
    else:
        struct.pack_into("<Q", opt, 24, 0x140000000)
    struct.pack_into("<II", opt, 32, 0x1000, FILE_ALIGNMENT)
    struct.pack_into("<HHHHHH", opt, 40, 6, 0, 1, 2, 6, 0)  # os/image/subsystem versions
    struct.pack_into("<I", opt, 56, 0x4000)               # size of image
    struct.pack_into("<I", opt, 60, 0x400)                # size of headers
    struct.pack_into("<HH", opt, 68, 3, 0x8160)           # console subsystem, dll characteristics
    struct.pack_into("<I", opt, NUMBER_OF_RVA_AND_SIZES_AT[bits], 16)
    for index, (rva, size) in directories.items():
        struct.pack_into("<II", opt, fixed + index * 8, rva, size)
    return opt


def build_pe(
    *,
    bits: int = 32,
    sections: tuple[dict[str, Any], ...] | list[dict[str, Any]] = (),
    directories: Optional[dict[int, tuple[int, int]]] = None,
    optional: bool = True,
    optional_header_size: Optional[int] = None,
    magic: Optional[int] = None,
    pe_offset: int = PE_OFFSET,
    pe_signature: bytes = b"PE\x00\x00",
    mz_signature: bytes = b"MZ",
    machine: Optional[int] = None,
    time_date_stamp: int = 0x5F5E1000,
) -> bytes:
    """Assemble a PE image.

    Each section is a dict with ``name``, ``va``, ``vsize`` and optionally
    ``data`` (raw bytes), ``raw_size`` (declared size of raw data, defaults
    to ``len(data)``), ``ptr`` (explicit raw data pointer; ``None`` for an
    absent one) and ``characteristics``.  Sections with data and no
    explicit ``ptr`` are laid out after the headers on 0x200 boundaries.
    """
    if magic is None:
        magic = 0x10B if bits == 32 else 0x20B
    if machine is None:
        machine = 0x14C if bits == 32 else 0x8664

    opt = _optional_header(bits, magic, directories or {}) if optional else bytearray()
    declared = len(opt) if optional_header_size is None else optional_header_size
    opt = opt[:declared] + bytes(max(0, declared - len(opt)))

    mz = bytearray(64)
    mz[0:2] = mz_signature
    struct.pack_into("<I", mz, 60, pe_offset)
    image = bytearray(mz) + bytes(max(0, pe_offset - len(mz)))

    image += pe_signature
    image += struct.pack(
        "<HHIIIHH", machine, len(sections), time_date_stamp, 0, 0, declared, 0x0102
    )
    image += opt

    cursor = _align(len(image) + 40 * len(sections))
    placed: list[tuple[int, bytes]] = []
    for spec in sections:
        data = spec.get("data", b"")
        if "ptr" in spec:
            ptr = spec["ptr"]
        elif data:
            ptr = cursor
            cursor = _align(cursor + len(data))
        else:
            ptr = None
        if ptr is not None and data:
            placed.append((ptr, data))

        header = bytearray(40)
        header[0:8] = spec["name"].encode("ascii")[:8].ljust(8, b"\x00")
        struct.pack_into(
            "<IIII", header, 8,
            spec["vsize"], spec["va"], spec.get("raw_size", len(data)), ptr or 0,
        )
        struct.pack_into("<I", header, 36, spec.get("characteristics", 0x40000040))
        image += header

    for ptr, data in placed:
        if len(image) < ptr + len(data):
            image += bytes(ptr + len(data) - len(image))
        image[ptr:ptr + len(data)] = data
    return bytes(image)


def build_idata(bits: int) -> bytes:
    """A 0x200-byte ``.idata`` section meant to be mapped at 0x2000.

    KERNEL32.dll imports ``ExitProcess`` (hint 0x10) by name and ordinal 7;
    USER32.dll imports ``MessageBoxA`` (hint 0x200).  The import directory
    is at 0x2000, the IAT directory spans 0x20C0..0x2100.
    """
    size = bits // 8
    fmt = "<I" if bits == 32 else "<Q"
    ordinal_flag = 1 << (bits - 1)
    idata = bytearray(0x200)

    struct.pack_into("<IIIII", idata, 0x00, 0x2080, 0, 0, 0x2100, 0x20C0)
    struct.pack_into("<IIIII", idata, 0x14, 0x20A0, 0, 0, 0x2110, 0x20E0)

    for table in (0x80, 0xC0):
        struct.pack_into(fmt, idata, table, 0x2120)
        struct.pack_into(fmt, idata, table + size, ordinal_flag | 7)
    for table in (0xA0, 0xE0):
        struct.pack_into(fmt, idata, table, 0x2140)

    idata[0x100:0x10D] = b"KERNEL32.dll\x00"
    idata[0x110:0x11B] = b"USER32.dll\x00"
    struct.pack_into("<H", idata, 0x120, 0x10)
    idata[0x122:0x12E] = b"ExitProcess\x00"
    struct.pack_into("<H", idata, 0x140, 0x200)
    idata[0x142:0x14E] = b"MessageBoxA\x00"
    return bytes(idata)


def build_import_image(bits: int) -> bytes:
    return build_pe(
        bits=bits,
        sections=[
            {"name": ".text", "va": 0x1000, "vsize": 0x100, "data": b"\xc3" * 0x200,
             "characteristics": 0x60000020},
            {"name": ".idata", "va": IDATA_RVA, "vsize": 0x200, "data": build_idata(bits),
             "characteristics": 0xC0000040},
        ],
        directories={1: (IDATA_RVA, 0x3C), 12: (0x20C0, 0x40)},
    )


@pytest.fixture
def quiet_config() -> LensConfig:
    """Defaults with console logging switched off."""
    return LensConfig(
        global_settings=GlobalConfig(log_level="DEBUG", console_output=False),
        reader=ReaderConfig(),
    )


@pytest.fixture
def quiet_logger() -> LensLogger:
    return LensLogger("tests", log_level="DEBUG", console_output=False)


@pytest.fixture
def pe32_image() -> bytes:
    return build_import_image(32)


@pytest.fixture
def pe64_image() -> bytes:
    return build_import_image(64)
