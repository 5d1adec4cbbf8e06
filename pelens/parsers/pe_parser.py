"""
PE/COFF Header Parser
======================

Sequential, validating decode of the fixed-layout headers at the start of
a Portable Executable image:

    - MS-DOS ``MZ`` header (64 bytes) and, on request, its relocation table
    - ``PE\\0\\0`` signature and COFF file header (20 bytes)
    - Optional header, dispatched on its 2-byte magic to the PE32 (0x10b)
      or PE32+ (0x20b) layout, followed by 16 data directories
    - Section table (40 bytes per section)

Every read goes through a :class:`~pelens.io.read_at.ReadAt` source and
every field is decoded explicitly as little-endian.  Any inconsistency
raises a :mod:`pelens.core.errors` exception; nothing is returned for a
header that failed part-way through.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Pietrek, M. (1994). Peering Inside the PE: A Tour of the Win32
      Portable Executable File Format. Microsoft Systems Journal.
"""

from __future__ import annotations

from typing import Optional

from pelens.core.codec import RawRecord, decode_int
from pelens.core.errors import (
    InsufficientOptionalHeaderSize,
    InvalidSignature,
    PELensError,
    UnsupportedOptionalHeaderMagic,
)
from pelens.core.models import (
    DIRECTORY_COUNT,
    DataDirectories,
    DataDirectory,
    FileHeader,
    MZHeader,
    MZRelocation,
    OptionalHeader32,
    OptionalHeader64,
    PEHeader,
    SectionHeader,
)
from pelens.io.read_at import ReadAt


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MZ_MAGIC: bytes = b"MZ"
PE_MAGIC: bytes = b"PE\x00\x00"

PE32_MAGIC: int = 0x10B      # PE32 (32-bit)
PE32PLUS_MAGIC: int = 0x20B  # PE32+ (64-bit)
ROM_MAGIC: int = 0x107       # ROM image

MZ_HEADER_SIZE: int = 64
SECTION_HEADER_SIZE: int = 40


# ---------------------------------------------------------------------------
# Raw record layouts
# ---------------------------------------------------------------------------

MZ_HEADER = RawRecord("mz header", [
    ("signature", "2s"),
    ("last_page", "H"),
    ("pages", "H"),
    ("nrelocs", "H"),
    ("hdrsize", "H"),
    ("minalloc", "H"),
    ("maxalloc", "H"),
    ("ss", "H"),
    ("sp", "H"),
    ("checksum", "H"),
    ("ip", "H"),
    ("cs", "H"),
    ("relocs", "H"),
    ("overlay", "H"),
    ("_reserved_a", "8s"),
    ("oem_id", "H"),
    ("oem_info", "H"),
    ("_reserved_b", "20s"),
    ("pe_header_start", "I"),
])

MZ_RELOCATION = RawRecord("mz relocation", [
    ("offset", "H"),
    ("segment", "H"),
])

FILE_HEADER = RawRecord("pe file header", [
    ("signature", "4s"),
    ("machine", "H"),
    ("nsections", "H"),
    ("time_date_stamp", "I"),
    ("symbols", "I"),
    ("nsymbols", "I"),
    ("optional_header_size", "H"),
    ("characteristics", "H"),
], nullable=("symbols",))

# Both optional header layouts start right after the 2-byte magic.
OPTIONAL_HEADER_32 = RawRecord("OptionalHeader32", [
    ("major_linker_version", "B"),
    ("minor_linker_version", "B"),
    ("size_of_code", "I"),
    ("size_of_initialized_data", "I"),
    ("size_of_uninitialized_data", "I"),
    ("address_of_entry_point", "I"),
    ("base_of_code", "I"),
    ("base_of_data", "I"),
    ("image_base", "I"),
    ("section_alignment", "I"),
    ("file_alignment", "I"),
    ("major_os_version", "H"),
    ("minor_os_version", "H"),
    ("major_image_version", "H"),
    ("minor_image_version", "H"),
    ("major_subsystem_version", "H"),
    ("minor_subsystem_version", "H"),
    ("win32_version", "I"),
    ("size_of_image", "I"),
    ("size_of_headers", "I"),
    ("checksum", "I"),
    ("subsystem", "H"),
    ("dll_characteristics", "H"),
    ("size_of_stack_reserve", "I"),
    ("size_of_stack_commit", "I"),
    ("size_of_heap_reserve", "I"),
    ("size_of_heap_commit", "I"),
    ("loader_flags", "I"),
    ("number_of_rva_and_sizes", "I"),
], nullable=("address_of_entry_point",))

OPTIONAL_HEADER_64 = RawRecord("OptionalHeader64", [
    ("major_linker_version", "B"),
    ("minor_linker_version", "B"),
    ("size_of_code", "I"),
    ("size_of_initialized_data", "I"),
    ("size_of_uninitialized_data", "I"),
    ("address_of_entry_point", "I"),
    ("base_of_code", "I"),
    ("image_base", "Q"),
    ("section_alignment", "I"),
    ("file_alignment", "I"),
    ("major_os_version", "H"),
    ("minor_os_version", "H"),
    ("major_image_version", "H"),
    ("minor_image_version", "H"),
    ("major_subsystem_version", "H"),
    ("minor_subsystem_version", "H"),
    ("win32_version", "I"),
    ("size_of_image", "I"),
    ("size_of_headers", "I"),
    ("checksum", "I"),
    ("subsystem", "H"),
    ("dll_characteristics", "H"),
    ("size_of_stack_reserve", "Q"),
    ("size_of_stack_commit", "Q"),
    ("size_of_heap_reserve", "Q"),
    ("size_of_heap_commit", "Q"),
    ("loader_flags", "I"),
    ("number_of_rva_and_sizes", "I"),
], nullable=("address_of_entry_point",))

DATA_DIRECTORY = RawRecord("DataDirectory", [
    ("virtual_address", "I"),
    ("size", "I"),
])

SECTION_HEADER = RawRecord("SectionHeader", [
    ("raw_name", "8s"),
    ("virtual_size", "I"),
    ("virtual_address", "I"),
    ("size_of_raw_data", "I"),
    ("pointer_to_raw_data", "I"),
    ("pointer_to_relocations", "I"),
    ("pointer_to_linenumbers", "I"),
    ("number_of_relocations", "H"),
    ("number_of_linenumbers", "H"),
    ("characteristics", "I"),
], nullable=("pointer_to_raw_data", "pointer_to_relocations", "pointer_to_linenumbers"))

# magic + fixed fields, excluding the data directory table
OPTIONAL_HEADER_32_SIZE: int = 2 + OPTIONAL_HEADER_32.size   # 96
OPTIONAL_HEADER_64_SIZE: int = 2 + OPTIONAL_HEADER_64.size   # 112
DATA_DIRECTORIES_SIZE: int = DIRECTORY_COUNT * DATA_DIRECTORY.size  # 128

_VARIANTS: dict[int, tuple[RawRecord, int, type]] = {
    PE32_MAGIC: (OPTIONAL_HEADER_32, OPTIONAL_HEADER_32_SIZE, OptionalHeader32),
    PE32PLUS_MAGIC: (OPTIONAL_HEADER_64, OPTIONAL_HEADER_64_SIZE, OptionalHeader64),
}


# ---------------------------------------------------------------------------
# MZ header
# ---------------------------------------------------------------------------

def read_mz(source: ReadAt, offset: int = 0) -> MZHeader:
    """Read and validate the 64-byte MZ header at *offset*.

    Raises:
        UnexpectedEOF: Fewer than 64 bytes available.
        InvalidSignature: The first two bytes are not ``MZ``.
    """
    fields = MZ_HEADER.decode_from(source, offset)
    if fields["signature"] != MZ_MAGIC:
        raise InvalidSignature("mz header", MZ_MAGIC, fields["signature"])
    return MZHeader(**fields)


def read_mz_relocations(source: ReadAt, mz: MZHeader, exe_start: int = 0) -> list[MZRelocation]:
    """Read the ``nrelocs`` DOS relocation entries at ``mz.relocs``."""
    relocations: list[MZRelocation] = []
    offset = exe_start + mz.relocs
    for index in range(mz.nrelocs):
        try:
            fields = MZ_RELOCATION.decode_from(source, offset)
        except PELensError as exc:
            raise exc.add_context(f"mz relocation [{index}]")
        relocations.append(MZRelocation(**fields))
        offset += MZ_RELOCATION.size
    return relocations


# ---------------------------------------------------------------------------
# PE header
# ---------------------------------------------------------------------------

def read_pe(source: ReadAt, offset: int) -> PEHeader:
    """Read the PE signature, file header and optional header at *offset*.

    *offset* is the absolute position of ``PE\\0\\0`` in *source*.

    Raises:
        UnexpectedEOF: The source ends inside a header.
        InvalidSignature: The signature is not ``PE\\0\\0``.
        InsufficientOptionalHeaderSize: The declared optional header size
            cannot hold the magic or the dispatched variant.
        UnsupportedOptionalHeaderMagic: ROM (0x107) or unknown magic.
    """
    fields = FILE_HEADER.decode_from(source, offset)
    signature = fields.pop("signature")
    if signature != PE_MAGIC:
        raise InvalidSignature("pe header", PE_MAGIC, signature)
    file_header = FileHeader(**fields)

    optional_header = read_optional_header(
        source, offset + FILE_HEADER.size, file_header.optional_header_size
    )
    return PEHeader(
        signature=signature,
        file_header=file_header,
        optional_header=optional_header,
    )


def read_optional_header(
    source: ReadAt, offset: int, declared_size: int
) -> Optional[OptionalHeader32 | OptionalHeader64]:
    """Decode the optional header variant selected by its magic.

    Returns ``None`` when *declared_size* is zero (object files).
    """
    if declared_size == 0:
        return None
    if declared_size == 1:
        raise InsufficientOptionalHeaderSize(declared_size, 2, "optional header magic")

    try:
        magic = decode_int(source.read_bytes_at(2, offset), 2)
    except PELensError as exc:
        raise exc.add_context(f"reading optional header magic at 0x{offset:x}")
    if magic == ROM_MAGIC:
        raise UnsupportedOptionalHeaderMagic(magic, "IMAGE_ROM_OPTIONAL_HDR_MAGIC")
    if magic not in _VARIANTS:
        raise UnsupportedOptionalHeaderMagic(magic)

    record, required, model = _VARIANTS[magic]
    if declared_size < required:
        raise InsufficientOptionalHeaderSize(declared_size, required, record.name)

    fields = record.decode_from(source, offset + 2)
    fields["data_directory"] = read_data_directories(source, offset + required)
    return model(**_fold_version_pairs(fields))


def read_data_directories(source: ReadAt, offset: int) -> DataDirectories:
    """Read the fixed 16-entry data directory table at *offset*."""
    window = source.read_bytes_at(DATA_DIRECTORIES_SIZE, offset)
    step = DATA_DIRECTORY.size
    entries = tuple(
        DataDirectory(**DATA_DIRECTORY.decode(window[i * step:(i + 1) * step]))
        for i in range(DIRECTORY_COUNT)
    )
    return DataDirectories(entries=entries)


def _fold_version_pairs(fields: dict) -> dict:
    """Combine ``major_*``/``minor_*`` field pairs into ``(major, minor)`` tuples."""
    pairs = {
        "linker_version": "linker_version",
        "os_version": "operating_system_version",
        "image_version": "image_version",
        "subsystem_version": "subsystem_version",
    }
    for raw, target in pairs.items():
        fields[target] = (fields.pop(f"major_{raw}"), fields.pop(f"minor_{raw}"))
    return fields


# ---------------------------------------------------------------------------
# Section table
# ---------------------------------------------------------------------------

def section_table_offset(pe_offset: int, file_header: FileHeader) -> int:
    """Absolute offset of the first section header."""
    return pe_offset + FILE_HEADER.size + file_header.optional_header_size


def read_section_header(source: ReadAt, offset: int) -> SectionHeader:
    fields = SECTION_HEADER.decode_from(source, offset)
    raw_name = fields["raw_name"].split(b"\x00", 1)[0]
    fields["raw_name"] = raw_name
    fields["name"] = raw_name.decode("ascii", errors="replace")
    return SectionHeader(**fields)


def read_section_table(source: ReadAt, offset: int, count: int) -> list[SectionHeader]:
    """Read exactly *count* consecutive section headers starting at *offset*."""
    sections: list[SectionHeader] = []
    for index in range(count):
        try:
            sections.append(read_section_header(source, offset + index * SECTION_HEADER_SIZE))
        except PELensError as exc:
            raise exc.add_context(f"section header [{index}] of {count}")
    return sections
