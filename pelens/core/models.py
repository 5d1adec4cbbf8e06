"""
pelens Data Models
===================

Immutable pydantic models for the decoded MZ and PE/COFF structures.

Each model is the host-native counterpart of one fixed-size on-disk
record: plain integers, ``None`` for pointer fields whose on-disk value
is zero, :class:`RVA` for relative virtual addresses, and helper
properties for flags, version pairs and timestamps.  Models are frozen,
so a parsed header bundle can be shared freely once built.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Pydantic v2 documentation. https://docs.pydantic.dev/latest/
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler, field_validator
from pydantic_core import core_schema


# ---------------------------------------------------------------------------
# Relative virtual address
# ---------------------------------------------------------------------------

class RVA(int):
    """A 32-bit offset from the image base.

    ``RVA + int`` and ``RVA - int`` give an :class:`RVA`; ``RVA - RVA``
    gives a plain ``int`` distance.  Leaving ``[0, 2**32)`` raises
    :class:`OverflowError`.
    """

    __slots__ = ()

    MAX: ClassVar[int] = 0xFFFF_FFFF
    NULL: ClassVar[RVA]

    def __new__(cls, value: int = 0) -> RVA:
        value = int(value)
        if not 0 <= value <= cls.MAX:
            raise OverflowError(f"RVA out of 32-bit range: {value:#x}")
        return super().__new__(cls, value)

    def __add__(self, other: Any) -> RVA:
        if isinstance(other, RVA) or not isinstance(other, int):
            return NotImplemented
        return RVA(int(self) + other)

    __radd__ = __add__

    def __sub__(self, other: Any) -> Any:
        if isinstance(other, RVA):
            return int(self) - int(other)
        if isinstance(other, int):
            return RVA(int(self) - other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"base+0x{int(self):08x}"

    __str__ = __repr__

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.int_schema(ge=0, le=cls.MAX),
            serialization=core_schema.plain_serializer_function_ser_schema(int),
        )


RVA.NULL = RVA(0)


# ---------------------------------------------------------------------------
# Flag / enumeration schemas
# ---------------------------------------------------------------------------

class Machine(enum.IntEnum):
    """``IMAGE_FILE_MACHINE_*`` values."""
    UNKNOWN = 0x0000
    TARGET_HOST = 0x0001
    I386 = 0x014C
    R3000 = 0x0162
    R4000 = 0x0166
    R10000 = 0x0168
    WCEMIPSV2 = 0x0169
    ALPHA = 0x0184
    SH3 = 0x01A2
    SH3DSP = 0x01A3
    SH3E = 0x01A4
    SH4 = 0x01A6
    SH5 = 0x01A8
    ARM = 0x01C0
    THUMB = 0x01C2
    ARMNT = 0x01C4
    AM33 = 0x01D3
    POWERPC = 0x01F0
    POWERPCFP = 0x01F1
    IA64 = 0x0200
    MIPS16 = 0x0266
    ALPHA64 = 0x0284
    MIPSFPU = 0x0366
    MIPSFPU16 = 0x0466
    TRICORE = 0x0520
    CEF = 0x0CEF
    EBC = 0x0EBC
    RISCV32 = 0x5032
    RISCV64 = 0x5064
    AMD64 = 0x8664
    M32R = 0x9041
    ARM64 = 0xAA64
    CEE = 0xC0EE


class FileCharacteristics(enum.IntFlag):
    """``IMAGE_FILE_*`` characteristics of the COFF file header."""
    RELOCS_STRIPPED = 0x0001
    EXECUTABLE_IMAGE = 0x0002
    LINE_NUMS_STRIPPED = 0x0004
    LOCAL_SYMS_STRIPPED = 0x0008
    AGGRESSIVE_WS_TRIM = 0x0010
    LARGE_ADDRESS_AWARE = 0x0020
    BYTES_REVERSED_LO = 0x0080
    MACHINE_32BIT = 0x0100
    DEBUG_STRIPPED = 0x0200
    REMOVABLE_RUN_FROM_SWAP = 0x0400
    NET_RUN_FROM_SWAP = 0x0800
    SYSTEM = 0x1000
    DLL = 0x2000
    UP_SYSTEM_ONLY = 0x4000
    BYTES_REVERSED_HI = 0x8000


class DllCharacteristics(enum.IntFlag):
    """``IMAGE_DLLCHARACTERISTICS_*`` flags of the optional header."""
    HIGH_ENTROPY_VA = 0x0020
    DYNAMIC_BASE = 0x0040
    FORCE_INTEGRITY = 0x0080
    NX_COMPAT = 0x0100
    NO_ISOLATION = 0x0200
    NO_SEH = 0x0400
    NO_BIND = 0x0800
    APPCONTAINER = 0x1000
    WDM_DRIVER = 0x2000
    GUARD_CF = 0x4000
    TERMINAL_SERVER_AWARE = 0x8000


class SectionCharacteristics(enum.IntFlag):
    """``IMAGE_SCN_*`` flags of a section header (alignment bits omitted)."""
    TYPE_NO_PAD = 0x00000008
    CNT_CODE = 0x00000020
    CNT_INITIALIZED_DATA = 0x00000040
    CNT_UNINITIALIZED_DATA = 0x00000080
    LNK_INFO = 0x00000200
    LNK_REMOVE = 0x00000800
    LNK_COMDAT = 0x00001000
    GPREL = 0x00008000
    LNK_NRELOC_OVFL = 0x01000000
    MEM_DISCARDABLE = 0x02000000
    MEM_NOT_CACHED = 0x04000000
    MEM_NOT_PAGED = 0x08000000
    MEM_SHARED = 0x10000000
    MEM_EXECUTE = 0x20000000
    MEM_READ = 0x40000000
    MEM_WRITE = 0x80000000


class Subsystem(enum.IntEnum):
    """``IMAGE_SUBSYSTEM_*`` values."""
    UNKNOWN = 0
    NATIVE = 1
    WINDOWS_GUI = 2
    WINDOWS_CUI = 3
    OS2_CUI = 5
    POSIX_CUI = 7
    NATIVE_WINDOWS = 8
    WINDOWS_CE_GUI = 9
    EFI_APPLICATION = 10
    EFI_BOOT_SERVICE_DRIVER = 11
    EFI_RUNTIME_DRIVER = 12
    EFI_ROM = 13
    XBOX = 14
    WINDOWS_BOOT_APPLICATION = 16


def _enum_name(enum_cls: type[enum.IntEnum], value: int) -> str:
    try:
        return enum_cls(value).name
    except ValueError:
        return f"{enum_cls.__name__}(0x{value:04x})"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# MZ (DOS) header
# ---------------------------------------------------------------------------

class MZHeader(_Record):
    """The 64-byte MS-DOS header that prefixes every PE image.

    ``pages`` counts 512-byte pages, the ``*alloc``/``hdrsize`` fields
    count 16-byte paragraphs and ``last_page`` counts bytes.
    ``pe_header_start`` is the ``e_lfanew`` offset of the PE header.
    """
    signature: bytes = b"MZ"
    last_page: int = 0
    pages: int = 0
    nrelocs: int = 0
    hdrsize: int = 0
    minalloc: int = 0
    maxalloc: int = 0
    ss: int = 0
    sp: int = 0
    checksum: int = 0
    ip: int = 0
    cs: int = 0
    relocs: int = 0
    overlay: int = 0
    oem_id: int = 0
    oem_info: int = 0
    pe_header_start: int = 0

    @property
    def header_bytes(self) -> int:
        return self.hdrsize * 16

    @property
    def image_bytes(self) -> int:
        """Size of the DOS load image as declared by ``pages``/``last_page``."""
        if self.pages == 0:
            return 0
        if self.last_page == 0:
            return self.pages * 512
        return (self.pages - 1) * 512 + self.last_page


class MZRelocation(_Record):
    """One ``segment:offset`` entry of the DOS relocation table."""
    offset: int
    segment: int


# ---------------------------------------------------------------------------
# COFF file header
# ---------------------------------------------------------------------------

class FileHeader(_Record):
    """``IMAGE_FILE_HEADER``: the 20 bytes following ``PE\\0\\0``."""
    machine: int = 0
    nsections: int = 0
    time_date_stamp: int = 0
    symbols: Optional[int] = None
    nsymbols: int = 0
    optional_header_size: int = 0
    characteristics: int = 0

    @property
    def machine_name(self) -> str:
        return _enum_name(Machine, self.machine)

    @property
    def flags(self) -> FileCharacteristics:
        return FileCharacteristics(self.characteristics)

    @property
    def is_dll(self) -> bool:
        return bool(self.characteristics & FileCharacteristics.DLL)

    @property
    def timestamp(self) -> Optional[datetime]:
        """Link time as a UTC datetime, or ``None`` when the stamp is zero."""
        if self.time_date_stamp == 0:
            return None
        return datetime.fromtimestamp(self.time_date_stamp, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Data directories
# ---------------------------------------------------------------------------

DIRECTORY_NAMES: tuple[str, ...] = (
    "export",
    "import",
    "resource",
    "exception",
    "security",
    "basereloc",
    "debug",
    "architecture",
    "globalptr",
    "tls",
    "load_config",
    "bound_import",
    "iat",
    "delay_import",
    "com_descriptor",
    "reserved",
)

DIRECTORY_COUNT: int = len(DIRECTORY_NAMES)


class DataDirectory(_Record):
    """``IMAGE_DATA_DIRECTORY``: an ``(address, size)`` pair."""
    virtual_address: RVA = RVA.NULL
    size: int = 0

    EMPTY: ClassVar[DataDirectory]

    @property
    def is_empty(self) -> bool:
        return self.virtual_address == 0 and self.size == 0

    def __repr__(self) -> str:
        if self.is_empty:
            return "DataDirectory.EMPTY"
        return f"DataDirectory(virtual_address=0x{int(self.virtual_address):08x}, size={self.size})"


DataDirectory.EMPTY = DataDirectory()


class DataDirectories(_Record):
    """The sixteen data directory slots in on-disk order.

    Index by position or by name::

        dirs[1] is dirs["import"]
    """
    entries: tuple[DataDirectory, ...] = Field(
        default_factory=lambda: (DataDirectory.EMPTY,) * DIRECTORY_COUNT
    )

    EMPTY: ClassVar[DataDirectories]

    @field_validator("entries")
    @classmethod
    def _sixteen_entries(cls, value: tuple[DataDirectory, ...]) -> tuple[DataDirectory, ...]:
        if len(value) != DIRECTORY_COUNT:
            raise ValueError(f"expected {DIRECTORY_COUNT} data directories, got {len(value)}")
        return value

    def __getitem__(self, key: int | str) -> DataDirectory:
        if isinstance(key, str):
            key = DIRECTORY_NAMES.index(key)
        return self.entries[key]

    def __len__(self) -> int:
        return len(self.entries)

    def iter_named(self) -> Iterator[tuple[str, DataDirectory]]:
        """Yield ``(name, DataDirectory)`` pairs in on-disk order."""
        return zip(DIRECTORY_NAMES, self.entries)

    @property
    def import_table(self) -> DataDirectory:
        return self.entries[1]

    @property
    def iat(self) -> DataDirectory:
        return self.entries[12]


DataDirectories.EMPTY = DataDirectories()


# ---------------------------------------------------------------------------
# Optional header variants
# ---------------------------------------------------------------------------

class _OptionalHeaderBase(_Record):
    linker_version: tuple[int, int] = (0, 0)
    size_of_code: int = 0
    size_of_initialized_data: int = 0
    size_of_uninitialized_data: int = 0
    address_of_entry_point: Optional[RVA] = None
    base_of_code: RVA = RVA.NULL
    image_base: int = 0
    section_alignment: int = 0
    file_alignment: int = 0
    operating_system_version: tuple[int, int] = (0, 0)
    image_version: tuple[int, int] = (0, 0)
    subsystem_version: tuple[int, int] = (0, 0)
    win32_version: int = 0
    size_of_image: int = 0
    size_of_headers: int = 0
    checksum: int = 0
    subsystem: int = 0
    dll_characteristics: int = 0
    size_of_stack_reserve: int = 0
    size_of_stack_commit: int = 0
    size_of_heap_reserve: int = 0
    size_of_heap_commit: int = 0
    loader_flags: int = 0
    number_of_rva_and_sizes: int = 0
    data_directory: DataDirectories = Field(default_factory=DataDirectories)

    bits: ClassVar[int]
    pointer_size: ClassVar[int]

    @property
    def subsystem_name(self) -> str:
        return _enum_name(Subsystem, self.subsystem)

    @property
    def dll_flags(self) -> DllCharacteristics:
        return DllCharacteristics(self.dll_characteristics)


class OptionalHeader32(_OptionalHeaderBase):
    """``IMAGE_OPTIONAL_HEADER32`` (PE32)."""
    magic: Literal[0x10B] = 0x10B
    base_of_data: RVA = RVA.NULL

    bits: ClassVar[int] = 32
    pointer_size: ClassVar[int] = 4


class OptionalHeader64(_OptionalHeaderBase):
    """``IMAGE_OPTIONAL_HEADER64`` (PE32+).  No ``base_of_data``."""
    magic: Literal[0x20B] = 0x20B

    bits: ClassVar[int] = 64
    pointer_size: ClassVar[int] = 8


OptionalHeader = Annotated[
    Union[OptionalHeader32, OptionalHeader64],
    Field(discriminator="magic"),
]


class PEHeader(_Record):
    """Signature, file header and the optional header when one is present."""
    signature: bytes = b"PE\x00\x00"
    file_header: FileHeader = Field(default_factory=FileHeader)
    optional_header: Optional[OptionalHeader] = None

    @property
    def data_directory(self) -> DataDirectories:
        if self.optional_header is None:
            return DataDirectories.EMPTY
        return self.optional_header.data_directory


# ---------------------------------------------------------------------------
# Section header
# ---------------------------------------------------------------------------

class SectionHeader(_Record):
    """``IMAGE_SECTION_HEADER``.

    ``[virtual_address, virtual_address + virtual_size)`` is the section's
    half-open range in the loaded image.  Pointer fields are ``None`` when
    zero on disk, e.g. a ``.bss`` section has no raw data pointer.
    """
    name: str = ""
    raw_name: bytes = b""
    virtual_size: int = 0
    virtual_address: RVA = RVA.NULL
    size_of_raw_data: int = 0
    pointer_to_raw_data: Optional[int] = None
    pointer_to_relocations: Optional[int] = None
    pointer_to_linenumbers: Optional[int] = None
    number_of_relocations: int = 0
    number_of_linenumbers: int = 0
    characteristics: int = 0

    @property
    def virtual_end(self) -> int:
        """Exclusive end of the range, clipped to the 32-bit address space."""
        return min(int(self.virtual_address) + self.virtual_size, RVA.MAX + 1)

    @property
    def virtual_address_range(self) -> range:
        return range(int(self.virtual_address), self.virtual_end)

    def contains(self, rva: int) -> bool:
        return int(self.virtual_address) <= rva < self.virtual_end

    @property
    def flags(self) -> SectionCharacteristics:
        return SectionCharacteristics(self.characteristics)


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------

class ImportDescriptor(_Record):
    """``IMAGE_IMPORT_DESCRIPTOR``: the import of one DLL.

    A descriptor whose ``dll_ascii_name_rva`` is :attr:`RVA.NULL` ends the
    import directory.
    """
    import_lookup_table_rva: RVA = RVA.NULL
    time_date_stamp: int = 0
    forwarder_chain: int = 0
    dll_ascii_name_rva: RVA = RVA.NULL
    iat_rva: RVA = RVA.NULL

    @property
    def is_terminator(self) -> bool:
        return self.dll_ascii_name_rva == RVA.NULL

    @property
    def is_bound(self) -> bool:
        return self.time_date_stamp != 0


class _ImportLookupTableEntry(_Record):
    value: int = 0

    ORDINAL_FLAG: ClassVar[int]

    @property
    def is_terminator(self) -> bool:
        return self.value == 0

    @property
    def is_ordinal(self) -> bool:
        return bool(self.value & self.ORDINAL_FLAG)

    @property
    def ordinal(self) -> Optional[int]:
        """Low 16 bits when importing by ordinal, else ``None``."""
        if self.is_ordinal:
            return self.value & 0xFFFF
        return None

    @property
    def name_table_rva(self) -> Optional[RVA]:
        """RVA of the hint/name record when importing by name, else ``None``."""
        if self.is_terminator or self.is_ordinal:
            return None
        return RVA(self.value & 0x7FFF_FFFF)

    @property
    def kind(self) -> str:
        if self.is_terminator:
            return "terminator"
        return "ordinal" if self.is_ordinal else "name"


class ImportLookupTableEntry32(_ImportLookupTableEntry):
    """A PE32 lookup table entry; bit 31 selects import by ordinal."""
    ORDINAL_FLAG: ClassVar[int] = 1 << 31
    size: ClassVar[int] = 4


class ImportLookupTableEntry64(_ImportLookupTableEntry):
    """A PE32+ lookup table entry; bit 63 selects import by ordinal."""
    ORDINAL_FLAG: ClassVar[int] = 1 << 63
    size: ClassVar[int] = 8


ImportLookupTableEntry = Union[ImportLookupTableEntry32, ImportLookupTableEntry64]


class ImportByName(_Record):
    """``IMAGE_IMPORT_BY_NAME``: export-table hint plus symbol name."""
    hint: int = 0
    name: str = ""


class ImportedSymbol(_Record):
    """One resolved lookup table entry of a DLL import."""
    thunk_rva: RVA
    entry: Union[ImportLookupTableEntry32, ImportLookupTableEntry64]
    ordinal: Optional[int] = None
    hint: Optional[int] = None
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.name is not None:
            return self.name
        return f"Ordinal_{self.ordinal}"


class ImportedModule(_Record):
    """A DLL named by an import descriptor and the symbols drawn from it."""
    dll_name: str
    descriptor: ImportDescriptor
    symbols: tuple[ImportedSymbol, ...] = ()
