"""
pelens -- Portable Executable Decoder
======================================

pelens decodes Windows PE/COFF images from untrusted, possibly truncated
byte sources.  It validates and parses the fixed-layout headers eagerly
and reads everything else lazily by relative virtual address.

Capabilities:
    - MS-DOS ``MZ`` header and relocation table
    - COFF file header and PE32 / PE32+ optional headers
    - Data directory table and section table
    - RVA resolution with cross-section stitching and zero-filled gaps
    - Import directory walk (descriptors, lookup tables, hint/name records)
    - Positioned reads over files, in-memory buffers and seekable streams

References:
    - Microsoft. (2024). PE Format.
    - Pietrek, M. (2002). An In-Depth Look into the Win32 Portable
      Executable File Format. MSDN Magazine.
"""

from pelens.core.address_space import AddressSpace, Resolution, RvaStream
from pelens.core.errors import (
    InsufficientOptionalHeaderSize,
    InvalidSignature,
    InvalidStringEncoding,
    PELensError,
    SourceIOError,
    UnexpectedEOF,
    UnsupportedOptionalHeaderMagic,
)
from pelens.core.models import (
    RVA,
    DataDirectories,
    DataDirectory,
    FileHeader,
    ImportDescriptor,
    ImportedModule,
    ImportedSymbol,
    MZHeader,
    OptionalHeader32,
    OptionalHeader64,
    PEHeader,
    SectionHeader,
)
from pelens.core.reader import PEReader
from pelens.io.read_at import BytesReadAt, FileReadAt, ReadAt, StreamReadAt

__version__ = "1.0.0"
__all__ = [
    "PEReader",
    "AddressSpace",
    "Resolution",
    "RvaStream",
    "ReadAt",
    "BytesReadAt",
    "FileReadAt",
    "StreamReadAt",
    "RVA",
    "MZHeader",
    "FileHeader",
    "OptionalHeader32",
    "OptionalHeader64",
    "PEHeader",
    "DataDirectory",
    "DataDirectories",
    "SectionHeader",
    "ImportDescriptor",
    "ImportedModule",
    "ImportedSymbol",
    "PELensError",
    "UnexpectedEOF",
    "InvalidSignature",
    "UnsupportedOptionalHeaderMagic",
    "InsufficientOptionalHeaderSize",
    "InvalidStringEncoding",
    "SourceIOError",
]
