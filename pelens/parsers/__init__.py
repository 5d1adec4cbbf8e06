"""
pelens Parsers
===============

Decoders for the fixed-layout PE headers and the import directory.
"""

from pelens.parsers.imports import ImportDirectoryWalker
from pelens.parsers.pe_parser import read_mz, read_pe, read_section_table

__all__ = [
    "ImportDirectoryWalker",
    "read_mz",
    "read_pe",
    "read_section_table",
]
