"""
PE Reader
==========

:class:`PEReader` is the entry point of pelens.  Construction parses the
MZ header, the PE header and the section table eagerly and keeps them as
immutable records; everything else (section contents, strings, imports)
is read lazily through the :class:`~pelens.core.address_space.AddressSpace`
on each call and never cached.

Usage::

    with PEReader.open("notepad.exe") as pe:
        print(pe.pe_header.file_header.machine_name)
        for module in pe.imports():
            print(module.dll_name, [s.display_name for s in module.symbols])

Every decoding failure raised during construction carries the source
label and the step that failed::

    `notepad.exe`: error reading pe header: pe header signature b'PX\\x00\\x00' != b'PE\\x00\\x00'
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import BinaryIO, Optional, Union

from pelens.core.address_space import AddressSpace, RvaStream
from pelens.core.errors import PELensError, UnexpectedEOF, annotate
from pelens.core.models import (
    DataDirectories,
    MZHeader,
    MZRelocation,
    PEHeader,
    SectionHeader,
)
from pelens.io.read_at import BytesReadAt, ReadAt, StreamReadAt, open_source
from pelens.parsers import pe_parser
from pelens.parsers.imports import ImportDirectoryWalker
from pelens.shared.config import LensConfig, ReaderConfig, get_config
from pelens.shared.logger import LensLogger

UNKNOWN_SOURCE: str = "unknown"


class PEReader:
    """Parsed headers of one PE image plus lazy access to its contents.

    Args:
        source: Random-access source holding the image.
        exe_start: Absolute offset of the ``MZ`` header within *source*.
        name: Label used in diagnostics; rendered as ``"`name`"``.
        config: Configuration; defaults to :func:`get_config`.
        logger: Logger; one is built from *config* when omitted.
        owns_source: Close *source* when the reader is closed.

    Raises:
        PELensError: Any header or section record failed to decode.  The
            source is closed first if the reader owns it.
    """

    def __init__(
        self,
        source: ReadAt,
        exe_start: int = 0,
        *,
        name: Optional[str] = None,
        config: Optional[LensConfig] = None,
        logger: Optional[LensLogger] = None,
        owns_source: bool = False,
    ) -> None:
        self._source = source
        self._exe_start = exe_start
        self._label = f"`{name}`" if name is not None else UNKNOWN_SOURCE
        self._owns_source = owns_source

        cfg = config or get_config()
        self._settings: ReaderConfig = cfg.reader
        self._logger = logger or LensLogger.from_config("reader", cfg.global_settings)

        with self._logger.bound_source(self._label):
            try:
                self._mz_header, self._pe_header, self._sections = self._parse()
            except PELensError as exc:
                self._logger.warning("%s", exc)
                if owns_source:
                    source.close()
                raise

        self._space = AddressSpace(
            source,
            self._sections,
            exe_start,
            batch_size=self._settings.read_batch_size,
            max_string_length=self._settings.max_string_length,
        )

    # ------------------------------------------------------------------ #
    #  Constructors
    # ------------------------------------------------------------------ #

    @classmethod
    def open(
        cls,
        path: Union[str, os.PathLike],
        *,
        config: Optional[LensConfig] = None,
        logger: Optional[LensLogger] = None,
    ) -> PEReader:
        """Open and parse the image at *path*.  The reader owns the file."""
        label = str(Path(path))
        with annotate(f"`{label}`", "error opening file"):
            source = open_source(path)
        return cls(source, name=label, config=config, logger=logger, owns_source=True)

    @classmethod
    def from_bytes(
        cls,
        data: Union[bytes, bytearray, memoryview],
        *,
        name: Optional[str] = None,
        config: Optional[LensConfig] = None,
        logger: Optional[LensLogger] = None,
    ) -> PEReader:
        """Parse an image held in memory."""
        return cls(BytesReadAt(data), name=name, config=config, logger=logger)

    @classmethod
    def from_stream(
        cls,
        stream: BinaryIO,
        *,
        name: Optional[str] = None,
        config: Optional[LensConfig] = None,
        logger: Optional[LensLogger] = None,
    ) -> PEReader:
        """Parse an image starting at the current position of a seekable stream."""
        if name is None:
            name = getattr(stream, "name", None)
            name = name if isinstance(name, str) else None
        with annotate(f"`{name}`" if name else UNKNOWN_SOURCE, "error reading stream position"):
            exe_start = stream.tell()
        return cls(
            StreamReadAt(stream), exe_start, name=name, config=config, logger=logger
        )

    # ------------------------------------------------------------------ #
    #  Header parsing
    # ------------------------------------------------------------------ #

    def _parse(self) -> tuple[MZHeader, PEHeader, tuple[SectionHeader, ...]]:
        log = self._logger
        source = self._source

        with log.operation("parse_headers"), log.timed(f"parse {self._label}"):
            with annotate(self._label, "error reading mz header"):
                mz = pe_parser.read_mz(source, self._exe_start)
            pe_offset = self._exe_start + mz.pe_header_start
            log.debug("MZ header ok, PE header at 0x%x", pe_offset)

            with annotate(self._label, "error reading pe header"):
                pe = pe_parser.read_pe(source, pe_offset)
            fh = pe.file_header
            log.debug(
                "PE header ok: machine=%s sections=%d optional=%s",
                fh.machine_name,
                fh.nsections,
                "absent" if pe.optional_header is None else f"PE{pe.optional_header.bits}",
            )

            table = pe_parser.section_table_offset(pe_offset, fh)
            with annotate(self._label, "error reading section table"):
                sections = pe_parser.read_section_table(source, table, fh.nsections)
            log.debug("Read %d section headers at 0x%x", len(sections), table)

        return mz, pe, tuple(sections)

    # ------------------------------------------------------------------ #
    #  Parsed state
    # ------------------------------------------------------------------ #

    @property
    def name(self) -> str:
        """Diagnostic label of the source."""
        return self._label

    @property
    def exe_start(self) -> int:
        return self._exe_start

    @property
    def source(self) -> ReadAt:
        return self._source

    @property
    def mz_header(self) -> MZHeader:
        return self._mz_header

    @property
    def pe_header(self) -> PEHeader:
        return self._pe_header

    @property
    def section_headers(self) -> tuple[SectionHeader, ...]:
        return self._sections

    @property
    def data_directory(self) -> DataDirectories:
        """The 16 data directories, all empty when there is no optional header."""
        return self._pe_header.data_directory

    @property
    def address_space(self) -> AddressSpace:
        return self._space

    @property
    def pointer_size(self) -> int:
        """4 for PE32, 8 for PE32+.  Images without an optional header use 4."""
        optional = self._pe_header.optional_header
        return 4 if optional is None else optional.pointer_size

    def mz_relocations(self) -> list[MZRelocation]:
        """The DOS stub's relocation table."""
        with annotate(self._label, "error reading mz relocations"):
            return pe_parser.read_mz_relocations(self._source, self._mz_header, self._exe_start)

    # ------------------------------------------------------------------ #
    #  Sections
    # ------------------------------------------------------------------ #

    def section_header(self, index: int) -> SectionHeader:
        """Section header at *index* in table order.

        Raises:
            IndexError: No such section.
        """
        return self._sections[index]

    def get_section_header(self, name: str) -> Optional[SectionHeader]:
        """First section called *name*, or ``None``."""
        for section in self._sections:
            if section.name == name:
                return section
        return None

    def _section(self, header_or_index: Union[SectionHeader, int]) -> SectionHeader:
        if isinstance(header_or_index, SectionHeader):
            return header_or_index
        return self.section_header(header_or_index)

    def read_section_data(self, header_or_index: Union[SectionHeader, int]) -> bytes:
        """The section's raw file data (``size_of_raw_data`` bytes).

        An absent raw data pointer reads from file offset zero.
        """
        section = self._section(header_or_index)
        buf = bytearray(section.size_of_raw_data)
        self.read_section_data_into(section, 0, buf)
        return bytes(buf)

    def read_section_data_into(
        self,
        header_or_index: Union[SectionHeader, int],
        offset: int,
        buf: Union[bytearray, memoryview],
    ) -> None:
        """Fill *buf* from the section's raw data starting *offset* bytes in.

        Raises:
            UnexpectedEOF: The range leaves the section's raw data or the
                source ends early.
        """
        section = self._section(header_or_index)
        with annotate(self._label, f"error reading section {section.name!r}"):
            if offset < 0 or offset + len(buf) > section.size_of_raw_data:
                raise UnexpectedEOF(
                    f"range {offset}+{len(buf)} outside raw data of size {section.size_of_raw_data}"
                )
            start = self._exe_start + (section.pointer_to_raw_data or 0) + offset
            self._source.read_exact_at(buf, start)

    # ------------------------------------------------------------------ #
    #  RVA access
    # ------------------------------------------------------------------ #

    def read_exact_rva(self, rva: int, size: int) -> bytes:
        with annotate(self._label, f"error reading {size} bytes at rva 0x{int(rva):08x}"):
            return self._space.read_exact_rva(rva, size)

    def read_into_rva(self, rva: int, buf: Union[bytearray, memoryview]) -> None:
        with annotate(self._label, f"error reading {len(buf)} bytes at rva 0x{int(rva):08x}"):
            self._space.read_into_rva(rva, buf)

    def read_asciiz_rva(self, rva: int, limit: Optional[int] = None) -> bytes:
        with annotate(self._label, f"error reading string at rva 0x{int(rva):08x}"):
            return self._space.read_asciiz_rva(rva, limit)

    def read_str_rva(self, rva: int, encoding: Optional[str] = None) -> str:
        """Decode the NUL-terminated string at *rva* (configured encoding by default)."""
        encoding = encoding or self._settings.string_encoding
        with annotate(self._label, f"error reading string at rva 0x{int(rva):08x}"):
            return self._space.read_str_rva(rva, encoding)

    def rva_stream(self, rva: int) -> RvaStream:
        return self._space.stream(rva)

    # ------------------------------------------------------------------ #
    #  Imports
    # ------------------------------------------------------------------ #

    def imports(self) -> ImportDirectoryWalker:
        """Walker over the import directory; iterating it yields modules."""
        return ImportDirectoryWalker(
            self._space,
            self._pe_header.optional_header,
            encoding=self._settings.string_encoding,
            logger=self._logger,
            label=self._label,
        )

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    def close(self) -> None:
        if self._owns_source:
            self._source.close()

    def __enter__(self) -> PEReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"PEReader({self._label}, sections={len(self._sections)})"
