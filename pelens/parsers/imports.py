"""
Import Directory Walker
========================

Walks the PE import directory through an :class:`AddressSpace`:

    Import directory ──► IMAGE_IMPORT_DESCRIPTOR[]   (20 bytes each)
                            │
                            ├── dll_ascii_name_rva ──► "KERNEL32.dll\\0"
                            └── import_lookup_table_rva
                                      │
                                      ▼
                              lookup entries (4 or 8 bytes)
                                 ├── ordinal flag set ─► ordinal (low 16 bits)
                                 └── clear ─► IMAGE_IMPORT_BY_NAME
                                                (u16 hint, "Name\\0")

Both the descriptor array and every lookup table are terminated by an
all-zero record, never by the directory's declared size.  A malformed
record stops the walk with an exception; records yielded before it stay
valid.

References:
    - Microsoft. (2024). PE Format -- The .idata Section.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format#the-idata-section
"""

from __future__ import annotations

from typing import Iterator, Optional

from pelens.core.address_space import AddressSpace
from pelens.core.codec import RawRecord, decode_int
from pelens.core.errors import PELensError, annotate
from pelens.core.models import (
    RVA,
    ImportByName,
    ImportDescriptor,
    ImportedModule,
    ImportedSymbol,
    ImportLookupTableEntry,
    ImportLookupTableEntry32,
    ImportLookupTableEntry64,
    OptionalHeader32,
    OptionalHeader64,
)
from pelens.shared.logger import LensLogger


IMPORT_DESCRIPTOR = RawRecord("ImportDescriptor", [
    ("import_lookup_table_rva", "I"),
    ("time_date_stamp", "I"),
    ("forwarder_chain", "I"),
    ("dll_ascii_name_rva", "I"),
    ("iat_rva", "I"),
])

HINT_SIZE: int = 2


class ImportDirectoryWalker:
    """Lazy reader for the import directory of one image.

    Nothing is read until one of the ``iter_*`` methods is consumed, and
    nothing is cached: each call walks the image again.

    Args:
        space: RVA view of the image.
        optional_header: Parsed optional header, or ``None`` for images
            without one (which then have no imports).
        encoding: Codec for DLL and symbol names.
        logger: Optional logger for walk progress.
        label: Source label prefixed to errors from :meth:`iter_modules`
            and :meth:`read_iat`.
    """

    def __init__(
        self,
        space: AddressSpace,
        optional_header: Optional[OptionalHeader32 | OptionalHeader64],
        encoding: str = "ascii",
        logger: Optional[LensLogger] = None,
        label: str = "unknown",
    ) -> None:
        self._space = space
        self._optional_header = optional_header
        self._encoding = encoding
        self._logger = logger
        self._label = label

        if optional_header is not None and optional_header.bits == 64:
            self._entry_cls: type = ImportLookupTableEntry64
        else:
            self._entry_cls = ImportLookupTableEntry32

    @property
    def entry_size(self) -> int:
        return self._entry_cls.size

    def _directory_rva(self) -> Optional[RVA]:
        if self._optional_header is None:
            return None
        directory = self._optional_header.data_directory.import_table
        if directory.virtual_address == RVA.NULL:
            return None
        return directory.virtual_address

    # ------------------------------------------------------------------ #
    #  Descriptors
    # ------------------------------------------------------------------ #

    def iter_descriptors(self) -> Iterator[ImportDescriptor]:
        """Yield import descriptors up to (not including) the terminator."""
        start = self._directory_rva()
        if start is None:
            return

        index = 0
        while True:
            rva = int(start) + index * IMPORT_DESCRIPTOR.size
            try:
                fields = IMPORT_DESCRIPTOR.decode(
                    self._space.read_exact_rva(rva, IMPORT_DESCRIPTOR.size)
                )
            except PELensError as exc:
                raise exc.add_context(f"import descriptor [{index}] at 0x{rva:08x}")
            descriptor = ImportDescriptor(**fields)
            if descriptor.is_terminator:
                return
            yield descriptor
            index += 1

    # ------------------------------------------------------------------ #
    #  Lookup tables
    # ------------------------------------------------------------------ #

    def decode_entry(self, value: int) -> ImportLookupTableEntry:
        """Wrap a raw lookup-table value in the entry type for this image."""
        return self._entry_cls(value=value)

    def iter_lookup_table(self, rva: int) -> Iterator[tuple[RVA, ImportLookupTableEntry]]:
        """Yield ``(entry_rva, entry)`` pairs up to the all-zero entry."""
        size = self.entry_size
        index = 0
        while True:
            pos = int(rva) + index * size
            try:
                value = decode_int(self._space.read_exact_rva(pos, size), size)
            except PELensError as exc:
                raise exc.add_context(f"lookup table entry [{index}] at 0x{pos:08x}")
            entry = self.decode_entry(value)
            if entry.is_terminator:
                return
            yield RVA(pos), entry
            index += 1

    def read_import_by_name(self, rva: int) -> ImportByName:
        """Decode the hint/name record at *rva*."""
        try:
            hint = decode_int(self._space.read_exact_rva(rva, HINT_SIZE), HINT_SIZE)
            name = self._space.read_str_rva(int(rva) + HINT_SIZE, self._encoding)
        except PELensError as exc:
            raise exc.add_context(f"hint/name entry at 0x{int(rva):08x}")
        return ImportByName(hint=hint, name=name)

    def _resolve(self, thunk_rva: RVA, entry: ImportLookupTableEntry) -> ImportedSymbol:
        if entry.is_ordinal:
            return ImportedSymbol(thunk_rva=thunk_rva, entry=entry, ordinal=entry.ordinal)
        by_name = self.read_import_by_name(entry.name_table_rva)
        return ImportedSymbol(
            thunk_rva=thunk_rva, entry=entry, hint=by_name.hint, name=by_name.name
        )

    # ------------------------------------------------------------------ #
    #  Modules
    # ------------------------------------------------------------------ #

    def read_module(
        self, descriptor: ImportDescriptor, index: Optional[int] = None
    ) -> ImportedModule:
        """Resolve the DLL name and every symbol named by *descriptor*.

        Descriptors without a lookup table fall back to walking the IAT,
        which holds the same entries until the image is bound.
        """
        try:
            dll_name = self._space.read_str_rva(descriptor.dll_ascii_name_rva, self._encoding)
        except PELensError as exc:
            where = "dll name" if index is None else f"dll name of import descriptor [{index}]"
            raise exc.add_context(where)

        table = descriptor.import_lookup_table_rva
        if table == RVA.NULL:
            table = descriptor.iat_rva

        symbols: list[ImportedSymbol] = []
        if table != RVA.NULL:
            try:
                for thunk_rva, entry in self.iter_lookup_table(table):
                    symbols.append(self._resolve(thunk_rva, entry))
            except PELensError as exc:
                raise exc.add_context(f"imports of {dll_name}")

        return ImportedModule(dll_name=dll_name, descriptor=descriptor, symbols=tuple(symbols))

    def iter_modules(self) -> Iterator[ImportedModule]:
        """Yield one :class:`ImportedModule` per DLL, in directory order.

        Errors carry the source label and ``error reading imports``; an
        ``OSError`` from the source surfaces as ``SourceIOError``.
        """
        with annotate(self._label, "error reading imports"):
            for index, descriptor in enumerate(self.iter_descriptors()):
                module = self.read_module(descriptor, index)
                if self._logger is not None:
                    self._logger.debug(
                        "Imported %s (%d symbols)", module.dll_name, len(module.symbols)
                    )
                yield module

    def walk(self) -> list[ImportedModule]:
        """Collect every imported module."""
        return list(self.iter_modules())

    def __iter__(self) -> Iterator[ImportedModule]:
        return self.iter_modules()

    # ------------------------------------------------------------------ #
    #  Import address table
    # ------------------------------------------------------------------ #

    def read_iat(self) -> tuple[int, ...]:
        """The IAT directory as pointer-width integers.

        A trailing partial entry (directory size not a multiple of the
        pointer size) is ignored.
        """
        if self._optional_header is None:
            return ()
        directory = self._optional_header.data_directory.iat
        if directory.is_empty:
            return ()

        size = self.entry_size
        count = directory.size // size
        with annotate(self._label, "error reading import address table"):
            raw = self._space.read_exact_rva(directory.virtual_address, count * size)
        return tuple(decode_int(raw[i * size:(i + 1) * size], size) for i in range(count))
