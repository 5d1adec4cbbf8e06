"""
pelens Error Taxonomy
======================

Every failure raised by the decoding layer derives from
:class:`PELensError`.  Errors carry an ordered chain of context notes
(source identity, attempted operation) that :func:`annotate` prepends as
the error travels outward, so the final message reads like::

    `sample.exe`: error reading pe header: pe optional header size 64 < 96 required for OptionalHeader32

Bare :class:`OSError` raised by a backing source is wrapped in
:class:`SourceIOError` with the original chained as ``__cause__``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional


class PELensError(Exception):
    """Base class for all pelens decoding failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.notes: list[str] = []

    def add_context(self, note: str) -> PELensError:
        """Prepend *note* to the context chain and return ``self``."""
        self.notes.insert(0, note)
        return self

    @property
    def context_chain(self) -> list[str]:
        """Context notes outermost first, followed by the root message."""
        return [*self.notes, self.message]

    def __str__(self) -> str:
        return ": ".join(self.context_chain)


class UnexpectedEOF(PELensError, EOFError):
    """Not enough bytes for a fixed-size decode or an exact range read."""


class InvalidSignature(PELensError):
    """An ``MZ`` or ``PE\\0\\0`` signature did not match."""

    def __init__(self, record: str, expected: bytes, found: bytes) -> None:
        super().__init__(
            f"{record} signature {found!r} != {expected!r}"
        )
        self.record = record
        self.expected = expected
        self.found = found


class UnsupportedOptionalHeaderMagic(PELensError):
    """The optional header magic is ROM (0x107) or unrecognised."""

    def __init__(self, magic: int, label: Optional[str] = None) -> None:
        shown = f"0x{magic:04x}" if label is None else f"{label} (0x{magic:04x})"
        super().__init__(f"pe optional header magic == {shown} (unsupported value)")
        self.magic = magic


class InsufficientOptionalHeaderSize(PELensError):
    """The declared optional header size is too small for its variant."""

    def __init__(self, declared: int, required: int, variant: str) -> None:
        super().__init__(
            f"pe optional header size {declared} < {required} required for {variant}"
        )
        self.declared = declared
        self.required = required
        self.variant = variant


class InvalidStringEncoding(PELensError):
    """A NUL-terminated name was not valid in the required encoding."""

    def __init__(self, raw: bytes, encoding: str, reason: str) -> None:
        preview = raw[:32]
        super().__init__(
            f"{preview!r}{'...' if len(raw) > 32 else ''} is not valid {encoding}: {reason}"
        )
        self.raw = raw
        self.encoding = encoding


class SourceIOError(PELensError):
    """An operating-system level read failure from the underlying source."""

    def __init__(self, cause: OSError) -> None:
        super().__init__(str(cause) or type(cause).__name__)
        self.errno = cause.errno


@contextmanager
def annotate(source: object, note: str) -> Iterator[None]:
    """Prefix any :class:`PELensError` leaving the block with ``source: note``.

    ``OSError`` is converted to :class:`SourceIOError` first.  Exceptions of
    other types pass through untouched.
    """
    try:
        yield
    except PELensError as exc:
        exc.add_context(note)
        exc.add_context(str(source))
        raise
    except OSError as exc:
        wrapped = SourceIOError(exc)
        wrapped.add_context(note)
        wrapped.add_context(str(source))
        raise wrapped from exc
