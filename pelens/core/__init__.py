"""
pelens Core Module
===================

Error taxonomy, binary record codec, header models, the RVA address
space and the :class:`~pelens.core.reader.PEReader` entry point.
"""

from pelens.core.errors import PELensError, annotate
from pelens.core.models import RVA, SectionHeader

__all__ = [
    "PELensError",
    "annotate",
    "RVA",
    "SectionHeader",
]
