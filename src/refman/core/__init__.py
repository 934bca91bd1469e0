"""Record store and the operations interface built on it."""

from refman.core.interface import (
    CiteItemResult,
    CiteOptions,
    CiteResult,
    LibraryOperations,
    ListOptions,
    PageResult,
    RemoveResult,
    SearchOptions,
    UpdateResult,
)
from refman.core.library import Library
from refman.core.reference import CslItem, Reference

__all__ = [
    "CiteItemResult",
    "CiteOptions",
    "CiteResult",
    "CslItem",
    "Library",
    "LibraryOperations",
    "ListOptions",
    "PageResult",
    "Reference",
    "RemoveResult",
    "SearchOptions",
    "UpdateResult",
]
