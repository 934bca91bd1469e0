"""Library operations backed directly by the library file.

Used by local-mode commands and, inside the background server, as the single
writer. Each mutation is written to disk before the call returns; if the
write fails, the in-memory change is undone and ``PersistenceError`` raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from refman.config import CitationConfig
from refman.core.interface import (
    CiteOptions,
    CiteResult,
    ListOptions,
    OnIdCollision,
    PageResult,
    RemoveResult,
    SearchOptions,
    UpdateResult,
)
from refman.core.library import Library
from refman.core.reference import CslItem
from refman.errors import PersistenceError
from refman.operations import cite_references, list_references, search_references

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalLibrary:
    """``LibraryOperations`` over an in-process ``Library``."""

    def __init__(self, library: Library, citation: CitationConfig | None = None) -> None:
        self.library = library
        self._citation = citation or CitationConfig()

    @property
    def path(self):
        return self.library.path

    # ── Durable mutation ─────────────────────────────────────

    def _commit(self, mutate: Callable[[], T]) -> T:
        snapshot = self.library.snapshot()
        result = mutate()
        if not self.library.dirty:
            return result
        try:
            self.library.save()
        except PersistenceError:
            self.library.restore(snapshot)
            logger.error("Rolled back unsaved change to %s", self.library.path)
            raise
        return result

    # ── Queries ──────────────────────────────────────────────

    async def find(self, identifier: str, *, by_uuid: bool = False) -> CslItem | None:
        return self.library.find(identifier, by_uuid=by_uuid)

    async def get_all(self) -> list[CslItem]:
        return self.library.get_all()

    # ── Mutations ────────────────────────────────────────────

    async def add(self, item: CslItem) -> CslItem:
        return self._commit(lambda: self.library.add(item))

    async def update(
        self,
        identifier: str,
        updates: CslItem,
        *,
        by_uuid: bool = False,
        on_id_collision: OnIdCollision = "fail",
    ) -> UpdateResult:
        return self._commit(
            lambda: self.library.update(
                identifier, updates, by_uuid=by_uuid, on_id_collision=on_id_collision
            )
        )

    async def remove(self, identifier: str, *, by_uuid: bool = False) -> RemoveResult:
        return self._commit(lambda: self.library.remove(identifier, by_uuid=by_uuid))

    async def save(self) -> None:
        self.library.save()

    # ── Derived reads ────────────────────────────────────────

    async def list(self, options: ListOptions | None = None) -> PageResult:
        return list_references(self.library.get_all(), options or ListOptions())

    async def search(self, options: SearchOptions) -> PageResult:
        return search_references(self.library.get_all(), options)

    async def cite(self, options: CiteOptions) -> CiteResult:
        return cite_references(
            self.library.get_all(), options, default_format=self._citation.default_format
        )

    async def aclose(self) -> None:
        return None


def load_local_library(path, citation: CitationConfig | None = None) -> LocalLibrary:
    """Default direct-load function handed to the execution context factory."""
    return LocalLibrary(Library.load(path), citation)
