"""The operations interface every command is written against.

Both ``LocalLibrary`` (direct file access) and ``ServerClient`` (HTTP) satisfy
``LibraryOperations``, so commands never need to know which one they got.
Results are plain dataclasses that serialize to the JSON bodies exchanged
with the server (camelCase keys on the wire).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable

from refman.core.reference import CslItem
from refman.errors import InvalidInputError

OnIdCollision = Literal["fail", "suffix"]
SortOrder = Literal["asc", "desc"]


@dataclass
class UpdateResult:
    updated: bool
    item: CslItem | None = None
    id_collision: bool = False
    id_changed: bool = False
    new_id: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"updated": self.updated}
        if self.item is not None:
            data["item"] = self.item
        if self.id_collision:
            data["idCollision"] = True
        if self.id_changed:
            data["idChanged"] = True
            data["newId"] = self.new_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> UpdateResult:
        return cls(
            updated=bool(data.get("updated")),
            item=data.get("item"),
            id_collision=bool(data.get("idCollision", False)),
            id_changed=bool(data.get("idChanged", False)),
            new_id=data.get("newId"),
        )


@dataclass
class RemoveResult:
    removed: bool
    removed_item: CslItem | None = None

    def to_dict(self) -> dict:
        data: dict = {"removed": self.removed}
        if self.removed_item is not None:
            data["removedItem"] = self.removed_item
        return data

    @classmethod
    def from_dict(cls, data: dict) -> RemoveResult:
        return cls(removed=bool(data.get("removed")), removed_item=data.get("removedItem"))


def _page_fields(data: dict) -> dict:
    sort = data.get("sort", "updated")
    order = data.get("order", "desc")
    limit = data.get("limit", 0)
    offset = data.get("offset", 0)
    if not isinstance(sort, str):
        raise InvalidInputError("sort must be a string")
    if order not in ("asc", "desc"):
        raise InvalidInputError(f"Invalid sort order: {order}")
    for name, value in (("limit", limit), ("offset", offset)):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise InvalidInputError(f"{name} must be a non-negative integer")
    return {"sort": sort, "order": order, "limit": limit, "offset": offset}


@dataclass
class ListOptions:
    sort: str = "updated"
    order: SortOrder = "desc"
    limit: int = 0
    offset: int = 0

    def to_dict(self) -> dict:
        return {"sort": self.sort, "order": self.order, "limit": self.limit, "offset": self.offset}

    @classmethod
    def from_dict(cls, data: dict) -> ListOptions:
        return cls(**_page_fields(data))


@dataclass
class SearchOptions(ListOptions):
    query: str = ""

    def to_dict(self) -> dict:
        return {"query": self.query, **super().to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> SearchOptions:
        query = data.get("query", "")
        if not isinstance(query, str):
            raise InvalidInputError("query must be a string")
        return cls(query=query, **_page_fields(data))


@dataclass
class PageResult:
    """One page of a sorted listing or search."""

    items: list[CslItem]
    total: int
    limit: int = 0
    offset: int = 0
    next_offset: int | None = None

    def to_dict(self) -> dict:
        return {
            "items": self.items,
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "nextOffset": self.next_offset,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PageResult:
        return cls(
            items=list(data.get("items", [])),
            total=int(data.get("total", 0)),
            limit=int(data.get("limit", 0)),
            offset=int(data.get("offset", 0)),
            next_offset=data.get("nextOffset"),
        )


@dataclass
class CiteOptions:
    identifiers: list[str]
    by_uuid: bool = False
    in_text: bool = False
    style: str | None = None
    locale: str | None = None
    format: str | None = None

    def to_dict(self) -> dict:
        data: dict = {
            "identifiers": self.identifiers,
            "byUuid": self.by_uuid,
            "inText": self.in_text,
        }
        for key in ("style", "locale", "format"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> CiteOptions:
        identifiers = data.get("identifiers")
        if not isinstance(identifiers, list) or not all(isinstance(i, str) for i in identifiers):
            raise InvalidInputError("identifiers must be a list of strings")
        options = {}
        for key in ("style", "locale", "format"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise InvalidInputError(f"{key} must be a string")
            options[key] = value
        return cls(
            identifiers=identifiers,
            by_uuid=bool(data.get("byUuid", False)),
            in_text=bool(data.get("inText", False)),
            **options,
        )


@dataclass
class CiteItemResult:
    identifier: str
    success: bool
    citation: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"identifier": self.identifier, "success": self.success}
        if self.success:
            data["citation"] = self.citation
        else:
            data["error"] = self.error
        return data


@dataclass
class CiteResult:
    results: list[CiteItemResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"results": [r.to_dict() for r in self.results]}

    @classmethod
    def from_dict(cls, data: dict) -> CiteResult:
        return cls(
            results=[
                CiteItemResult(
                    identifier=r.get("identifier", ""),
                    success=bool(r.get("success")),
                    citation=r.get("citation"),
                    error=r.get("error"),
                )
                for r in data.get("results", [])
            ]
        )


@runtime_checkable
class LibraryOperations(Protocol):
    """Protocol that local and remote libraries must implement.

    Mutating calls are durable when they return; a call that raises has had
    no effect.
    """

    async def find(self, identifier: str, *, by_uuid: bool = False) -> CslItem | None: ...

    async def get_all(self) -> list[CslItem]: ...

    async def add(self, item: CslItem) -> CslItem: ...

    async def update(
        self,
        identifier: str,
        updates: CslItem,
        *,
        by_uuid: bool = False,
        on_id_collision: OnIdCollision = "fail",
    ) -> UpdateResult: ...

    async def remove(self, identifier: str, *, by_uuid: bool = False) -> RemoveResult: ...

    async def save(self) -> None: ...

    async def list(self, options: ListOptions | None = None) -> PageResult: ...

    async def search(self, options: SearchOptions) -> PageResult: ...

    async def cite(self, options: CiteOptions) -> CiteResult: ...

    async def aclose(self) -> None:
        """Release any resources (sessions, file handles)."""
        ...
