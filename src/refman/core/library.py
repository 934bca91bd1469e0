"""In-memory CSL-JSON library backed by one JSON file.

The file is the source of truth. It is read once at load time and rewritten
as a whole on ``save()`` (temp file, fsync, rename), so a crash mid-write
leaves either the old or the new document, never a truncated one.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from refman.core.interface import OnIdCollision, RemoveResult, UpdateResult
from refman.core.reference import CslItem, Reference, now_iso, resolve_id_collision
from refman.errors import InvalidInputError, PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _FileSignature:
    mtime_ns: int
    size: int


@dataclass(frozen=True)
class Snapshot:
    """Opaque copy of the store's contents, used to undo a failed mutation."""

    references: tuple[Reference, ...]
    dirty: bool


def _parse_keyword(value: object) -> object:
    # CSL-JSON stores keywords as a ";"-separated string
    if not isinstance(value, str):
        return value
    keywords = [k.strip() for k in value.split(";") if k.strip()]
    return keywords or None


def parse_library(text: str, source: str = "<string>") -> list[CslItem]:
    """Parse and validate a CSL-JSON document."""
    try:
        data = json.loads(text) if text.strip() else []
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Failed to parse JSON in {source}: {e}") from e
    if not isinstance(data, list):
        raise InvalidInputError(f"Invalid CSL-JSON structure in {source}: expected a list")
    items: list[CslItem] = []
    for index, raw in enumerate(data):
        if not isinstance(raw, dict):
            raise InvalidInputError(f"Invalid CSL-JSON item #{index} in {source}")
        item = dict(raw)
        if "keyword" in item:
            item["keyword"] = _parse_keyword(item["keyword"])
            if item["keyword"] is None:
                del item["keyword"]
        items.append(item)
    return items


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` so readers see either the old or the new file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class Library:
    """In-memory library with uuid/id indices."""

    def __init__(self, path: Path, items: list[CslItem] | None = None) -> None:
        self.path = path
        self._references: list[Reference] = []
        self._by_uuid: dict[str, Reference] = {}
        self._by_id: dict[str, Reference] = {}
        self._signature: _FileSignature | None = None
        self.dirty = False
        self._replace_all(items or [])

    # ── Load / save ──────────────────────────────────────────

    @classmethod
    def load(cls, path: Path) -> Library:
        """Load the library file; a missing file is an empty library."""
        path = Path(path).expanduser()
        items: list[CslItem] = []
        if path.exists():
            items = parse_library(path.read_text(encoding="utf-8"), source=str(path))
        library = cls(path, items)
        library._signature = library._stat()
        logger.debug("Loaded %d references from %s", len(items), path)
        return library

    def save(self) -> None:
        """Persist the whole document atomically."""
        text = json.dumps([r.item for r in self._references], indent=2, ensure_ascii=False)
        try:
            atomic_write_text(self.path, text + "\n")
        except OSError as e:
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e
        self._signature = self._stat()
        self.dirty = False
        logger.debug("Saved %d references to %s", len(self._references), self.path)

    def reload_if_changed(self) -> bool:
        """Re-read the file if something else rewrote it since our last load/save."""
        current = self._stat()
        if current == self._signature:
            return False
        if current is None:
            # File deleted underneath us: keep the in-memory copy
            return False
        items = parse_library(self.path.read_text(encoding="utf-8"), source=str(self.path))
        self._replace_all(items)
        self._signature = current
        self.dirty = False
        logger.info("Reloaded %s after external change (%d references)", self.path, len(items))
        return True

    def _stat(self) -> _FileSignature | None:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return _FileSignature(st.st_mtime_ns, st.st_size)

    # ── Snapshot / restore ───────────────────────────────────

    def snapshot(self) -> Snapshot:
        return Snapshot(tuple(self._references), self.dirty)

    def restore(self, snapshot: Snapshot) -> None:
        self._references = list(snapshot.references)
        self._rebuild_indices()
        self.dirty = snapshot.dirty

    # ── Queries ──────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._references)

    def get_all(self) -> list[CslItem]:
        return [copy.deepcopy(r.item) for r in self._references]

    def find(self, identifier: str, *, by_uuid: bool = False) -> CslItem | None:
        ref = self._lookup(identifier, by_uuid)
        return copy.deepcopy(ref.item) if ref else None

    def ids(self) -> list[str]:
        return [r.id for r in self._references]

    # ── Mutations ────────────────────────────────────────────

    def add(self, item: CslItem) -> CslItem:
        if not isinstance(item, dict):
            raise InvalidInputError("Reference must be a JSON object")
        ref = Reference.create(copy.deepcopy(item), existing_ids=self.ids())
        self._references.append(ref)
        self._index(ref)
        self.dirty = True
        return copy.deepcopy(ref.item)

    def update(
        self,
        identifier: str,
        updates: CslItem,
        *,
        by_uuid: bool = False,
        on_id_collision: OnIdCollision = "fail",
    ) -> UpdateResult:
        ref = self._lookup(identifier, by_uuid)
        if ref is None:
            return UpdateResult(updated=False)

        existing = ref.item
        requested_id = str(updates.get("id") or existing.get("id", ""))
        new_id = requested_id
        id_changed = False
        if requested_id != ref.id and requested_id in self._by_id:
            if on_id_collision == "fail":
                return UpdateResult(updated=False, id_collision=True)
            others = [i for i in self.ids() if i != ref.id]
            new_id = resolve_id_collision(requested_id, others)
            id_changed = True

        custom = {
            **(existing.get("custom") or {}),
            **(updates.get("custom") or {}),
            "uuid": existing["custom"]["uuid"],
            "created_at": existing["custom"].get("created_at") or now_iso(),
            "timestamp": now_iso(),
        }
        merged = {
            **existing,
            **copy.deepcopy(updates),
            "id": new_id,
            "type": updates.get("type") or existing.get("type"),
            "custom": custom,
        }

        position = self._references.index(ref)
        self._unindex(ref)
        new_ref = Reference(merged)
        self._references[position] = new_ref
        self._index(new_ref)
        self.dirty = True
        return UpdateResult(
            updated=True,
            item=copy.deepcopy(new_ref.item),
            id_changed=id_changed,
            new_id=new_id if id_changed else None,
        )

    def remove(self, identifier: str, *, by_uuid: bool = False) -> RemoveResult:
        ref = self._lookup(identifier, by_uuid)
        if ref is None:
            return RemoveResult(removed=False)
        self._references.remove(ref)
        self._unindex(ref)
        self.dirty = True
        return RemoveResult(removed=True, removed_item=copy.deepcopy(ref.item))

    # ── Indices ──────────────────────────────────────────────

    def _lookup(self, identifier: str, by_uuid: bool) -> Reference | None:
        return (self._by_uuid if by_uuid else self._by_id).get(identifier)

    def _replace_all(self, items: list[CslItem]) -> None:
        self._references = [Reference(item) for item in items]
        self._rebuild_indices()

    def _rebuild_indices(self) -> None:
        self._by_uuid.clear()
        self._by_id.clear()
        for ref in self._references:
            self._index(ref)

    def _index(self, ref: Reference) -> None:
        self._by_uuid[ref.uuid] = ref
        self._by_id[ref.id] = ref

    def _unindex(self, ref: Reference) -> None:
        self._by_uuid.pop(ref.uuid, None)
        if self._by_id.get(ref.id) is ref:
            del self._by_id[ref.id]
