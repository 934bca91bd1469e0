"""A single CSL-JSON record plus the identifiers refman maintains for it.

Every stored item carries ``custom.uuid`` (stable internal identifier),
``custom.created_at`` and ``custom.timestamp`` (last modification). The
citation key lives in ``id`` and is generated from author/year/title when a
new item arrives without one.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone

CslItem = dict

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)
_NON_ALNUM = re.compile(r"[^a-z0-9]")
_SLUG_MAX = 32


def now_iso() -> str:
    """UTC timestamp in the ISO-8601 form stored in ``custom``."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_valid_uuid(value: object) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def ensure_custom_metadata(custom: dict | None) -> dict:
    """Return a copy of ``custom`` with uuid, created_at and timestamp filled in."""
    result = dict(custom or {})
    if not is_valid_uuid(result.get("uuid")):
        result["uuid"] = str(uuid.uuid4())
    if not result.get("created_at"):
        # Legacy items only carried ``timestamp``
        result["created_at"] = result.get("timestamp") or now_iso()
    if not result.get("timestamp"):
        result["timestamp"] = result["created_at"]
    return result


# ── Citation key generation ──────────────────────────────────


def _normalize(text: str) -> str:
    return _NON_ALNUM.sub("", text.lower())[:_SLUG_MAX]


def _first_author(item: CslItem) -> str:
    authors = item.get("author") or []
    if not authors or not isinstance(authors[0], dict):
        return ""
    first = authors[0]
    return _normalize(first.get("family") or first.get("literal") or "")


def extract_year(item: CslItem) -> int | None:
    try:
        year = item["issued"]["date-parts"][0][0]
    except (KeyError, IndexError, TypeError):
        return None
    try:
        return int(year)
    except (TypeError, ValueError):
        return None


def generate_id(item: CslItem) -> str:
    """Build ``<author>-<year>`` with a title slug when either part is missing."""
    author = _first_author(item)
    year = extract_year(item)
    title = _normalize(item.get("title") or "")

    base = f"{author or 'anon'}-{year if year is not None else 'nd'}"
    if author and year is not None:
        return base
    if title:
        return f"{base}-{title}"
    if not author and year is None:
        return f"{base}-untitled"
    return base


def alpha_suffix(index: int) -> str:
    """0 -> 'a', 25 -> 'z', 26 -> 'aa', 27 -> 'ab', ..."""
    suffix = ""
    n = index
    while True:
        suffix = chr(ord("a") + n % 26) + suffix
        n = n // 26 - 1
        if n < 0:
            return suffix


def resolve_id_collision(base_id: str, existing_ids: Iterable[str]) -> str:
    """Append the first free alphabetic suffix; comparison is case-insensitive."""
    taken = {i.lower() for i in existing_ids}
    if base_id.lower() not in taken:
        return base_id
    index = 0
    while True:
        candidate = f"{base_id}{alpha_suffix(index)}"
        if candidate.lower() not in taken:
            return candidate
        index += 1


class Reference:
    """Wraps one CSL item and guarantees its custom metadata."""

    def __init__(self, item: CslItem) -> None:
        self._item = {**item, "custom": ensure_custom_metadata(item.get("custom"))}

    @classmethod
    def create(cls, item: CslItem, existing_ids: Iterable[str] = ()) -> Reference:
        """Build a new reference, generating a citation key when ``id`` is empty.

        A key already used in ``existing_ids`` gets an alphabetic suffix.
        """
        item = dict(item)
        base = str(item.get("id") or "").strip() or generate_id(item)
        item["id"] = resolve_id_collision(base, existing_ids)
        item.setdefault("type", "article")
        return cls(item)

    @property
    def item(self) -> CslItem:
        return self._item

    @property
    def id(self) -> str:
        return str(self._item.get("id", ""))

    @property
    def uuid(self) -> str:
        return self._item["custom"]["uuid"]
