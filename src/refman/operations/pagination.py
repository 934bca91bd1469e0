"""Sorting and pagination shared by list and search."""

from __future__ import annotations

from datetime import datetime

from refman.core.reference import CslItem, extract_year

SORT_FIELDS = ("created", "updated", "published", "author", "title")
SEARCH_SORT_FIELDS = SORT_FIELDS + ("relevance",)

SORT_ALIASES = {
    "add": "created",
    "mod": "updated",
    "pub": "published",
    "rel": "relevance",
}


def resolve_sort_alias(name: str) -> str:
    """Map a short alias to its sort field; unknown names raise ``ValueError``."""
    if name in SEARCH_SORT_FIELDS:
        return name
    if name in SORT_ALIASES:
        return SORT_ALIASES[name]
    raise ValueError(f"Unknown sort field: {name}")


def _parse_ts(value: object) -> float:
    if not isinstance(value, str) or not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def _created(item: CslItem) -> float:
    return _parse_ts((item.get("custom") or {}).get("created_at"))


def _updated(item: CslItem) -> float:
    ts = (item.get("custom") or {}).get("timestamp")
    return _parse_ts(ts) if ts else _created(item)


def _published(item: CslItem) -> tuple[int, int, int]:
    try:
        parts = item["issued"]["date-parts"][0]
    except (KeyError, IndexError, TypeError):
        return (0, 0, 0)
    if extract_year(item) is None:
        return (0, 0, 0)
    padded = [int(p) for p in parts[:3] if str(p).lstrip("-").isdigit()] + [1, 1]
    return (padded[0], padded[1], padded[2])


def _author(item: CslItem) -> str:
    authors = item.get("author") or []
    if not authors or not isinstance(authors[0], dict):
        return "anonymous"
    first = authors[0]
    return (first.get("family") or first.get("literal") or "Anonymous").lower()


def _title(item: CslItem) -> str:
    return (item.get("title") or "").lower()


_SORT_KEYS = {
    "created": _created,
    "updated": _updated,
    "published": _published,
    "author": _author,
    "title": _title,
}


def sort_references(items: list[CslItem], sort: str, order: str = "desc") -> list[CslItem]:
    """Sort by ``sort``; ties fall back to created (newest first), then id."""
    key = _SORT_KEYS[sort]
    # Stable sorts applied from least to most significant key
    result = sorted(items, key=lambda i: str(i.get("id", "")))
    result.sort(key=_created, reverse=True)
    result.sort(key=key, reverse=(order == "desc"))
    return result


def paginate(items: list, limit: int = 0, offset: int = 0) -> tuple[list, int | None]:
    """Apply ``offset`` then ``limit`` (0 = unlimited); return the page and next offset."""
    if limit < 0 or offset < 0:
        raise ValueError("limit and offset must be non-negative")
    after_offset = items[offset:]
    page = after_offset if limit == 0 else after_offset[:limit]
    next_offset = None
    if limit and page and offset + len(page) < len(items):
        next_offset = offset + len(page)
    return page, next_offset
