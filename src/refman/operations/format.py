"""Output formats for listings: pretty, json, ids-only, uuid."""

from __future__ import annotations

import json

from refman.core.interface import PageResult
from refman.core.reference import CslItem, extract_year

LIST_FORMATS = ("pretty", "json", "ids-only", "uuid")


def _format_author(author: dict) -> str:
    if author.get("literal"):
        return author["literal"]
    family = author.get("family") or ""
    given = author.get("given") or ""
    return f"{family}, {given[0]}." if given else family


def format_pretty_item(item: CslItem) -> str:
    title = item.get("title")
    lines = [f"[{item.get('id')}] {title}" if title else f"[{item.get('id')}]"]
    authors = [a for a in item.get("author") or [] if isinstance(a, dict)]
    if authors:
        lines.append(f"  Authors: {'; '.join(_format_author(a) for a in authors)}")
    year = extract_year(item)
    lines.append(f"  Year: {year if year is not None else '(no year)'}")
    lines.append(f"  Type: {item.get('type')}")
    for key in ("DOI", "PMID", "PMCID", "URL"):
        if item.get(key):
            lines.append(f"  {key}: {item[key]}")
    lines.append(f"  UUID: {(item.get('custom') or {}).get('uuid') or '(no uuid)'}")
    return "\n".join(lines)


def format_items(items: list[CslItem], fmt: str = "pretty") -> str:
    if fmt == "json":
        return json.dumps(items, indent=2, ensure_ascii=False)
    if fmt == "ids-only":
        return "\n".join(str(i.get("id")) for i in items)
    if fmt == "uuid":
        return "\n".join(str((i.get("custom") or {}).get("uuid", "")) for i in items)
    if fmt == "pretty":
        return "\n\n".join(format_pretty_item(i) for i in items)
    raise ValueError(f"Unknown output format: {fmt}")


def format_page(page: PageResult, fmt: str = "pretty") -> str:
    """Render a page; JSON output carries the pagination metadata."""
    if fmt == "json":
        return json.dumps(page.to_dict(), indent=2, ensure_ascii=False)
    if not page.items:
        return ""
    body = format_items(page.items, fmt)
    if fmt == "pretty" and page.limit > 0 and page.total > 0:
        start = page.offset + 1
        end = page.offset + len(page.items)
        return f"# Showing {start}-{end} of {page.total} references\n{body}"
    return body
