"""Read-only feature operations over a snapshot of library items.

These take plain item lists so the same code serves the local adapter and the
background server.
"""

from __future__ import annotations

from refman.core.interface import (
    CiteItemResult,
    CiteOptions,
    CiteResult,
    ListOptions,
    PageResult,
    SearchOptions,
)
from refman.core.reference import CslItem
from refman.operations.cite import format_citation
from refman.operations.pagination import SORT_FIELDS, paginate, resolve_sort_alias, sort_references
from refman.operations.search import match_items, sort_by_relevance, tokenize


def list_references(items: list[CslItem], options: ListOptions) -> PageResult:
    sort = resolve_sort_alias(options.sort)
    if sort not in SORT_FIELDS:
        raise ValueError(f"Cannot sort a listing by {sort}")
    ordered = sort_references(items, sort, options.order)
    page, next_offset = paginate(ordered, options.limit, options.offset)
    return PageResult(page, len(items), options.limit, options.offset, next_offset)


def search_references(items: list[CslItem], options: SearchOptions) -> PageResult:
    sort = resolve_sort_alias(options.sort)
    tokens = tokenize(options.query)
    if not tokens:
        matched = list(items)
        if sort == "relevance":
            sort = "updated"
    else:
        matches = match_items(items, tokens)
        if sort == "relevance":
            matched = sort_by_relevance(matches)
            if options.order == "asc":
                matched.reverse()
        else:
            matched = [m.item for m in matches]

    if sort != "relevance":
        matched = sort_references(matched, sort, options.order)
    page, next_offset = paginate(matched, options.limit, options.offset)
    return PageResult(page, len(matched), options.limit, options.offset, next_offset)


def cite_references(
    items: list[CslItem], options: CiteOptions, default_format: str = "text"
) -> CiteResult:
    key = "uuid" if options.by_uuid else "id"
    index = {
        ((i.get("custom") or {}).get("uuid") if options.by_uuid else i.get("id")): i for i in items
    }
    output = options.format or default_format
    results = []
    for identifier in options.identifiers:
        item = index.get(identifier)
        if item is None:
            results.append(
                CiteItemResult(
                    identifier=identifier,
                    success=False,
                    error=f"Reference with {key.upper()} '{identifier}' not found",
                )
            )
            continue
        results.append(
            CiteItemResult(
                identifier=identifier,
                success=True,
                citation=format_citation(item, in_text=options.in_text, output=output),
            )
        )
    return CiteResult(results)


__all__ = ["cite_references", "list_references", "search_references"]
