"""Built-in citation formatting.

Full CSL style rendering is delegated elsewhere; this module produces the
compact fallback format used when no style processor is available:

    Smith J et al. J Test. 2024;10(2):100-110. PMID:12345. Title.
    (Smith et al, 2024)
"""

from __future__ import annotations

import html

from refman.core.reference import CslItem, extract_year


def _first_author(item: CslItem, with_initial: bool) -> str:
    authors = item.get("author") or []
    if not authors or not isinstance(authors[0], dict):
        return "Unknown"
    first = authors[0]
    if first.get("literal"):
        return first["literal"]
    family = first.get("family") or "Unknown"
    given = first.get("given") or ""
    if with_initial and given:
        return f"{family} {given[0]}"
    return family


def _et_al(item: CslItem) -> str:
    return " et al" if len(item.get("author") or []) > 1 else ""


def _year(item: CslItem) -> str:
    year = extract_year(item)
    return str(year) if year is not None else "n.d."


def _volume_issue_page(item: CslItem) -> str:
    volume, issue, page = item.get("volume"), item.get("issue"), item.get("page")
    if volume:
        result = str(volume)
        if issue:
            result += f"({issue})"
        if page:
            result += f":{page}"
        return result
    return str(page) if page else ""


def _identifier(item: CslItem) -> str:
    if item.get("PMID"):
        return f"PMID:{item['PMID']}"
    if item.get("DOI"):
        return f"DOI:{item['DOI']}"
    return item.get("URL") or ""


def format_bibliography_entry(item: CslItem) -> str:
    parts = [f"{_first_author(item, with_initial=True)}{_et_al(item)}."]
    journal = item.get("container-title-short") or item.get("container-title")
    if journal:
        parts.append(f"{journal}.")
    vip = _volume_issue_page(item)
    parts.append(f"{_year(item)};{vip}." if vip else f"{_year(item)}.")
    identifier = _identifier(item)
    if identifier:
        parts.append(f"{identifier}.")
    if item.get("title"):
        parts.append(f"{item['title']}.")
    return " ".join(parts)


def format_in_text(item: CslItem) -> str:
    return f"({_first_author(item, with_initial=False)}{_et_al(item)}, {_year(item)})"


def format_citation(item: CslItem, *, in_text: bool = False, output: str = "text") -> str:
    text = format_in_text(item) if in_text else format_bibliography_entry(item)
    if output == "html":
        return f'<div class="csl-entry">{html.escape(text)}</div>'
    return text
