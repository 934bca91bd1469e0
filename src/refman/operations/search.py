"""Token search over CSL items.

Query syntax: whitespace-separated tokens, ``"quoted phrases"``, and
``field:value`` filters (``author``, ``title``, ``year``, ``doi``, ``pmid``,
``pmcid``, ``url``, ``keyword``, ``tag``). Every token must match (AND).
Matching is case-insensitive substring, except identifier fields which
must match exactly.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

from refman.core.reference import CslItem, extract_year

FIELDS = {"author", "title", "year", "doi", "pmid", "pmcid", "url", "keyword", "tag"}
_ID_FIELDS = {"doi": "DOI", "pmid": "PMID", "pmcid": "PMCID", "url": "URL"}
_TOKEN_RE = re.compile(r'(?:(\w+):)?(?:"([^"]*)"|(\S+))')


@dataclass
class SearchToken:
    value: str
    field: str | None = None
    is_phrase: bool = False


@dataclass
class SearchMatch:
    item: CslItem
    index: int
    exact: bool


def normalize(text: str) -> str:
    """Lowercase and strip diacritics so 'Müller' matches 'muller'."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def tokenize(query: str) -> list[SearchToken]:
    tokens: list[SearchToken] = []
    for match in _TOKEN_RE.finditer(query):
        field, phrase, word = match.groups()
        if field and field.lower() not in FIELDS:
            # Not a known field: treat "foo:bar" as a plain word
            word = f"{field}:{phrase if phrase is not None else word}"
            field = None
            phrase = None
        value = phrase if phrase is not None else word
        if value is None or not value.strip():
            continue
        if field is None and value.endswith(":") and value[:-1].lower() in FIELDS:
            # "title:" with nothing after it
            continue
        tokens.append(
            SearchToken(value=value, field=field.lower() if field else None, is_phrase=phrase is not None)
        )
    return tokens


def _authors(item: CslItem) -> str:
    names = []
    for author in item.get("author") or []:
        if not isinstance(author, dict):
            continue
        if author.get("literal"):
            names.append(author["literal"])
        else:
            names.append(" ".join(p for p in (author.get("family"), author.get("given")) if p))
    return " ".join(names)


def _field_values(item: CslItem, field: str) -> list[str]:
    custom = item.get("custom") or {}
    if field == "author":
        return [_authors(item)]
    if field == "title":
        return [item.get("title") or ""]
    if field == "year":
        year = extract_year(item)
        return [str(year)] if year is not None else []
    if field == "keyword":
        return [k for k in item.get("keyword") or [] if isinstance(k, str)]
    if field == "tag":
        return [t for t in custom.get("tags") or [] if isinstance(t, str)]
    if field == "url":
        return [item.get("URL") or ""] + list(custom.get("additional_urls") or [])
    return [str(item.get(_ID_FIELDS[field]) or "")]


def _free_text_values(item: CslItem) -> list[str]:
    values = [
        str(item.get("id") or ""),
        item.get("title") or "",
        _authors(item),
        item.get("container-title") or "",
        item.get("DOI") or "",
        item.get("PMID") or "",
        item.get("PMCID") or "",
        item.get("URL") or "",
        item.get("ISBN") or "",
    ]
    year = extract_year(item)
    if year is not None:
        values.append(str(year))
    values.extend(_field_values(item, "keyword"))
    values.extend(_field_values(item, "tag"))
    return [v for v in values if isinstance(v, str) and v]


def _match_token(item: CslItem, token: SearchToken) -> str | None:
    """Return 'exact', 'partial' or None."""
    needle = normalize(token.value)
    if token.field in _ID_FIELDS:
        values = _field_values(item, token.field)
        return "exact" if any(v.lower() == token.value.lower() for v in values if v) else None

    values = _field_values(item, token.field) if token.field else _free_text_values(item)
    strength = None
    for value in values:
        hay = normalize(value)
        if hay == needle:
            return "exact"
        if needle in hay:
            strength = "partial"
    return strength


def match_items(items: list[CslItem], tokens: list[SearchToken]) -> list[SearchMatch]:
    """Items matching every token, in library order."""
    matches = []
    for index, item in enumerate(items):
        strengths = [_match_token(item, t) for t in tokens]
        if all(strengths):
            matches.append(SearchMatch(item, index, exact=all(s == "exact" for s in strengths)))
    return matches


def sort_by_relevance(matches: list[SearchMatch]) -> list[CslItem]:
    """Exact before partial, then newer year, author, title, library order."""

    def key(m: SearchMatch) -> tuple:
        author = ""
        authors = m.item.get("author") or []
        if authors and isinstance(authors[0], dict):
            author = (authors[0].get("family") or "").lower()
        title = (m.item.get("title") or "").lower()
        return (
            0 if m.exact else 1,
            -(extract_year(m.item) or 0),
            author == "",
            author,
            title == "",
            title,
            m.index,
        )

    return [m.item for m in sorted(matches, key=key)]
