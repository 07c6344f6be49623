"""
directory/query.py -- Pure functions from a ListingQuery to store arguments.

No I/O happens here. validate_query() rejects anything the store must not
see (unknown columns, negative offsets) and clamps the page size;
build_predicate() produces the single predicate value that both the page
query and the count query receive.

Security: column names are checked against the allow-lists in
directory/models.py. A caller-supplied string never reaches SQL as an
identifier.
"""

from __future__ import annotations

from dataclasses import replace

from auth.store import ANY_COLUMN
from directory.exceptions import QueryValidationError
from directory.models import FILTERABLE_COLUMNS, SORT_DIRECTIONS, SORTABLE_COLUMNS, ListingQuery, SortSpec

ListingPredicate = tuple[tuple[str, str], ...]


def validate_query(query: ListingQuery, max_page_size: int) -> ListingQuery:
    """Return query with page_size clamped to max_page_size.

    Raises QueryValidationError for a negative offset, a non-positive page
    size, an unknown sort column or direction, or an unknown filter column.
    """
    if query.offset < 0:
        raise QueryValidationError(f"offset must be >= 0, got {query.offset}")
    if query.page_size <= 0:
        raise QueryValidationError(f"page_size must be > 0, got {query.page_size}")
    if query.sort is not None:
        if query.sort.column not in SORTABLE_COLUMNS:
            raise QueryValidationError(f"Cannot sort by {query.sort.column!r}")
        if query.sort.direction not in SORT_DIRECTIONS:
            raise QueryValidationError(f"Unknown sort direction {query.sort.direction!r}")
    unknown = sorted(set(query.filters) - FILTERABLE_COLUMNS)
    if unknown:
        raise QueryValidationError(f"Cannot filter by {', '.join(unknown)}")
    if query.page_size > max_page_size:
        return replace(query, page_size=max_page_size)
    return query


def build_predicate(filters: dict[str, str], search: str | None = None) -> ListingPredicate:
    """Turn a filter mapping and an optional search term into an ordered, hashable predicate.

    Blank and whitespace-only values are dropped; the rest are stripped. The
    search term becomes an (ANY_COLUMN, term) pair. Sorted by column so equal
    inputs always give equal predicates.
    """
    pairs = []
    term = (search or "").strip()
    if term:
        pairs.append((ANY_COLUMN, term))
    for column, text in filters.items():
        if text is None:
            continue
        needle = str(text).strip()
        if needle:
            pairs.append((column, needle))
    return tuple(sorted(pairs))


def parse_sort(column: str | None, direction: str | None = None) -> SortSpec | None:
    """Build a SortSpec from loose request parameters (None when no column)."""
    if not column:
        return None
    return SortSpec(column=column, direction=(direction or "asc").lower())


def parse_filter_args(items: list[str]) -> dict[str, str]:
    """Parse CLI-style "column=text" strings into a filter mapping."""
    filters: dict[str, str] = {}
    for item in items:
        column, sep, text = item.partition("=")
        if not sep or not column.strip():
            raise QueryValidationError(f"Filter must look like column=text, got {item!r}")
        filters[column.strip()] = text
    return filters
