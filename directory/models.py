"""
directory/models.py -- Plain data for directory listing requests and results.

These carry no query logic: directory/query.py turns a ListingQuery into the
predicate and sort the store understands, and directory/engine.py runs them.
Nothing here knows about any UI grid's pagination contract.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import NamedTuple

from auth.models import Account

SORTABLE_COLUMNS: frozenset[str] = frozenset(
    {"id", "handle", "email", "first_name", "last_name", "active", "created_at", "last_login"}
)
FILTERABLE_COLUMNS: frozenset[str] = frozenset({"handle", "email", "first_name", "last_name"})
SORT_DIRECTIONS: frozenset[str] = frozenset({"asc", "desc"})


class SortSpec(NamedTuple):
    column: str
    direction: str = "asc"  # "asc" | "desc"


@dataclass(frozen=True)
class ListingQuery:
    """One page request: offset, page size, at most one sort, substring filters.

    filters maps column name to the text that column must contain (case
    insensitive). search is one term that any of handle, email, first name or
    last name may contain; it is ANDed with the filters. Blank values are
    ignored.
    """

    offset: int = 0
    page_size: int = 10
    sort: SortSpec | None = None
    filters: dict[str, str] = field(default_factory=dict)
    search: str | None = None


@dataclass(frozen=True)
class ListingResult:
    """A page of accounts and the number of accounts matching the filters overall."""

    rows: list[Account]
    total: int
    offset: int
    page_size: int

    @property
    def page(self) -> int:
        """1-based page number of this result."""
        return self.offset // self.page_size + 1

    @property
    def page_count(self) -> int:
        return max(1, math.ceil(self.total / self.page_size))
