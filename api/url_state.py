"""
Round-trip of library state through the URL query string.

    ?filters=<url-encoded JSON array of tokens>&search=<text>&mode=OR&page=3

Defaults (no filters, empty search, AND mode, page 1) are left out so shared
links stay short. Malformed values never raise; they fall back to the
default and are logged.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Union
from urllib.parse import parse_qs, quote, urlencode

from api.enums import FilterMode
from api.filters import FilterSelection

logger = logging.getLogger(__name__)


@dataclass
class LibraryQuery:
    filters: List[str] = field(default_factory=list)
    search: str = ""
    mode: FilterMode = FilterMode.AND
    page: int = 1

    def selection(self) -> FilterSelection:
        return FilterSelection.from_wire(self.filters, self.mode)

    @classmethod
    def from_selection(cls, selection: FilterSelection, search: str = "", page: int = 1) -> "LibraryQuery":
        return cls(filters=selection.to_wire(), search=search, mode=selection.mode, page=page)

    @property
    def is_default(self) -> bool:
        return not self.filters and not self.search and self.mode == FilterMode.AND and self.page == 1


def parse_filters(raw: Optional[str]) -> List[str]:
    """Decode the filters parameter. Anything but a JSON array of strings gives []."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring unparseable filters parameter {raw[:100]!r}: {e}")
        return []

    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        logger.warning(f"Ignoring filters parameter that is not a list of strings: {raw[:100]!r}")
        return []

    # Drop empties and duplicates, keep first-seen order
    result: List[str] = []
    for item in value:
        item = item.strip()
        if item and item not in result:
            result.append(item)
    return result


def parse_mode(raw: Optional[str]) -> FilterMode:
    if not raw:
        return FilterMode.AND
    try:
        return FilterMode(raw.strip().upper())
    except ValueError:
        logger.warning(f"Ignoring unknown filter mode {raw!r}")
        return FilterMode.AND


def parse_page(raw: Union[str, int, None]) -> int:
    if raw is None or raw == "":
        return 1
    try:
        page = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid page {raw!r}")
        return 1
    if page < 1:
        logger.warning(f"Ignoring non-positive page {page}")
        return 1
    return page


def _first(values: Mapping, key: str) -> Optional[str]:
    value = values.get(key)
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def parse_query(params: Union[str, Mapping, None]) -> LibraryQuery:
    """
    Build a LibraryQuery from a raw query string or an already decoded mapping.

    Mapping values may be plain strings or lists (as parse_qs returns them).
    """
    if params is None:
        return LibraryQuery()
    if isinstance(params, str):
        params = parse_qs(params.lstrip("?"), keep_blank_values=True)

    search = _first(params, "search") or ""
    return LibraryQuery(
        filters=parse_filters(_first(params, "filters")),
        search=search.strip(),
        mode=parse_mode(_first(params, "mode")),
        page=parse_page(_first(params, "page")),
    )


def build_query_string(query: LibraryQuery) -> str:
    """
    Encode query without its defaults, in the order filters, search, mode, page.

    Returns "" when everything is at its default.
    """
    pairs = []
    if query.filters:
        pairs.append(("filters", json.dumps(list(query.filters), separators=(",", ":"))))
    if query.search:
        pairs.append(("search", query.search))
    if FilterMode(query.mode) != FilterMode.AND:
        pairs.append(("mode", FilterMode(query.mode).value))
    if query.page > 1:
        pairs.append(("page", str(query.page)))
    return urlencode(pairs, quote_via=quote)
