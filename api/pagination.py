"""
Page-number pagination over an in-memory, already sorted sequence.

Pages are 1-based. The requested page is clamped into [1, total_pages], so a
stale or hand-edited page number never produces an empty slice while results
exist.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Generic, List, Optional, Sequence, TypeVar

from config import DEFAULT_ITEMS_PER_PAGE, ITEMS_PER_PAGE_CHOICES

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    page: int = 1
    items_per_page: int = DEFAULT_ITEMS_PER_PAGE
    total_items: int = 0
    total_pages: int = 1

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def start_index(self) -> int:
        """1-based index of the first item on this page, 0 when there are none."""
        if not self.items:
            return 0
        return (self.page - 1) * self.items_per_page + 1

    @property
    def end_index(self) -> int:
        if not self.items:
            return 0
        return self.start_index + len(self.items) - 1


def total_pages(count: int, items_per_page: int) -> int:
    """ceil(count / items_per_page), never less than 1 so an empty list still has a page."""
    if items_per_page < 1:
        raise ValueError(f"items_per_page must be positive, got {items_per_page}")
    return max(1, math.ceil(count / items_per_page))


def clamp_page(page: Optional[int], pages: int) -> int:
    """Clamp a requested page into [1, pages]."""
    if page is None or page < 1:
        return 1
    return min(page, max(1, pages))


def normalize_items_per_page(value: Optional[int]) -> int:
    """Return value when it is one of the offered choices, otherwise the default."""
    if value in ITEMS_PER_PAGE_CHOICES:
        return value
    if value is not None:
        logger.debug(f"Items per page {value} not in {ITEMS_PER_PAGE_CHOICES}, using {DEFAULT_ITEMS_PER_PAGE}")
    return DEFAULT_ITEMS_PER_PAGE


def paginate(items: Sequence[T], page: Optional[int], items_per_page: int) -> Page[T]:
    """
    Slice one page out of items.

    Args:
        items: The full, already filtered and sorted sequence
        page: Requested 1-based page; clamped into range
        items_per_page: Page size (must be positive)

    Returns:
        Page with the slice and the derived counts
    """
    pages = total_pages(len(items), items_per_page)
    current = clamp_page(page, pages)
    start = (current - 1) * items_per_page
    return Page(
        items=list(items[start:start + items_per_page]),
        page=current,
        items_per_page=items_per_page,
        total_items=len(items),
        total_pages=pages,
    )
