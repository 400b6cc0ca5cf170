"""
Facet extraction: the distinct filter options present in a set of videos.

Facets are computed from the same level-bounded video set the library shows,
so a filter widget never offers an option that would yield nothing under the
active level cap.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from api.filters import FilterToken
from api.models import Category, Curriculum, Performer, Video


@dataclass
class FacetSet:
    categories: List[Category] = field(default_factory=list)
    curriculums: List[Curriculum] = field(default_factory=list)
    performers: List[Performer] = field(default_factory=list)
    recorded: List[str] = field(default_factory=list)
    view_buckets: List[int] = field(default_factory=list)
    # Number of videos carrying each option, keyed by the option's wire token
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.categories or self.curriculums or self.performers or self.recorded)


def _bump(counts: Dict[str, int], token: FilterToken) -> None:
    key = token.to_wire()
    counts[key] = counts.get(key, 0) + 1


def extract_facets(
    videos: Iterable[Video],
    max_curriculum_order: Optional[int] = None,
    view_buckets: Sequence[int] = (),
) -> FacetSet:
    """
    Collect unique categories, curriculums, performers and recorded labels.

    Args:
        videos: Annotated videos (usually already level-filtered)
        max_curriculum_order: When set, curriculums ranked above it are left out
        view_buckets: Candidate view thresholds; only those some video reaches are kept

    Returns:
        FacetSet with categories and performers sorted by name, curriculums by
        display order, and recorded labels in first-encounter order.
    """
    categories: Dict[str, Category] = {}
    curriculums: Dict[str, Curriculum] = {}
    performers: Dict[str, Performer] = {}
    recorded: Dict[str, None] = {}  # dict keeps insertion order
    counts: Dict[str, int] = {}
    max_views = -1

    for video in videos:
        for category in video.categories:
            categories.setdefault(category.id, category)
            _bump(counts, FilterToken.category(category.id))

        for curriculum in video.curriculums:
            if max_curriculum_order is not None and curriculum.display_order > max_curriculum_order:
                continue
            curriculums.setdefault(curriculum.id, curriculum)
            _bump(counts, FilterToken.curriculum(curriculum.id))

        for performer in video.performers:
            performers.setdefault(performer.id, performer)
            _bump(counts, FilterToken.performer(performer.id))

        label = video.recorded_value
        if label is not None:
            recorded.setdefault(label, None)
            _bump(counts, FilterToken.recorded(label))

        max_views = max(max_views, video.views)

    buckets = sorted(b for b in set(view_buckets) if b <= max_views)

    return FacetSet(
        categories=sorted(categories.values(), key=lambda c: (c.name.casefold(), c.id)),
        curriculums=sorted(curriculums.values(), key=lambda c: (c.display_order, c.name.casefold(), c.id)),
        performers=sorted(performers.values(), key=lambda p: (p.name.casefold(), p.id)),
        recorded=list(recorded),
        view_buckets=buckets,
        counts=counts,
    )
