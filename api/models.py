"""
Immutable catalog values.

Rows from the database are turned into these once, by the annotation step in
api.catalog. Nothing downstream mutates them; a changed view count produces a
new Video via with_views().
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import FrozenSet, Optional, Tuple

# Placeholder the admin UI stores when the recorded label is not known
RECORDED_UNSET = "Unset"


def normalize_recorded(value: Optional[str]) -> Optional[str]:
    """Return the recorded label, or None when it is empty or the "Unset" placeholder."""
    if value is None:
        return None
    value = value.strip()
    if not value or value == RECORDED_UNSET:
        return None
    return value


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    color: str = "#6b7280"
    description: Optional[str] = None


@dataclass(frozen=True)
class Curriculum:
    """A belt/level. display_order is the only ranking key: lower is earlier."""

    id: str
    name: str
    display_order: int
    color: str = "#6b7280"
    description: Optional[str] = None


@dataclass(frozen=True)
class Performer:
    id: str
    name: str


@dataclass(frozen=True)
class Video:
    """
    A published (or, for management views, unpublished) training video with
    its facet memberships and derived view statistics.
    """

    id: str
    title: str
    video_url: str = ""
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    created_at: Optional[datetime] = None
    recorded: Optional[str] = None
    is_published: bool = True
    views: int = 0
    last_viewed_at: Optional[datetime] = None
    categories: Tuple[Category, ...] = ()
    curriculums: Tuple[Curriculum, ...] = ()
    performers: Tuple[Performer, ...] = ()

    @property
    def display_name(self) -> str:
        return self.title

    @property
    def category_ids(self) -> FrozenSet[str]:
        return frozenset(c.id for c in self.categories)

    @property
    def curriculum_ids(self) -> FrozenSet[str]:
        return frozenset(c.id for c in self.curriculums)

    @property
    def performer_ids(self) -> FrozenSet[str]:
        return frozenset(p.id for p in self.performers)

    @property
    def recorded_value(self) -> Optional[str]:
        return normalize_recorded(self.recorded)

    @property
    def min_curriculum_order(self) -> Optional[int]:
        """Lowest display order among the video's curriculums, None when it has none."""
        if not self.curriculums:
            return None
        return min(c.display_order for c in self.curriculums)

    def with_views(self, views: int, last_viewed_at: Optional[datetime] = None) -> "Video":
        return replace(self, views=views, last_viewed_at=last_viewed_at)


@dataclass(frozen=True)
class Student:
    """A dojo member as shown in the admin roster."""

    id: str
    email: str
    full_name: Optional[str] = None
    role: str = "Student"
    school: Optional[str] = None
    belt: Optional[Curriculum] = None
    is_approved: bool = False
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    login_count: int = 0
    # Video activity, filled in for the admin roster
    views: int = 0
    last_viewed_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


@dataclass(frozen=True)
class CatalogSnapshot:
    """Everything one load cycle needs: the annotated videos plus the facet reference lists."""

    videos: Tuple[Video, ...] = ()
    categories: Tuple[Category, ...] = ()
    curriculums: Tuple[Curriculum, ...] = ()
    performers: Tuple[Performer, ...] = ()
    loaded_at: Optional[datetime] = None
