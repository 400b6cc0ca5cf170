"""
Catalog loading: database rows -> one immutable CatalogSnapshot.

The loader fans out the independent reads (videos, reference tables, the three
association tables) concurrently, then fetches view statistics for the loaded
video ids in one batched query each, and finally annotates everything in a
single pass. Nothing here caches; api.resilient_fetch sits in front of
load_snapshot().
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import sqlalchemy as sa

from api.common import ensure_utc
from api.database import (
    categories,
    curriculums,
    database,
    new_id,
    performers,
    user_favorites,
    users,
    utcnow,
    video_categories,
    video_curriculums,
    video_performers,
    video_views,
    videos,
)
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.models import CatalogSnapshot, Category, Curriculum, Performer, Student, Video

logger = logging.getLogger(__name__)

# Snapshot keys understood by load_snapshot()
PUBLISHED_KEY = "catalog:published"
ALL_KEY = "catalog:all"


@dataclass
class CatalogRows:
    """Raw rows of one catalog read, before annotation."""

    videos: Sequence[Mapping[str, Any]]
    categories: Sequence[Mapping[str, Any]]
    curriculums: Sequence[Mapping[str, Any]]
    performers: Sequence[Mapping[str, Any]]
    video_categories: Sequence[Mapping[str, Any]]
    video_curriculums: Sequence[Mapping[str, Any]]
    video_performers: Sequence[Mapping[str, Any]]


def category_from_row(row) -> Category:
    return Category(id=row["id"], name=row["name"], color=row["color"], description=row["description"])


def curriculum_from_row(row) -> Curriculum:
    return Curriculum(
        id=row["id"],
        name=row["name"],
        display_order=row["display_order"],
        color=row["color"],
        description=row["description"],
    )


def performer_from_row(row) -> Performer:
    return Performer(id=row["id"], name=row["name"])


async def fetch_catalog_rows(include_unpublished: bool = False) -> CatalogRows:
    """Read videos, reference lists and association tables concurrently."""
    video_query = videos.select().order_by(videos.c.created_at.desc())
    if not include_unpublished:
        video_query = video_query.where(videos.c.is_published == sa.true())

    results = await asyncio.gather(
        fetch_all_with_retry(video_query),
        fetch_all_with_retry(categories.select().order_by(categories.c.name)),
        fetch_all_with_retry(curriculums.select().order_by(curriculums.c.display_order)),
        fetch_all_with_retry(performers.select().order_by(performers.c.name)),
        fetch_all_with_retry(video_categories.select()),
        fetch_all_with_retry(video_curriculums.select()),
        fetch_all_with_retry(video_performers.select()),
    )
    return CatalogRows(*results)


async def fetch_view_counts(video_ids: Sequence[str]) -> Dict[str, int]:
    """Batched view count lookup. Videos without views are absent from the result."""
    if not video_ids:
        return {}
    query = (
        sa.select(video_views.c.video_id, sa.func.count().label("view_count"))
        .where(video_views.c.video_id.in_(list(video_ids)))
        .group_by(video_views.c.video_id)
    )
    rows = await fetch_all_with_retry(query)
    return {row["video_id"]: row["view_count"] for row in rows}


async def fetch_last_viewed(video_ids: Sequence[str]) -> Dict[str, datetime]:
    """Batched lookup of the most recent view per video."""
    if not video_ids:
        return {}
    query = (
        sa.select(video_views.c.video_id, sa.func.max(video_views.c.viewed_at).label("last_viewed"))
        .where(video_views.c.video_id.in_(list(video_ids)))
        .group_by(video_views.c.video_id)
    )
    rows = await fetch_all_with_retry(query)
    return {row["video_id"]: ensure_utc(row["last_viewed"]) for row in rows if row["last_viewed"] is not None}


async def fetch_favorite_ids(user_id: Optional[str]) -> Set[str]:
    if not user_id:
        return set()
    rows = await fetch_all_with_retry(
        sa.select(user_favorites.c.video_id).where(user_favorites.c.user_id == user_id)
    )
    return {row["video_id"] for row in rows}


def _group(pairs: Iterable[Mapping[str, Any]], key: str, value: str) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = defaultdict(list)
    for row in pairs:
        if row[value] not in grouped[row[key]]:
            grouped[row[key]].append(row[value])
    return grouped


def annotate(
    rows: CatalogRows,
    view_counts: Optional[Mapping[str, int]] = None,
    last_viewed: Optional[Mapping[str, datetime]] = None,
    loaded_at: Optional[datetime] = None,
) -> CatalogSnapshot:
    """
    Build immutable Video values with their facets and view statistics attached.

    Associations pointing at unknown categories/curriculums/performers are
    dropped, duplicates are removed, and each video's facets keep the order
    of the reference lists (name order, or display order for curriculums).
    """
    view_counts = view_counts or {}
    last_viewed = last_viewed or {}

    category_list = [category_from_row(r) for r in rows.categories]
    curriculum_list = [curriculum_from_row(r) for r in rows.curriculums]
    performer_list = [performer_from_row(r) for r in rows.performers]

    def rank(items):
        return {item.id: (position, item) for position, item in enumerate(items)}

    category_index = rank(category_list)
    curriculum_index = rank(curriculum_list)
    performer_index = rank(performer_list)

    def resolve(ids: Iterable[str], index) -> tuple:
        found = sorted((index[i] for i in ids if i in index), key=lambda pair: pair[0])
        return tuple(item for _, item in found)

    by_video_category = _group(rows.video_categories, "video_id", "category_id")
    by_video_curriculum = _group(rows.video_curriculums, "video_id", "curriculum_id")
    by_video_performer = _group(rows.video_performers, "video_id", "performer_id")

    annotated = []
    for row in rows.videos:
        video_id = row["id"]
        annotated.append(
            Video(
                id=video_id,
                title=row["title"],
                video_url=row["video_url"] or "",
                description=row["description"],
                thumbnail_url=row["thumbnail_url"],
                duration_seconds=row["duration_seconds"],
                created_at=ensure_utc(row["created_at"]),
                recorded=row["recorded"],
                is_published=bool(row["is_published"]),
                views=view_counts.get(video_id, 0),
                last_viewed_at=ensure_utc(last_viewed.get(video_id)),
                categories=resolve(by_video_category.get(video_id, ()), category_index),
                curriculums=resolve(by_video_curriculum.get(video_id, ()), curriculum_index),
                performers=resolve(by_video_performer.get(video_id, ()), performer_index),
            )
        )

    return CatalogSnapshot(
        videos=tuple(annotated),
        categories=tuple(category_list),
        curriculums=tuple(curriculum_list),
        performers=tuple(performer_list),
        loaded_at=loaded_at or datetime.now(timezone.utc),
    )


async def load_snapshot(key: str = PUBLISHED_KEY) -> CatalogSnapshot:
    """
    Loader for the resilient fetcher.

    PUBLISHED_KEY loads what viewers may see; ALL_KEY also includes
    unpublished videos for the management view.
    """
    if key not in (PUBLISHED_KEY, ALL_KEY):
        raise ValueError(f"Unknown catalog key: {key}")

    rows = await fetch_catalog_rows(include_unpublished=(key == ALL_KEY))
    video_ids = [row["id"] for row in rows.videos]
    view_counts, last_viewed = await asyncio.gather(
        fetch_view_counts(video_ids),
        fetch_last_viewed(video_ids),
    )
    snapshot = annotate(rows, view_counts, last_viewed)
    logger.debug(f"Loaded {key}: {len(snapshot.videos)} videos")
    return snapshot


# =============================================================================
# Users
# =============================================================================


def _user_query():
    return sa.select(
        users,
        curriculums.c.name.label("belt_name"),
        curriculums.c.display_order.label("belt_display_order"),
        curriculums.c.color.label("belt_color"),
    ).select_from(users.outerjoin(curriculums, users.c.belt_id == curriculums.c.id))


def student_from_row(row) -> Student:
    belt = None
    if row["belt_id"] is not None and row["belt_name"] is not None:
        belt = Curriculum(
            id=row["belt_id"],
            name=row["belt_name"],
            display_order=row["belt_display_order"],
            color=row["belt_color"],
        )
    return Student(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        role=row["role"],
        school=row["school"],
        belt=belt,
        is_approved=bool(row["is_approved"]),
        created_at=ensure_utc(row["created_at"]),
        last_login=ensure_utc(row["last_login"]),
        login_count=row["login_count"] or 0,
    )


async def fetch_current_user(user_id: Optional[str]) -> Optional[Student]:
    if not user_id:
        return None
    row = await fetch_one_with_retry(_user_query().where(users.c.id == user_id))
    return student_from_row(row) if row else None


async def fetch_user_activity() -> Dict[str, Dict[str, Any]]:
    """View count and most recent view per user."""
    query = (
        sa.select(
            video_views.c.user_id,
            sa.func.count().label("view_count"),
            sa.func.max(video_views.c.viewed_at).label("last_view"),
        )
        .where(video_views.c.user_id.is_not(None))
        .group_by(video_views.c.user_id)
    )
    rows = await fetch_all_with_retry(query)
    return {
        row["user_id"]: {"views": row["view_count"], "last_viewed_at": ensure_utc(row["last_view"])}
        for row in rows
    }


async def fetch_students() -> List[Student]:
    """Every member with belt and viewing activity, for the admin roster."""
    rows, activity = await asyncio.gather(
        fetch_all_with_retry(_user_query()),
        fetch_user_activity(),
    )
    students = []
    for row in rows:
        student = student_from_row(row)
        if student.id in activity:
            student = replace(student, **activity[student.id])
        students.append(student)
    return students


def max_curriculum_order_for(user: Optional[Student]) -> Optional[int]:
    """
    Level bound for a "my level" view: the user's belt plus the next one.

    Users without a belt get no bound.
    """
    if user is None or user.belt is None:
        return None
    return user.belt.display_order + 1


def next_belt_name(user: Optional[Student], all_curriculums: Sequence[Curriculum]) -> Optional[str]:
    """Name of the belt after the user's current one, or the current one when it is the last."""
    if user is None or user.belt is None:
        return None
    target = user.belt.display_order + 1
    for curriculum in all_curriculums:
        if curriculum.display_order == target:
            return curriculum.name
    return user.belt.name


# =============================================================================
# Mutations
# =============================================================================


async def video_exists(video_id: str, published_only: bool = True) -> bool:
    query = sa.select(videos.c.id).where(videos.c.id == video_id)
    if published_only:
        query = query.where(videos.c.is_published == sa.true())
    return await fetch_one_with_retry(query) is not None


async def add_favorite(user_id: str, video_id: str) -> bool:
    """Returns False when the video was already a favorite."""
    existing = await fetch_one_with_retry(
        user_favorites.select().where(
            (user_favorites.c.user_id == user_id) & (user_favorites.c.video_id == video_id)
        )
    )
    if existing:
        return False
    await db_execute_with_retry(
        user_favorites.insert().values(user_id=user_id, video_id=video_id, created_at=utcnow())
    )
    return True


async def remove_favorite(user_id: str, video_id: str) -> bool:
    """Returns False when the video was not a favorite."""
    existing = await fetch_one_with_retry(
        user_favorites.select().where(
            (user_favorites.c.user_id == user_id) & (user_favorites.c.video_id == video_id)
        )
    )
    if not existing:
        return False
    await db_execute_with_retry(
        user_favorites.delete().where(
            (user_favorites.c.user_id == user_id) & (user_favorites.c.video_id == video_id)
        )
    )
    return True


async def record_view(video_id: str, user_id: Optional[str] = None) -> datetime:
    viewed_at = utcnow()
    await db_execute_with_retry(
        video_views.insert().values(id=new_id(), video_id=video_id, user_id=user_id, viewed_at=viewed_at)
    )
    return viewed_at


async def replace_video_associations(
    video_id: str,
    category_ids: Optional[Sequence[str]] = None,
    curriculum_ids: Optional[Sequence[str]] = None,
    performer_ids: Optional[Sequence[str]] = None,
) -> None:
    """
    Replace a video's association sets. A None argument leaves that set unchanged.

    Runs in its own transaction, which nests inside a caller's transaction
    when the video row is written in the same unit.
    """
    groups = (
        (video_categories, "category_id", category_ids),
        (video_curriculums, "curriculum_id", curriculum_ids),
        (video_performers, "performer_id", performer_ids),
    )
    async with database.transaction():
        for table, column, ids in groups:
            if ids is None:
                continue
            await database.execute(table.delete().where(table.c.video_id == video_id))
            for value in dict.fromkeys(ids):
                await database.execute(table.insert().values(video_id=video_id, **{column: value}))


# =============================================================================
# Snapshot serialization (shared Redis cache)
# =============================================================================


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


def snapshot_to_dict(snapshot: CatalogSnapshot) -> Dict[str, Any]:
    """Plain-JSON form of a snapshot. Videos refer to their facets by id."""
    return {
        "loaded_at": _dt(snapshot.loaded_at),
        "categories": [
            {"id": c.id, "name": c.name, "color": c.color, "description": c.description}
            for c in snapshot.categories
        ],
        "curriculums": [
            {
                "id": c.id,
                "name": c.name,
                "display_order": c.display_order,
                "color": c.color,
                "description": c.description,
            }
            for c in snapshot.curriculums
        ],
        "performers": [{"id": p.id, "name": p.name} for p in snapshot.performers],
        "videos": [
            {
                "id": v.id,
                "title": v.title,
                "video_url": v.video_url,
                "description": v.description,
                "thumbnail_url": v.thumbnail_url,
                "duration_seconds": v.duration_seconds,
                "created_at": _dt(v.created_at),
                "recorded": v.recorded,
                "is_published": v.is_published,
                "views": v.views,
                "last_viewed_at": _dt(v.last_viewed_at),
                "category_ids": [c.id for c in v.categories],
                "curriculum_ids": [c.id for c in v.curriculums],
                "performer_ids": [p.id for p in v.performers],
            }
            for v in snapshot.videos
        ],
    }


def snapshot_from_dict(data: Mapping[str, Any]) -> CatalogSnapshot:
    """Inverse of snapshot_to_dict."""
    category_map = {c["id"]: Category(**c) for c in data.get("categories", [])}
    curriculum_map = {c["id"]: Curriculum(**c) for c in data.get("curriculums", [])}
    performer_map = {p["id"]: Performer(**p) for p in data.get("performers", [])}

    video_list = []
    for v in data.get("videos", []):
        video_list.append(
            Video(
                id=v["id"],
                title=v["title"],
                video_url=v.get("video_url") or "",
                description=v.get("description"),
                thumbnail_url=v.get("thumbnail_url"),
                duration_seconds=v.get("duration_seconds"),
                created_at=_parse_dt(v.get("created_at")),
                recorded=v.get("recorded"),
                is_published=v.get("is_published", True),
                views=v.get("views", 0),
                last_viewed_at=_parse_dt(v.get("last_viewed_at")),
                categories=tuple(category_map[i] for i in v.get("category_ids", []) if i in category_map),
                curriculums=tuple(curriculum_map[i] for i in v.get("curriculum_ids", []) if i in curriculum_map),
                performers=tuple(performer_map[i] for i in v.get("performer_ids", []) if i in performer_map),
            )
        )

    return CatalogSnapshot(
        videos=tuple(video_list),
        categories=tuple(category_map.values()),
        curriculums=tuple(curriculum_map.values()),
        performers=tuple(performer_map.values()),
        loaded_at=_parse_dt(data.get("loaded_at")),
    )
