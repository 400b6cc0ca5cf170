"""
Glue between the HTTP apps and the library engine.

Each app builds one catalog fetcher at startup (create_catalog_fetcher) and
keeps it on app.state; request handlers run a short-lived LibraryPipeline
against it and convert the resulting view into response models.
"""

import logging
from typing import Collection, Optional

from api.catalog import load_snapshot, snapshot_from_dict, snapshot_to_dict
from api.circuit_breaker import CircuitBreaker
from api.enums import LibraryScope
from api.errors import sanitize_error_message
from api.facets import FacetSet
from api.library import PREFERENCE_PREFIXES, LibraryPipeline, LibraryView
from api.metrics import LIBRARY_QUERIES_TOTAL, LIBRARY_RESULTS
from api.models import Curriculum, Student, Video
from api.preferences import MemoryBackend, PreferenceStore
from api.resilient_fetch import FallbackStore, ResilientFetcher
from api.roster import RosterFacets
from api.schemas import (
    FacetsResponse,
    LibraryPageResponse,
    PaginationResponse,
    RosterFacetsResponse,
    StudentResponse,
    VideoCategoryInfo,
    VideoCurriculumInfo,
    VideoPerformerInfo,
    VideoResponse,
)
from api.snapshot_cache import create_snapshot_cache
from api.url_state import parse_query
from config import (
    CIRCUIT_COOLDOWN_SECONDS,
    CIRCUIT_FAILURE_THRESHOLD,
    SNAPSHOT_CACHE_ENABLED,
    SNAPSHOT_CACHE_STORAGE_URL,
    SNAPSHOT_CACHE_TTL,
)

logger = logging.getLogger(__name__)


def create_catalog_fetcher(
    storage_url: str = SNAPSHOT_CACHE_STORAGE_URL,
    ttl_seconds: int = SNAPSHOT_CACHE_TTL,
    enabled: bool = SNAPSHOT_CACHE_ENABLED,
    loader=load_snapshot,
) -> ResilientFetcher:
    """Build the fetcher an app uses for every catalog read."""
    cache = create_snapshot_cache(
        storage_url=storage_url,
        ttl_seconds=ttl_seconds,
        enabled=enabled,
        serialize=snapshot_to_dict,
        deserialize=snapshot_from_dict,
    )
    breaker = CircuitBreaker(
        failure_threshold=CIRCUIT_FAILURE_THRESHOLD,
        cooldown_seconds=CIRCUIT_COOLDOWN_SECONDS,
    )
    return ResilientFetcher(loader, breaker=breaker, cache=cache, fallback=FallbackStore())


async def query_library(
    fetcher: ResilientFetcher,
    scope: LibraryScope,
    *,
    user: Optional[Student] = None,
    filters: Optional[str] = None,
    search: Optional[str] = None,
    mode: Optional[str] = None,
    page: Optional[str] = None,
    per_page: Optional[int] = None,
    sort: Optional[str] = None,
    order: Optional[str] = None,
) -> LibraryView:
    """
    Run one library request through a fresh pipeline.

    Display preferences arrive as request parameters, so the pipeline gets a
    throwaway in-memory preference store.
    """
    pipeline = LibraryPipeline(
        fetcher,
        scope=scope,
        user=user,
        preferences=PreferenceStore(PREFERENCE_PREFIXES[scope], MemoryBackend()),
        debounce_seconds=0,
    )
    try:
        if per_page is not None:
            pipeline.set_items_per_page(per_page)
        if sort is not None or order is not None:
            pipeline.set_sort(sort if sort is not None else pipeline.sort.key, order)

        await pipeline.load()
        pipeline.apply_query(
            parse_query({"filters": filters, "search": search, "mode": mode, "page": page})
        )
        view = pipeline.view()
    finally:
        pipeline.close()

    LIBRARY_QUERIES_TOTAL.labels(scope=scope.value, state=view.state.value).inc()
    LIBRARY_RESULTS.observe(view.total_matches)
    return view


def curriculum_info(curriculum: Curriculum) -> VideoCurriculumInfo:
    return VideoCurriculumInfo(
        id=curriculum.id,
        name=curriculum.name,
        color=curriculum.color,
        display_order=curriculum.display_order,
    )


def video_to_response(video: Video, favorite_ids: Collection[str] = ()) -> VideoResponse:
    return VideoResponse(
        id=video.id,
        title=video.title,
        description=video.description,
        video_url=video.video_url,
        thumbnail_url=video.thumbnail_url,
        duration_seconds=video.duration_seconds,
        created_at=video.created_at,
        recorded=video.recorded_value,
        is_published=video.is_published,
        views=video.views,
        last_viewed_at=video.last_viewed_at,
        is_favorite=video.id in favorite_ids,
        categories=[VideoCategoryInfo(id=c.id, name=c.name, color=c.color) for c in video.categories],
        curriculums=[curriculum_info(c) for c in video.curriculums],
        performers=[VideoPerformerInfo(id=p.id, name=p.name) for p in video.performers],
    )


def facets_to_response(facets: FacetSet) -> FacetsResponse:
    return FacetsResponse(
        categories=[VideoCategoryInfo(id=c.id, name=c.name, color=c.color) for c in facets.categories],
        curriculums=[curriculum_info(c) for c in facets.curriculums],
        performers=[VideoPerformerInfo(id=p.id, name=p.name) for p in facets.performers],
        recorded=list(facets.recorded),
        view_buckets=list(facets.view_buckets),
        counts=dict(facets.counts),
    )


def view_to_response(view: LibraryView) -> LibraryPageResponse:
    page = view.page
    return LibraryPageResponse(
        scope=view.scope,
        state=view.state,
        stale=view.stale,
        empty=view.empty,
        error=sanitize_error_message(view.error, log_original=False),
        videos=[video_to_response(v, view.favorite_ids) for v in page.items],
        facets=facets_to_response(view.facets),
        pagination=PaginationResponse(
            page=page.page,
            per_page=page.items_per_page,
            total_items=page.total_items,
            total_pages=page.total_pages,
            has_next=page.has_next,
            has_previous=page.has_previous,
        ),
        filters=view.selection.to_wire(),
        mode=view.selection.mode,
        search=view.search,
        sort=view.sort.key,
        order=view.sort.direction,
        view_mode=view.view_mode,
        query=view.query,
        max_curriculum_order=view.max_curriculum_order,
        next_belt_name=view.next_belt_name,
    )


def student_to_response(student: Student) -> StudentResponse:
    return StudentResponse(
        id=student.id,
        email=student.email,
        full_name=student.full_name,
        role=student.role,
        school=student.school,
        belt=curriculum_info(student.belt) if student.belt else None,
        is_approved=student.is_approved,
        created_at=student.created_at,
        last_login=student.last_login,
        login_count=student.login_count,
        view_count=student.views,
        last_view=student.last_viewed_at,
    )


def roster_facets_to_response(facets: RosterFacets) -> RosterFacetsResponse:
    return RosterFacetsResponse(
        roles=facets.roles,
        schools=facets.schools,
        belts=[curriculum_info(b) for b in facets.belts],
    )
