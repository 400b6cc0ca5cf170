"""
Public API - serves the video library to students.
Runs on port 9000.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import sqlalchemy as sa
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.catalog import (
    PUBLISHED_KEY,
    add_favorite,
    fetch_current_user,
    fetch_favorite_ids,
    record_view,
    remove_favorite,
    video_exists,
)
from api.common import (
    HTTPMetricsMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    get_viewer_id,
    rate_limit_exceeded_handler,
    require_viewer_id,
)
from api.database import (
    categories,
    configure_database,
    curriculums,
    database,
    performers,
    video_categories,
    video_curriculums,
    video_performers,
    videos,
)
from api.db_retry import DatabaseRetryableError, fetch_all_with_retry
from api.enums import LibraryScope
from api.errors import CatalogUnavailableError
from api.exception_utils import handle_api_exceptions
from api.library_service import create_catalog_fetcher, query_library, video_to_response, view_to_response
from api.metrics import CONTENT_TYPE_LATEST, FAVORITE_CHANGES_TOTAL, VIDEO_VIEWS_TOTAL, get_metrics, init_app_info
from api.resilient_fetch import ResilientFetcher
from api.schemas import (
    CategoryResponse,
    CurriculumResponse,
    FavoriteResponse,
    LibraryPageResponse,
    PerformerResponse,
    VideoResponse,
    ViewRecordedResponse,
)
from config import (
    CORS_ALLOWED_ORIGINS,
    PUBLIC_PORT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_PUBLIC_DEFAULT,
    RATE_LIMIT_PUBLIC_LIBRARY,
    RATE_LIMIT_STORAGE_URL,
    USER_ID_HEADER,
)

logger = logging.getLogger(__name__)

# Scopes a viewer can ask for on the public app
PUBLIC_SCOPES = (LibraryScope.LIBRARY, LibraryScope.FAVORITES, LibraryScope.MY_LEVEL)

# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "DOJO_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    await database.connect()
    await configure_database()
    if getattr(app.state, "catalog_fetcher", None) is None:
        app.state.catalog_fetcher = create_catalog_fetcher()
    init_app_info()
    yield
    await database.disconnect()


app = FastAPI(title="Dojo Library", description="Martial arts video library", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(DatabaseRetryableError)
async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
    """Transient database trouble that outlasted the retries: ask the client to come back."""
    logger.warning(f"Database unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(CatalogUnavailableError)
async def catalog_unavailable_handler(request: Request, exc: CatalogUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
        headers={"Retry-After": str(exc.retry_after)},
    )


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(HTTPMetricsMiddleware)

# If CORS_ALLOWED_ORIGINS is empty, allow same-origin only (no CORS headers)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS if CORS_ALLOWED_ORIGINS else [],
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),
    allow_methods=["GET", "HEAD", "OPTIONS", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", USER_ID_HEADER],
    expose_headers=["X-Request-ID"],
)


def get_catalog_fetcher(request: Request) -> ResilientFetcher:
    return request.app.state.catalog_fetcher


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database is unreachable. The library itself keeps
    serving cached data in that case; the breaker state is reported alongside.
    """
    result = await check_health()
    fetcher = getattr(app.state, "catalog_fetcher", None)

    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
            "catalog": fetcher.get_stats() if fetcher is not None else None,
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/library")
@limiter.limit(RATE_LIMIT_PUBLIC_LIBRARY)
async def library(
    request: Request,
    filters: Optional[str] = Query(None, description="URL-encoded JSON array of filter tokens"),
    search: Optional[str] = Query(None, max_length=200),
    mode: Optional[str] = Query(None, description="AND or OR"),
    page: Optional[str] = Query(None),
    per_page: Optional[int] = Query(None, ge=1, le=500),
    sort: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
    scope: LibraryScope = Query(LibraryScope.LIBRARY),
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> LibraryPageResponse:
    """
    One page of the library, with facets and the canonical query string.

    Malformed filters, mode or page values fall back to their defaults. When
    the database is down the last good catalog is served with stale=true.
    """
    if scope not in PUBLIC_SCOPES:
        raise HTTPException(status_code=400, detail=f"Unsupported scope: {scope.value}")

    viewer_id = get_viewer_id(request)
    user = None
    if viewer_id is not None:
        try:
            user = await fetch_current_user(viewer_id)
        except Exception as e:
            if scope != LibraryScope.LIBRARY:
                raise
            # Anonymous browsing still works while the users table is unreachable
            logger.warning(f"Could not resolve viewer {viewer_id}, continuing anonymously: {e}")

    if scope != LibraryScope.LIBRARY and user is None:
        raise HTTPException(status_code=401, detail="Sign in to use this feature")

    view = await query_library(
        fetcher,
        scope,
        user=user,
        filters=filters,
        search=search,
        mode=mode,
        page=page,
        per_page=per_page,
        sort=sort,
        order=order,
    )
    return view_to_response(view)


@app.get("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def get_video(
    request: Request,
    video_id: str,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> VideoResponse:
    """Get a single published video from the current catalog snapshot."""
    result = await fetcher.fetch(PUBLISHED_KEY)
    if result.data is None:
        raise CatalogUnavailableError()

    for video in result.data.videos:
        if video.id == video_id:
            viewer_id = get_viewer_id(request)
            favorite_ids = await fetch_favorite_ids(viewer_id)
            return video_to_response(video, favorite_ids)

    raise HTTPException(status_code=404, detail="Video not found")


@app.post("/api/videos/{video_id}/view")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
@handle_api_exceptions("record_view", "Failed to record view")
async def record_video_view(
    request: Request,
    video_id: str,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> ViewRecordedResponse:
    """Record one view. The snapshot cache is dropped so counts and last-viewed update."""
    if not await video_exists(video_id):
        raise HTTPException(status_code=404, detail="Video not found")

    # Ids with no matching account are recorded as anonymous views
    viewer = await fetch_current_user(get_viewer_id(request))
    viewed_at = await record_view(video_id, viewer.id if viewer else None)
    VIDEO_VIEWS_TOTAL.inc()
    fetcher.invalidate()
    return ViewRecordedResponse(video_id=video_id, viewed_at=viewed_at)


@app.put("/api/favorites/{video_id}")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
@handle_api_exceptions("add_favorite", "Failed to update favorites")
async def favorite_video(
    request: Request,
    video_id: str,
    viewer_id: str = Depends(require_viewer_id),
) -> FavoriteResponse:
    if await fetch_current_user(viewer_id) is None:
        raise HTTPException(status_code=401, detail="Sign in to use this feature")
    if not await video_exists(video_id):
        raise HTTPException(status_code=404, detail="Video not found")

    if await add_favorite(viewer_id, video_id):
        FAVORITE_CHANGES_TOTAL.labels(action="add").inc()
    return FavoriteResponse(video_id=video_id, is_favorite=True)


@app.delete("/api/favorites/{video_id}")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
@handle_api_exceptions("remove_favorite", "Failed to update favorites")
async def unfavorite_video(
    request: Request,
    video_id: str,
    viewer_id: str = Depends(require_viewer_id),
) -> FavoriteResponse:
    if await remove_favorite(viewer_id, video_id):
        FAVORITE_CHANGES_TOTAL.labels(action="remove").inc()
    return FavoriteResponse(video_id=video_id, is_favorite=False)


def _published_count(join_table, fk_column):
    """COUNT of published videos per reference row, as a correlated scalar subquery."""
    return (
        sa.select(sa.func.count())
        .select_from(join_table.join(videos, join_table.c.video_id == videos.c.id))
        .where(fk_column)
        .where(videos.c.is_published == sa.true())
        .scalar_subquery()
    )


@app.get("/api/categories")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def list_categories(request: Request) -> List[CategoryResponse]:
    """List all categories with published video counts."""
    count = _published_count(video_categories, video_categories.c.category_id == categories.c.id)
    rows = await fetch_all_with_retry(
        sa.select(categories, count.label("video_count")).order_by(categories.c.name)
    )
    return [
        CategoryResponse(
            id=row["id"],
            name=row["name"],
            color=row["color"],
            description=row["description"],
            video_count=row["video_count"],
        )
        for row in rows
    ]


@app.get("/api/curriculums")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def list_curriculums(request: Request) -> List[CurriculumResponse]:
    """List belts in rank order with published video counts."""
    count = _published_count(video_curriculums, video_curriculums.c.curriculum_id == curriculums.c.id)
    rows = await fetch_all_with_retry(
        sa.select(curriculums, count.label("video_count")).order_by(curriculums.c.display_order, curriculums.c.name)
    )
    return [
        CurriculumResponse(
            id=row["id"],
            name=row["name"],
            display_order=row["display_order"],
            color=row["color"],
            description=row["description"],
            video_count=row["video_count"],
        )
        for row in rows
    ]


@app.get("/api/performers")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def list_performers(request: Request) -> List[PerformerResponse]:
    count = _published_count(video_performers, video_performers.c.performer_id == performers.c.id)
    rows = await fetch_all_with_retry(
        sa.select(performers, count.label("video_count")).order_by(performers.c.name)
    )
    return [PerformerResponse(id=row["id"], name=row["name"], video_count=row["video_count"]) for row in rows]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PUBLIC_PORT)
