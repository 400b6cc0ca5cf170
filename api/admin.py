"""
Admin API - catalog management and the student roster.
Runs on port 9001. Should NOT be exposed to the internet.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Sequence

import sqlalchemy as sa
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.catalog import ALL_KEY, fetch_students, replace_video_associations
from api.common import (
    HTTPMetricsMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    ensure_utc,
    get_real_ip,
    get_request_id,
    rate_limit_exceeded_handler,
)
from api.database import (
    categories,
    configure_database,
    create_tables,
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
from api.db_retry import (
    DatabaseRetryableError,
    db_execute_with_retry,
    fetch_all_with_retry,
    fetch_one_with_retry,
)
from api.enums import LibraryScope
from api.errors import CatalogUnavailableError
from api.exception_utils import handle_api_exceptions, log_and_raise_http_exception
from api.library_service import (
    create_catalog_fetcher,
    query_library,
    roster_facets_to_response,
    student_to_response,
    video_to_response,
    view_to_response,
)
from api.metrics import init_app_info
from api.resilient_fetch import ResilientFetcher
from api.roster import roster, roster_facets
from api.schemas import (
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    CurriculumCreate,
    CurriculumResponse,
    CurriculumUpdate,
    LibraryPageResponse,
    PerformerCreate,
    PerformerResponse,
    StudentListResponse,
    VideoCreate,
    VideoResponse,
    VideoUpdate,
)
from config import (
    ADMIN_API_SECRET,
    ADMIN_PORT,
    CORS_ALLOWED_ORIGINS,
    DATABASE_URL,
    RATE_LIMIT_ADMIN_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
)

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


class AdminAuthMiddleware:
    """
    Protect /api/* with the X-Admin-Secret header.

    When DOJO_ADMIN_API_SECRET is empty all requests are allowed, which is
    only appropriate when the admin port is reachable from trusted hosts.
    /health and CORS preflight requests never need the secret.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "")

        if not path.startswith("/api") or method == "OPTIONS" or not ADMIN_API_SECRET:
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        client_ip = client[0] if client else "unknown"

        headers = dict(scope.get("headers", []))
        admin_secret = headers.get(b"x-admin-secret", b"").decode("utf-8", errors="ignore")

        if not admin_secret:
            logger.warning(f"Admin API request without secret: {method} {path} from {client_ip}")
            response = JSONResponse(status_code=401, content={"detail": "Admin authentication required"})
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(admin_secret, ADMIN_API_SECRET):
            logger.warning(f"Admin API auth failed: invalid secret for {method} {path} from {client_ip}")
            response = JSONResponse(status_code=403, content={"detail": "Invalid admin secret"})
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "DOJO_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    if not ADMIN_API_SECRET:
        logger.warning("DOJO_ADMIN_API_SECRET is not set, the admin API is unauthenticated")
    create_tables(DATABASE_URL)
    await database.connect()
    await configure_database()
    if getattr(app.state, "catalog_fetcher", None) is None:
        app.state.catalog_fetcher = create_catalog_fetcher()
    init_app_info()
    yield
    await database.disconnect()


app = FastAPI(title="Dojo Admin", description="Library management API", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(DatabaseRetryableError)
async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
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

# Admin API authentication middleware (see AdminAuthMiddleware class)
app.add_middleware(AdminAuthMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS if CORS_ALLOWED_ORIGINS else [],
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


def get_catalog_fetcher(request: Request) -> ResilientFetcher:
    return request.app.state.catalog_fetcher


def _log_change(request: Request, action: str, resource: str, resource_id: str, name: Optional[str] = None):
    logger.info(
        f"{action} {resource} {resource_id}"
        + (f" ({name})" if name else "")
        + f" from {get_real_ip(request)} request_id={get_request_id(request)}"
    )


async def _require_row(table, row_id: str, label: str):
    row = await fetch_one_with_retry(table.select().where(table.c.id == row_id))
    if not row:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


async def _check_ids(table, ids: Optional[Sequence[str]], label: str) -> None:
    """Reject association ids that do not exist before touching the join tables."""
    if not ids:
        return
    wanted = list(dict.fromkeys(ids))
    rows = await fetch_all_with_retry(sa.select(table.c.id).where(table.c.id.in_(wanted)))
    found = {row["id"] for row in rows}
    missing = [value for value in wanted if value not in found]
    if missing:
        raise HTTPException(status_code=400, detail=f"Unknown {label} id: {missing[0]}")


def _video_count(join_table, fk_column):
    return (
        sa.select(sa.func.count())
        .select_from(join_table)
        .where(fk_column)
        .scalar_subquery()
    )


@app.get("/health")
async def health_check():
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
        },
    )


# ============ Categories ============


@app.get("/api/categories")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_categories(request: Request) -> List[CategoryResponse]:
    """All categories with counts over published and unpublished videos."""
    count = _video_count(video_categories, video_categories.c.category_id == categories.c.id)
    rows = await fetch_all_with_retry(sa.select(categories, count.label("video_count")).order_by(categories.c.name))
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


@app.post("/api/categories", status_code=201)
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("create_category", "Failed to create category", conflict_detail="Category name already exists")
async def create_category(
    request: Request,
    data: CategoryCreate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> CategoryResponse:
    category_id = new_id()
    await db_execute_with_retry(
        categories.insert().values(
            id=category_id,
            name=data.name,
            color=data.color,
            description=data.description,
            created_at=utcnow(),
        )
    )
    fetcher.invalidate()
    _log_change(request, "Created", "category", category_id, data.name)
    return CategoryResponse(id=category_id, name=data.name, color=data.color, description=data.description)


@app.put("/api/categories/{category_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("update_category", "Failed to update category", conflict_detail="Category name already exists")
async def update_category(
    request: Request,
    category_id: str,
    data: CategoryUpdate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> CategoryResponse:
    existing = await _require_row(categories, category_id, "Category")
    values = data.model_dump(exclude_unset=True)
    if values:
        await db_execute_with_retry(categories.update().where(categories.c.id == category_id).values(**values))
        fetcher.invalidate()
        _log_change(request, "Updated", "category", category_id, values.get("name", existing["name"]))

    merged = {**existing._mapping, **values}
    return CategoryResponse(
        id=category_id,
        name=merged["name"],
        color=merged["color"],
        description=merged["description"],
    )


@app.delete("/api/categories/{category_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("delete_category", "Failed to delete category")
async def delete_category(
    request: Request,
    category_id: str,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
):
    """Delete a category. Videos keep their other categories."""
    existing = await _require_row(categories, category_id, "Category")

    async with database.transaction():
        await database.execute(video_categories.delete().where(video_categories.c.category_id == category_id))
        await database.execute(categories.delete().where(categories.c.id == category_id))

    fetcher.invalidate()
    _log_change(request, "Deleted", "category", category_id, existing["name"])
    return {"status": "ok"}


# ============ Curriculums ============


@app.get("/api/curriculums")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_curriculums(request: Request) -> List[CurriculumResponse]:
    count = _video_count(video_curriculums, video_curriculums.c.curriculum_id == curriculums.c.id)
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


@app.post("/api/curriculums", status_code=201)
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions(
    "create_curriculum", "Failed to create curriculum", conflict_detail="Curriculum name already exists"
)
async def create_curriculum(
    request: Request,
    data: CurriculumCreate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> CurriculumResponse:
    curriculum_id = new_id()
    await db_execute_with_retry(
        curriculums.insert().values(
            id=curriculum_id,
            name=data.name,
            display_order=data.display_order,
            color=data.color,
            description=data.description,
            created_at=utcnow(),
        )
    )
    fetcher.invalidate()
    _log_change(request, "Created", "curriculum", curriculum_id, data.name)
    return CurriculumResponse(
        id=curriculum_id,
        name=data.name,
        display_order=data.display_order,
        color=data.color,
        description=data.description,
    )


@app.put("/api/curriculums/{curriculum_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions(
    "update_curriculum", "Failed to update curriculum", conflict_detail="Curriculum name already exists"
)
async def update_curriculum(
    request: Request,
    curriculum_id: str,
    data: CurriculumUpdate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> CurriculumResponse:
    existing = await _require_row(curriculums, curriculum_id, "Curriculum")
    values = data.model_dump(exclude_unset=True)
    if values:
        await db_execute_with_retry(curriculums.update().where(curriculums.c.id == curriculum_id).values(**values))
        fetcher.invalidate()
        _log_change(request, "Updated", "curriculum", curriculum_id, values.get("name", existing["name"]))

    merged = {**existing._mapping, **values}
    return CurriculumResponse(
        id=curriculum_id,
        name=merged["name"],
        display_order=merged["display_order"],
        color=merged["color"],
        description=merged["description"],
    )


@app.delete("/api/curriculums/{curriculum_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("delete_curriculum", "Failed to delete curriculum")
async def delete_curriculum(
    request: Request,
    curriculum_id: str,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
):
    """Delete a belt. Members holding it are left without a belt."""
    existing = await _require_row(curriculums, curriculum_id, "Curriculum")

    async with database.transaction():
        await database.execute(users.update().where(users.c.belt_id == curriculum_id).values(belt_id=None))
        await database.execute(video_curriculums.delete().where(video_curriculums.c.curriculum_id == curriculum_id))
        await database.execute(curriculums.delete().where(curriculums.c.id == curriculum_id))

    fetcher.invalidate()
    _log_change(request, "Deleted", "curriculum", curriculum_id, existing["name"])
    return {"status": "ok"}


# ============ Performers ============


@app.get("/api/performers")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_performers(request: Request) -> List[PerformerResponse]:
    count = _video_count(video_performers, video_performers.c.performer_id == performers.c.id)
    rows = await fetch_all_with_retry(sa.select(performers, count.label("video_count")).order_by(performers.c.name))
    return [PerformerResponse(id=row["id"], name=row["name"], video_count=row["video_count"]) for row in rows]


@app.post("/api/performers", status_code=201)
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("create_performer", "Failed to create performer", conflict_detail="Performer already exists")
async def create_performer(
    request: Request,
    data: PerformerCreate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> PerformerResponse:
    performer_id = new_id()
    await db_execute_with_retry(performers.insert().values(id=performer_id, name=data.name, created_at=utcnow()))
    fetcher.invalidate()
    _log_change(request, "Created", "performer", performer_id, data.name)
    return PerformerResponse(id=performer_id, name=data.name)


@app.put("/api/performers/{performer_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("update_performer", "Failed to update performer", conflict_detail="Performer already exists")
async def rename_performer(
    request: Request,
    performer_id: str,
    data: PerformerCreate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> PerformerResponse:
    await _require_row(performers, performer_id, "Performer")
    await db_execute_with_retry(performers.update().where(performers.c.id == performer_id).values(name=data.name))
    fetcher.invalidate()
    _log_change(request, "Renamed", "performer", performer_id, data.name)
    return PerformerResponse(id=performer_id, name=data.name)


@app.delete("/api/performers/{performer_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("delete_performer", "Failed to delete performer")
async def delete_performer(
    request: Request,
    performer_id: str,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
):
    existing = await _require_row(performers, performer_id, "Performer")

    async with database.transaction():
        await database.execute(video_performers.delete().where(video_performers.c.performer_id == performer_id))
        await database.execute(performers.delete().where(performers.c.id == performer_id))

    fetcher.invalidate()
    _log_change(request, "Deleted", "performer", performer_id, existing["name"])
    return {"status": "ok"}


# ============ Videos ============


async def _video_response(fetcher: ResilientFetcher, video_id: str) -> VideoResponse:
    """
    Fresh view of one video after a write.

    Falls back to the bare row when the catalog cannot be reloaded right now;
    the write itself has already been committed.
    """
    result = await fetcher.refresh(ALL_KEY)
    if result.data is not None:
        for video in result.data.videos:
            if video.id == video_id:
                return video_to_response(video)

    row = await _require_row(videos, video_id, "Video")
    return VideoResponse(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        video_url=row["video_url"],
        thumbnail_url=row["thumbnail_url"],
        duration_seconds=row["duration_seconds"],
        created_at=ensure_utc(row["created_at"]),
        recorded=row["recorded"],
        is_published=bool(row["is_published"]),
    )


@app.get("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_video(
    request: Request,
    video_id: str,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> VideoResponse:
    """Get any video, published or not."""
    result = await fetcher.fetch(ALL_KEY)
    if result.data is None:
        raise CatalogUnavailableError()
    for video in result.data.videos:
        if video.id == video_id:
            return video_to_response(video)
    raise HTTPException(status_code=404, detail="Video not found")


@app.post("/api/videos", status_code=201)
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("create_video", "Failed to create video")
async def create_video(
    request: Request,
    data: VideoCreate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> VideoResponse:
    await _check_ids(categories, data.category_ids, "category")
    await _check_ids(curriculums, data.curriculum_ids, "curriculum")
    await _check_ids(performers, data.performer_ids, "performer")

    video_id = new_id()
    async with database.transaction():
        await database.execute(
            videos.insert().values(
                id=video_id,
                title=data.title,
                description=data.description,
                video_url=data.video_url,
                thumbnail_url=data.thumbnail_url,
                duration_seconds=data.duration_seconds,
                recorded=data.recorded,
                is_published=data.is_published,
                created_at=utcnow(),
            )
        )
        await replace_video_associations(
            video_id,
            category_ids=data.category_ids,
            curriculum_ids=data.curriculum_ids,
            performer_ids=data.performer_ids,
        )

    fetcher.invalidate()
    _log_change(request, "Created", "video", video_id, data.title)
    return await _video_response(fetcher, video_id)


@app.put("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("update_video", "Failed to update video")
async def update_video(
    request: Request,
    video_id: str,
    data: VideoUpdate,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> VideoResponse:
    existing = await _require_row(videos, video_id, "Video")
    await _check_ids(categories, data.category_ids, "category")
    await _check_ids(curriculums, data.curriculum_ids, "curriculum")
    await _check_ids(performers, data.performer_ids, "performer")

    values = data.model_dump(exclude_unset=True, exclude={"category_ids", "curriculum_ids", "performer_ids"})
    async with database.transaction():
        if values:
            values["updated_at"] = utcnow()
            await database.execute(videos.update().where(videos.c.id == video_id).values(**values))
        await replace_video_associations(
            video_id,
            category_ids=data.category_ids,
            curriculum_ids=data.curriculum_ids,
            performer_ids=data.performer_ids,
        )

    fetcher.invalidate()
    _log_change(request, "Updated", "video", video_id, values.get("title", existing["title"]))
    return await _video_response(fetcher, video_id)


@app.delete("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("delete_video", "Failed to delete video")
async def delete_video(
    request: Request,
    video_id: str,
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
):
    """Delete a video with its associations, views and favorites."""
    existing = await _require_row(videos, video_id, "Video")

    async with database.transaction():
        for table in (video_categories, video_curriculums, video_performers, video_views, user_favorites):
            await database.execute(table.delete().where(table.c.video_id == video_id))
        await database.execute(videos.delete().where(videos.c.id == video_id))

    fetcher.invalidate()
    _log_change(request, "Deleted", "video", video_id, existing["title"])
    return {"status": "ok"}


# ============ Library & Roster ============


@app.get("/api/library")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def management_library(
    request: Request,
    filters: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    mode: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    per_page: Optional[int] = Query(None, ge=1, le=500),
    sort: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
    fetcher: ResilientFetcher = Depends(get_catalog_fetcher),
) -> LibraryPageResponse:
    """The management table: every video including unpublished ones, same filters as the library."""
    view = await query_library(
        fetcher,
        LibraryScope.MANAGEMENT,
        filters=filters,
        search=search,
        mode=mode,
        page=page,
        per_page=per_page,
        sort=sort,
        order=order,
    )
    return view_to_response(view)


@app.get("/api/students")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_students(
    request: Request,
    role: Optional[str] = Query(None),
    school: Optional[str] = Query(None),
    belt: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    sort: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
) -> StudentListResponse:
    """
    Member roster with dropdown facets.

    Facets are computed over every member so the dropdowns do not shrink as
    filters are applied.
    """
    try:
        students = await fetch_students()
    except DatabaseRetryableError:
        raise
    except Exception as e:
        log_and_raise_http_exception(e, 500, "Failed to load students", "list_students")

    matched = roster(
        students,
        role=role,
        school=school,
        belt=belt,
        search=search,
        sort_key=sort,
        direction=order or "asc",
    )
    return StudentListResponse(
        students=[student_to_response(s) for s in matched],
        total_count=len(matched),
        facets=roster_facets_to_response(roster_facets(students)),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=ADMIN_PORT)
