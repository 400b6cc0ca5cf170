from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from api.enums import FilterMode, LibraryScope, LoadState, SortKey, SortOrder, ViewMode

HEX_COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"

# Upper bound on association ids per video in one request
MAX_ASSOCIATIONS = 50


def _strip(v):
    return v.strip() if isinstance(v, str) else v


# ============ Reference Models ============


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field(default="#6b7280", pattern=HEX_COLOR_PATTERN)
    description: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return _strip(v)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    description: Optional[str] = Field(default=None, max_length=1000)


class CategoryResponse(BaseModel):
    id: str
    name: str
    color: str
    description: Optional[str] = None
    video_count: int = 0


class CurriculumCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_order: int = Field(..., ge=0, le=10000)
    color: str = Field(default="#6b7280", pattern=HEX_COLOR_PATTERN)
    description: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return _strip(v)


class CurriculumUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    display_order: Optional[int] = Field(default=None, ge=0, le=10000)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    description: Optional[str] = Field(default=None, max_length=1000)


class CurriculumResponse(BaseModel):
    id: str
    name: str
    display_order: int
    color: str
    description: Optional[str] = None
    video_count: int = 0


class PerformerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return _strip(v)


class PerformerResponse(BaseModel):
    id: str
    name: str
    video_count: int = 0


# ============ Video Models ============


class VideoCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    video_url: str = Field(..., min_length=1, max_length=1024)
    thumbnail_url: Optional[str] = Field(default=None, max_length=1024)
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    recorded: Optional[str] = Field(default=None, max_length=255)
    is_published: bool = True
    category_ids: List[str] = Field(default_factory=list, max_length=MAX_ASSOCIATIONS)
    curriculum_ids: List[str] = Field(default_factory=list, max_length=MAX_ASSOCIATIONS)
    performer_ids: List[str] = Field(default_factory=list, max_length=MAX_ASSOCIATIONS)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return _strip(v)


class VideoUpdate(BaseModel):
    """Partial update. Omitted association lists are left as they are; [] clears them."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    video_url: Optional[str] = Field(default=None, min_length=1, max_length=1024)
    thumbnail_url: Optional[str] = Field(default=None, max_length=1024)
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    recorded: Optional[str] = Field(default=None, max_length=255)
    is_published: Optional[bool] = None
    category_ids: Optional[List[str]] = Field(default=None, max_length=MAX_ASSOCIATIONS)
    curriculum_ids: Optional[List[str]] = Field(default=None, max_length=MAX_ASSOCIATIONS)
    performer_ids: Optional[List[str]] = Field(default=None, max_length=MAX_ASSOCIATIONS)


class VideoCategoryInfo(BaseModel):
    """Category info included in video responses."""

    id: str
    name: str
    color: str


class VideoCurriculumInfo(BaseModel):
    id: str
    name: str
    color: str
    display_order: int


class VideoPerformerInfo(BaseModel):
    id: str
    name: str


class VideoResponse(BaseModel):
    id: str
    title: str
    description: str = ""
    video_url: str
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    created_at: Optional[datetime] = None
    recorded: Optional[str] = None
    is_published: bool = True
    views: int = 0
    last_viewed_at: Optional[datetime] = None
    is_favorite: bool = False
    categories: List[VideoCategoryInfo] = []
    curriculums: List[VideoCurriculumInfo] = []
    performers: List[VideoPerformerInfo] = []

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v if v is not None else ""


# ============ Library Models ============


class FacetsResponse(BaseModel):
    categories: List[VideoCategoryInfo] = []
    curriculums: List[VideoCurriculumInfo] = []
    performers: List[VideoPerformerInfo] = []
    recorded: List[str] = []
    view_buckets: List[int] = []
    # Number of videos per filter token
    counts: Dict[str, int] = {}


class PaginationResponse(BaseModel):
    page: int
    per_page: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool


class LibraryPageResponse(BaseModel):
    """One page of a library surface plus everything needed to render its controls."""

    scope: LibraryScope
    state: LoadState
    stale: bool = False
    empty: bool = False
    error: Optional[str] = None
    videos: List[VideoResponse]
    facets: FacetsResponse
    pagination: PaginationResponse
    filters: List[str] = []
    mode: FilterMode = FilterMode.AND
    search: str = ""
    sort: SortKey = SortKey.TITLE
    order: SortOrder = SortOrder.ASC
    view_mode: ViewMode = ViewMode.GRID
    # Canonical query string for this state, defaults omitted
    query: str = ""
    max_curriculum_order: Optional[int] = None
    next_belt_name: Optional[str] = None


class FavoriteResponse(BaseModel):
    video_id: str
    is_favorite: bool


class ViewRecordedResponse(BaseModel):
    video_id: str
    viewed_at: datetime


# ============ Roster Models ============


class StudentResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    school: Optional[str] = None
    belt: Optional[VideoCurriculumInfo] = None
    is_approved: bool = False
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    login_count: int = 0
    view_count: int = 0
    last_view: Optional[datetime] = None


class RosterFacetsResponse(BaseModel):
    roles: List[str] = []
    schools: List[str] = []
    belts: List[VideoCurriculumInfo] = []


class StudentListResponse(BaseModel):
    students: List[StudentResponse]
    total_count: int
    facets: RosterFacetsResponse
