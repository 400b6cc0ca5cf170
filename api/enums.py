"""
Centralized enums for the values that travel through URLs, preferences and the database.
Using str-based enums so they compare equal to their wire form.
"""

from enum import Enum


class FilterMode(str, Enum):
    """How selected filters combine."""

    AND = "AND"  # Videos must match every selected filter
    OR = "OR"  # Videos may match any selected filter


class FilterKind(str, Enum):
    """Facet dimensions a filter token can select on."""

    CATEGORY = "category"
    CURRICULUM = "curriculum"
    PERFORMER = "performer"
    RECORDED = "recorded"
    VIEWS = "views"


class SortKey(str, Enum):
    """Sort options for videos and students."""

    TITLE = "title"
    FULL_NAME = "full_name"
    CREATED_AT = "created_at"
    CURRICULUM = "curriculum"
    CATEGORY = "category"
    PERFORMERS = "performers"
    RECORDED = "recorded"
    VIEWS = "views"
    VIEW_COUNT = "view_count"
    LAST_VIEWED = "last_viewed"
    LAST_VIEW = "last_view"
    LAST_LOGIN = "last_login"
    LOGIN_COUNT = "login_count"


class SortOrder(str, Enum):
    """Sort order direction."""

    ASC = "asc"
    DESC = "desc"


class ViewMode(str, Enum):
    """Layout of the video list."""

    GRID = "grid"
    LIST = "list"


class LibraryScope(str, Enum):
    """Which slice of the catalog a library view shows."""

    LIBRARY = "library"
    FAVORITES = "favorites"
    MY_LEVEL = "my-level"
    MANAGEMENT = "management"


class LoadState(str, Enum):
    """Load cycle of a library pipeline."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"  # Ready, but serving stale or empty data


class FetchSource(str, Enum):
    """Where a catalog snapshot came from."""

    LIVE = "live"
    CACHE = "cache"
    STALE = "stale"
    EMPTY = "empty"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
