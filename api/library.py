"""
Library pipeline: the state behind one library view.

    fetch -> level bound -> facets -> search -> facet filters -> favorites -> sort -> paginate

A LibraryPipeline owns the user-facing state (filter selection, search, sort,
page, items per page, view mode) for one surface. Mutations update that state
and the derived results are recomputed lazily the next time view() is asked
for. Every mutation that changes the URL state reports the new query string
through on_query_change.

Page handling: filter, mode, search and items-per-page changes go back to
page 1. Sort changes and page navigation keep the page. The page is always
clamped into range when the view is built.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from api.catalog import ALL_KEY, PUBLISHED_KEY, fetch_favorite_ids, max_curriculum_order_for, next_belt_name
from api.debounce import Debouncer
from api.enums import FetchSource, FilterMode, LibraryScope, LoadState, SortKey, SortOrder, ViewMode
from api.facets import FacetSet, extract_facets
from api.filters import FilterSelection, FilterToken, filter_by_level, filter_videos, parse_filter_token
from api.models import CatalogSnapshot, Student, Video
from api.pagination import Page, paginate
from api.preferences import PreferenceStore, SortPreference
from api.resilient_fetch import FetchResult, ResilientFetcher
from api.sorting import resolve_sort_key, resolve_sort_order, sort_videos
from api.url_state import LibraryQuery, build_query_string, parse_mode
from config import SEARCH_DEBOUNCE_MS, VIEW_BUCKETS

logger = logging.getLogger(__name__)

# Preference namespaces, one per library surface
PREFERENCE_PREFIXES = {
    LibraryScope.LIBRARY: "library",
    LibraryScope.FAVORITES: "favorites",
    LibraryScope.MY_LEVEL: "myLevel",
    LibraryScope.MANAGEMENT: "management",
}

FavoritesLoader = Callable[[str], Awaitable[Set[str]]]


@dataclass
class LibraryView:
    """Everything needed to render one page of a library surface."""

    scope: LibraryScope
    state: LoadState
    page: Page
    facets: FacetSet
    selection: FilterSelection
    search: str
    sort: SortPreference
    view_mode: ViewMode
    query: str
    stale: bool = False
    error: Optional[str] = None
    max_curriculum_order: Optional[int] = None
    next_belt_name: Optional[str] = None
    favorite_ids: Set[str] = field(default_factory=set)

    @property
    def items(self) -> List[Video]:
        return self.page.items

    @property
    def total_matches(self) -> int:
        return self.page.total_items

    @property
    def empty(self) -> bool:
        """True when nothing matched, which renders as a "no results" state rather than an error."""
        return self.page.total_items == 0


@dataclass
class _Derived:
    visible: List[Video]
    facets: FacetSet
    ordered: List[Video]


class LibraryPipeline:
    def __init__(
        self,
        fetcher: ResilientFetcher,
        *,
        scope: Union[LibraryScope, str] = LibraryScope.LIBRARY,
        preferences: Optional[PreferenceStore] = None,
        user: Optional[Student] = None,
        max_curriculum_order: Optional[int] = None,
        favorites_loader: FavoritesLoader = fetch_favorite_ids,
        debounce_seconds: float = SEARCH_DEBOUNCE_MS / 1000,
        view_buckets=VIEW_BUCKETS,
        on_query_change: Optional[Callable[[str], Any]] = None,
    ):
        self._fetcher = fetcher
        self._scope = LibraryScope(scope)
        self._preferences = preferences or PreferenceStore(PREFERENCE_PREFIXES[self._scope])
        self._user = user
        if max_curriculum_order is None and self._scope == LibraryScope.MY_LEVEL:
            max_curriculum_order = max_curriculum_order_for(user)
        self._max_curriculum_order = max_curriculum_order
        self._favorites_loader = favorites_loader
        self._view_buckets = list(view_buckets)
        self._on_query_change = on_query_change

        prefs = self._preferences.load()
        self._sort = prefs.sort
        self._items_per_page = prefs.items_per_page
        self._view_mode = prefs.view_mode

        self._selection = FilterSelection()
        self._search = ""
        self._page = 1

        self._state = LoadState.IDLE
        self._snapshot = CatalogSnapshot()
        self._favorite_ids: Set[str] = set()
        self._stale = False
        self._error: Optional[str] = None
        self._derived: Optional[_Derived] = None

        self._closed = False
        self._load_task: Optional[asyncio.Task] = None
        self._search_debouncer = Debouncer(debounce_seconds, self._apply_search)

    # ------------------------------------------------------------------
    # Load cycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def scope(self) -> LibraryScope:
        return self._scope

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    @property
    def snapshot_key(self) -> str:
        return ALL_KEY if self._scope == LibraryScope.MANAGEMENT else PUBLISHED_KEY

    async def load(self, refresh: bool = False) -> LoadState:
        """
        Run one load cycle: idle/ready -> loading -> ready | degraded.

        Never raises for fetch failures. If close() is called while the load is
        in flight, the load is cancelled and its results are discarded.
        """
        if self._closed:
            raise RuntimeError("Library pipeline is closed")

        self._state = LoadState.LOADING
        self._load_task = asyncio.ensure_future(self._load(refresh))
        try:
            await self._load_task
        except asyncio.CancelledError:
            if not self._closed:
                raise
            logger.debug(f"{self._scope.value} load cancelled by close()")
        finally:
            self._load_task = None
        return self._state

    async def refresh(self) -> LoadState:
        return await self.load(refresh=True)

    async def _load(self, refresh: bool) -> None:
        key = self.snapshot_key
        fetch = self._fetcher.refresh(key) if refresh else self._fetcher.fetch(key)
        result, favorites = await asyncio.gather(fetch, self._load_favorites())

        if self._closed:
            return
        self._apply_result(result, favorites)

    async def _load_favorites(self):
        """Returns (favorite ids, error message or None)."""
        if self._user is None:
            return set(), None
        try:
            return set(await self._favorites_loader(self._user.id)), None
        except Exception as e:
            logger.warning(f"Could not load favorites for user {self._user.id}: {e}")
            return set(self._favorite_ids), "Favorites are temporarily unavailable"

    def _apply_result(self, result: FetchResult, favorites) -> None:
        favorite_ids, favorites_error = favorites
        self._favorite_ids = favorite_ids

        if result.data is not None:
            self._snapshot = result.data
        elif result.source == FetchSource.EMPTY:
            self._snapshot = CatalogSnapshot()

        self._stale = result.stale
        self._error = result.error or favorites_error
        degraded = result.degraded or (favorites_error is not None and self._scope == LibraryScope.FAVORITES)
        self._state = LoadState.DEGRADED if degraded else LoadState.READY
        self._invalidate()

        if self._state == LoadState.DEGRADED:
            logger.warning(
                f"{self._scope.value} library degraded: source={result.source.value}, "
                f"videos={len(self._snapshot.videos)}"
            )

    def close(self) -> None:
        """Stop the pipeline: cancel an in-flight load and any pending search."""
        self._closed = True
        self._search_debouncer.cancel()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @property
    def selection(self) -> FilterSelection:
        return self._selection

    @property
    def search(self) -> str:
        return self._search

    @property
    def page(self) -> int:
        return self._page

    @property
    def sort(self) -> SortPreference:
        return self._sort

    @property
    def items_per_page(self) -> int:
        return self._items_per_page

    @property
    def view_mode(self) -> ViewMode:
        return self._view_mode

    @property
    def search_pending(self) -> bool:
        return self._search_debouncer.pending

    def toggle_filter(self, token: Union[FilterToken, str]) -> None:
        if isinstance(token, str):
            parsed = parse_filter_token(token)
            if parsed is None:
                logger.debug(f"Ignoring toggle of empty filter token {token!r}")
                return
            token = parsed
        self._selection = self._selection.toggle(token)
        self._page = 1
        self._changed()

    def clear_filters(self) -> None:
        self._selection = self._selection.cleared()
        self._page = 1
        self._changed()

    def set_mode(self, mode: Union[FilterMode, str]) -> None:
        self._selection = self._selection.with_mode(parse_mode(mode))
        self._page = 1
        self._changed()

    def set_search(self, query: str) -> None:
        """Debounced: the query is applied once typing pauses for the debounce delay."""
        self._search_debouncer.trigger(query)

    def set_search_now(self, query: str) -> None:
        self._search_debouncer.cancel()
        self._apply_search(query)

    async def flush_search(self) -> bool:
        """Apply a pending debounced search immediately."""
        return await self._search_debouncer.flush()

    def _apply_search(self, query: Optional[str]) -> None:
        if self._closed:
            return
        query = (query or "").strip()
        if query == self._search:
            return
        self._search = query
        self._page = 1
        self._changed()

    def set_sort(
        self,
        key: Union[SortKey, str, None],
        direction: Union[SortOrder, str, None] = None,
    ) -> None:
        sort_key = resolve_sort_key(key)
        sort_order = resolve_sort_order(direction) if direction is not None else self._sort.direction
        self._sort = SortPreference(sort_key, sort_order)
        self._preferences.set_sort(sort_key, sort_order)
        self._derived = None

    def set_page(self, page: int) -> None:
        self._page = max(1, int(page))
        self._notify()

    def set_items_per_page(self, value: int) -> None:
        self._items_per_page = self._preferences.set_items_per_page(value)
        self._page = 1
        self._changed()

    def set_view_mode(self, mode: Union[ViewMode, str]) -> None:
        self._view_mode = ViewMode(mode)
        self._preferences.set_view_mode(self._view_mode)

    def set_favorite(self, video_id: str, favorite: bool) -> None:
        """Reflect a favorite change made elsewhere without reloading."""
        if favorite:
            self._favorite_ids.add(video_id)
        else:
            self._favorite_ids.discard(video_id)
        if self._scope == LibraryScope.FAVORITES:
            self._derived = None

    def is_favorite(self, video_id: str) -> bool:
        return video_id in self._favorite_ids

    # ------------------------------------------------------------------
    # URL state
    # ------------------------------------------------------------------

    def current_query(self) -> LibraryQuery:
        return LibraryQuery.from_selection(self._selection, search=self._search, page=self._page)

    def query_string(self) -> str:
        return build_query_string(self.current_query())

    def apply_query(self, query: LibraryQuery) -> None:
        """Restore state from a parsed URL. Keeps the URL's page; it is clamped when the view is built."""
        self._search_debouncer.cancel()
        self._selection = query.selection()
        self._search = query.search
        self._page = query.page
        self._derived = None

    def _changed(self) -> None:
        self._derived = None
        self._notify()

    def _notify(self) -> None:
        if self._on_query_change is not None and not self._closed:
            self._on_query_change(self.query_string())

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def _invalidate(self) -> None:
        self._derived = None

    def _derive(self) -> _Derived:
        if self._derived is not None:
            return self._derived

        visible = filter_by_level(self._snapshot.videos, self._max_curriculum_order)
        facets = extract_facets(visible, self._max_curriculum_order, self._view_buckets)
        matched = filter_videos(visible, self._selection, self._search)
        if self._scope == LibraryScope.FAVORITES:
            matched = [v for v in matched if v.id in self._favorite_ids]
        ordered = sort_videos(matched, self._sort.key, self._sort.direction)

        self._derived = _Derived(visible=visible, facets=facets, ordered=ordered)
        return self._derived

    def view(self) -> LibraryView:
        derived = self._derive()
        page = paginate(derived.ordered, self._page, self._items_per_page)
        if page.page != self._page:
            logger.debug(f"Page {self._page} out of range, showing page {page.page} of {page.total_pages}")
            self._page = page.page

        return LibraryView(
            scope=self._scope,
            state=self._state,
            page=page,
            facets=derived.facets,
            selection=self._selection,
            search=self._search,
            sort=self._sort,
            view_mode=self._view_mode,
            query=self.query_string(),
            stale=self._stale,
            error=self._error,
            max_curriculum_order=self._max_curriculum_order,
            next_belt_name=next_belt_name(self._user, self._snapshot.curriculums),
            favorite_ids=set(self._favorite_ids),
        )
