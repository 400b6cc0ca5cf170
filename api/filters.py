"""
Filter selection model and the predicates that evaluate it against videos.

Filter tokens travel through URLs in a prefixed string form:

    <category id>          bare ids are categories
    curriculum:<id>
    performer:<id>
    recorded:<label>
    views:<threshold>

Inside the application they are parsed once into FilterToken values so no
predicate ever has to look at a prefix again.

Combination rules (one rule for every view that filters videos):
- Each kind with at least one selected token yields one boolean per video.
  Within a kind, AND needs every selected value present on the video and OR
  needs at least one.
- Across kinds, AND joins those booleans with logical AND, OR with logical OR.
- An empty selection matches every video in both modes.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from api.enums import FilterKind, FilterMode
from api.models import Video

logger = logging.getLogger(__name__)

# Prefixes of the wire form. Categories have none.
TOKEN_PREFIXES = {
    FilterKind.CURRICULUM: "curriculum:",
    FilterKind.PERFORMER: "performer:",
    FilterKind.RECORDED: "recorded:",
    FilterKind.VIEWS: "views:",
}

# Explicit category prefix is accepted on input but never produced
_CATEGORY_PREFIX = "category:"


@dataclass(frozen=True)
class FilterToken:
    kind: FilterKind
    value: str

    def to_wire(self) -> str:
        if self.kind == FilterKind.CATEGORY:
            return self.value
        return f"{TOKEN_PREFIXES[self.kind]}{self.value}"

    @classmethod
    def category(cls, category_id: str) -> "FilterToken":
        return cls(FilterKind.CATEGORY, category_id)

    @classmethod
    def curriculum(cls, curriculum_id: str) -> "FilterToken":
        return cls(FilterKind.CURRICULUM, curriculum_id)

    @classmethod
    def performer(cls, performer_id: str) -> "FilterToken":
        return cls(FilterKind.PERFORMER, performer_id)

    @classmethod
    def recorded(cls, label: str) -> "FilterToken":
        return cls(FilterKind.RECORDED, label)

    @classmethod
    def views(cls, threshold: int) -> "FilterToken":
        return cls(FilterKind.VIEWS, str(threshold))


def parse_filter_token(raw: str) -> Optional[FilterToken]:
    """
    Parse one wire token.

    Returns None for empty tokens and for a prefix with nothing after it.
    Unknown bare ids still parse as categories; they simply match no video.
    """
    if not isinstance(raw, str):
        return None
    raw = raw.strip()
    if not raw:
        return None

    for kind, prefix in TOKEN_PREFIXES.items():
        if raw.startswith(prefix):
            value = raw[len(prefix):]
            return FilterToken(kind, value) if value else None

    if raw.startswith(_CATEGORY_PREFIX):
        value = raw[len(_CATEGORY_PREFIX):]
        return FilterToken.category(value) if value else None

    return FilterToken.category(raw)


@dataclass(frozen=True)
class FilterSelection:
    """Ordered, de-duplicated set of selected tokens plus the combination mode."""

    tokens: Tuple[FilterToken, ...] = ()
    mode: FilterMode = FilterMode.AND

    @classmethod
    def from_wire(cls, raw_tokens: Iterable[str], mode: FilterMode = FilterMode.AND) -> "FilterSelection":
        tokens: List[FilterToken] = []
        for raw in raw_tokens:
            token = parse_filter_token(raw)
            if token is None:
                logger.debug(f"Ignoring empty filter token {raw!r}")
                continue
            if token not in tokens:
                tokens.append(token)
        return cls(tuple(tokens), FilterMode(mode))

    @classmethod
    def from_groups(
        cls,
        category_tokens: Sequence[str],
        curriculum_ids: Sequence[str],
        mode: FilterMode = FilterMode.AND,
    ) -> "FilterSelection":
        """Build a selection from the two-list form: category-like tokens plus curriculum ids."""
        raw = list(category_tokens) + [f"{TOKEN_PREFIXES[FilterKind.CURRICULUM]}{cid}" for cid in curriculum_ids]
        return cls.from_wire(raw, mode)

    def to_wire(self) -> List[str]:
        return [token.to_wire() for token in self.tokens]

    def values(self, kind: FilterKind) -> List[str]:
        return [token.value for token in self.tokens if token.kind == kind]

    @property
    def is_empty(self) -> bool:
        return not self.tokens

    def __len__(self) -> int:
        return len(self.tokens)

    def __contains__(self, token: object) -> bool:
        return token in self.tokens

    def toggle(self, token: FilterToken) -> "FilterSelection":
        if token in self.tokens:
            return replace(self, tokens=tuple(t for t in self.tokens if t != token))
        return replace(self, tokens=self.tokens + (token,))

    def with_mode(self, mode: FilterMode) -> "FilterSelection":
        return replace(self, mode=FilterMode(mode))

    def cleared(self) -> "FilterSelection":
        return replace(self, tokens=())


def matches_search(video: Video, query: Optional[str]) -> bool:
    """
    Case-insensitive substring match against title, description, and the names of
    the video's categories, curriculums and performers. Empty query matches all.
    """
    if not query:
        return True
    needle = query.strip().casefold()
    if not needle:
        return True

    haystacks = [video.title, video.description or ""]
    haystacks.extend(c.name for c in video.categories)
    haystacks.extend(c.name for c in video.curriculums)
    haystacks.extend(p.name for p in video.performers)
    return any(needle in text.casefold() for text in haystacks)


def _set_match(selected: Sequence[str], present: Iterable[str], mode: FilterMode) -> bool:
    present = set(present)
    if mode == FilterMode.AND:
        return all(value in present for value in selected)
    return any(value in present for value in selected)


def _recorded_match(selected: Sequence[str], recorded: Optional[str], mode: FilterMode) -> bool:
    # A video has at most one recorded label, so AND over two different labels is empty
    if recorded is None:
        return False
    if mode == FilterMode.AND:
        return all(value == recorded for value in selected)
    return recorded in selected


def _parse_threshold(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        logger.debug(f"Ignoring non-numeric view bucket {value!r}")
        return None


def _views_match(selected: Sequence[str], views: int, mode: FilterMode) -> bool:
    # Buckets are thresholds: bucket n matches videos with at least n views.
    # A malformed bucket never matches.
    results = []
    for value in selected:
        threshold = _parse_threshold(value)
        results.append(threshold is not None and views >= threshold)
    return all(results) if mode == FilterMode.AND else any(results)


def kind_matches(video: Video, kind: FilterKind, selected: Sequence[str], mode: FilterMode) -> bool:
    """Evaluate one facet kind for one video. Callers only ask about non-empty selections."""
    if kind == FilterKind.CATEGORY:
        return _set_match(selected, video.category_ids, mode)
    if kind == FilterKind.CURRICULUM:
        return _set_match(selected, video.curriculum_ids, mode)
    if kind == FilterKind.PERFORMER:
        return _set_match(selected, video.performer_ids, mode)
    if kind == FilterKind.RECORDED:
        return _recorded_match(selected, video.recorded_value, mode)
    if kind == FilterKind.VIEWS:
        return _views_match(selected, video.views, mode)
    raise ValueError(f"Unknown filter kind: {kind}")


def matches_filters(video: Video, selection: FilterSelection) -> bool:
    """Check a video against every active facet kind of the selection."""
    if selection.is_empty:
        return True

    results = []
    for kind in FilterKind:
        selected = selection.values(kind)
        if selected:
            results.append(kind_matches(video, kind, selected, selection.mode))

    if selection.mode == FilterMode.AND:
        return all(results)
    return any(results)


def matches_filter_tokens(
    video: Video,
    category_tokens: Sequence[str],
    curriculum_ids: Sequence[str],
    mode: FilterMode = FilterMode.AND,
) -> bool:
    """Two-list form of matches_filters: category-like wire tokens plus curriculum ids."""
    return matches_filters(video, FilterSelection.from_groups(category_tokens, curriculum_ids, mode))


def within_level(video: Video, max_curriculum_order: Optional[int]) -> bool:
    """
    True when the video is visible under a level bound.

    Videos without any curriculum are general content and stay visible; otherwise
    at least one of the video's curriculums must rank at or below the bound.
    """
    if max_curriculum_order is None or not video.curriculums:
        return True
    return any(c.display_order <= max_curriculum_order for c in video.curriculums)


def filter_by_level(videos: Iterable[Video], max_curriculum_order: Optional[int]) -> List[Video]:
    return [v for v in videos if within_level(v, max_curriculum_order)]


def filter_videos(
    videos: Iterable[Video],
    selection: FilterSelection,
    search: Optional[str] = None,
) -> List[Video]:
    """Apply search, then facet filters, keeping input order."""
    return [v for v in videos if matches_search(v, search) and matches_filters(v, selection)]
