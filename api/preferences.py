"""
Client-local display preferences: view mode, items per page, sort key and direction.

Each library surface passes its own prefix ("library", "favorites",
"myLevel", "management"), and every key is namespaced with it, so changing
the sort on one surface leaves the others alone.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from api.enums import SortKey, SortOrder, ViewMode
from api.pagination import normalize_items_per_page
from config import DEFAULT_ITEMS_PER_PAGE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SortPreference:
    key: SortKey = SortKey.TITLE
    direction: SortOrder = SortOrder.ASC


@dataclass(frozen=True)
class LibraryPreferences:
    view_mode: ViewMode = ViewMode.GRID
    items_per_page: int = DEFAULT_ITEMS_PER_PAGE
    sort: SortPreference = SortPreference()


class MemoryBackend:
    """String key/value storage held in memory. Used by the API and in tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Dict[str, str]:
        return dict(self._data)


class JsonFileBackend:
    """
    String key/value storage in a JSON object on disk.

    The file is re-read on every get so separate processes see each other's
    writes, and written through a temp file plus rename so a crash never
    leaves half a file behind.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.warning(f"Could not read preferences from {self._path}: {e}")
            return {}

        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Ignoring corrupt preferences file {self._path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), prefix=".prefs-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)

    def items(self) -> Dict[str, str]:
        return self._load()


PreferenceBackend = Union[MemoryBackend, JsonFileBackend]


class PreferenceStore:
    """Typed, namespaced access to a preference backend."""

    def __init__(self, prefix: str, backend: Optional[PreferenceBackend] = None):
        if not prefix:
            raise ValueError("Preference prefix must not be empty")
        self._prefix = prefix
        self._backend = backend if backend is not None else MemoryBackend()

    @property
    def prefix(self) -> str:
        return self._prefix

    def _key(self, name: str) -> str:
        return f"{self._prefix}{name}"

    @property
    def view_key(self) -> str:
        return self._key("View")

    @property
    def items_per_page_key(self) -> str:
        return self._key("ItemsPerPage")

    @property
    def sort_by_key(self) -> str:
        return self._key("SortBy")

    @property
    def sort_order_key(self) -> str:
        return self._key("SortOrder")

    def get_view_mode(self) -> ViewMode:
        raw = self._backend.get(self.view_key)
        try:
            return ViewMode(raw) if raw is not None else ViewMode.GRID
        except ValueError:
            logger.debug(f"Ignoring stored view mode {raw!r}")
            return ViewMode.GRID

    def set_view_mode(self, mode: ViewMode) -> None:
        self._backend.set(self.view_key, ViewMode(mode).value)

    def get_items_per_page(self) -> int:
        raw = self._backend.get(self.items_per_page_key)
        if raw is None:
            return DEFAULT_ITEMS_PER_PAGE
        try:
            return normalize_items_per_page(int(raw))
        except ValueError:
            logger.debug(f"Ignoring stored items per page {raw!r}")
            return DEFAULT_ITEMS_PER_PAGE

    def set_items_per_page(self, value: int) -> int:
        value = normalize_items_per_page(value)
        self._backend.set(self.items_per_page_key, str(value))
        return value

    def get_sort(self) -> SortPreference:
        raw_key = self._backend.get(self.sort_by_key)
        raw_order = self._backend.get(self.sort_order_key)
        try:
            key = SortKey(raw_key) if raw_key is not None else SortKey.TITLE
        except ValueError:
            key = SortKey.TITLE
        try:
            direction = SortOrder(raw_order) if raw_order is not None else SortOrder.ASC
        except ValueError:
            direction = SortOrder.ASC
        return SortPreference(key, direction)

    def set_sort(self, key: SortKey, direction: SortOrder) -> None:
        self._backend.set(self.sort_by_key, SortKey(key).value)
        self._backend.set(self.sort_order_key, SortOrder(direction).value)

    def load(self) -> LibraryPreferences:
        return LibraryPreferences(
            view_mode=self.get_view_mode(),
            items_per_page=self.get_items_per_page(),
            sort=self.get_sort(),
        )

    def reset(self) -> None:
        for key in (self.view_key, self.items_per_page_key, self.sort_by_key, self.sort_order_key):
            self._backend.delete(key)
