"""
storage.py — Tab-shared durable key-value storage.

SharedStorage is one storage origin; every consumer ("tab") talks to it
through its own StorageArea. A write through one area notifies the listeners
of every *other* area with a StorageEvent, the way a browser delivers
`storage` events to the other tabs of an origin.

When a path is given, the whole origin is persisted as a JSON file after each
write and loaded back on construction.
"""

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from docembed.errors import StorageUnavailable


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageEvent], None]


class SharedStorage:
    def __init__(self, path: Optional[str] = None, quota_bytes: Optional[int] = None):
        self.path = Path(path) if path else None
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = {}
        self._areas: list["StorageArea"] = []
        self._lock = threading.RLock()
        self.available = True

        if self.path is not None and self.path.exists():
            self._items = self._read_file()

    def area(self) -> "StorageArea":
        """Open a new tab-scoped view of this origin."""
        area = StorageArea(self)
        with self._lock:
            self._areas.append(area)
        return area

    # ------------------------------------------------------------------
    # Internal, called by StorageArea
    # ------------------------------------------------------------------

    def _check_available(self) -> None:
        if not self.available:
            raise StorageUnavailable("storage is not accessible")

    def _get(self, key: str) -> Optional[str]:
        self._check_available()
        with self._lock:
            return self._items.get(key)

    def _write(self, origin: "StorageArea", key: str, value: Optional[str]) -> None:
        self._check_available()
        with self._lock:
            old_value = self._items.get(key)
            # _items only changes once the new contents are persisted
            projected = dict(self._items)
            if value is None:
                projected.pop(key, None)
            else:
                projected[key] = value
                if self.quota_bytes is not None and _size_of(projected) > self.quota_bytes:
                    raise StorageUnavailable("storage quota exceeded")
            self._persist(projected)
            self._items = projected
            others = [a for a in self._areas if a is not origin]

        if old_value == value:
            return
        event = StorageEvent(key=key, old_value=old_value, new_value=value)
        for area in others:
            area._dispatch(event)

    def _close(self, area: "StorageArea") -> None:
        with self._lock:
            if area in self._areas:
                self._areas.remove(area)

    def _read_file(self) -> dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Could not read storage file {self.path}: {exc}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _persist(self, items: dict[str, str]) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(items, f, ensure_ascii=False)
            tmp.replace(self.path)
        except OSError as exc:
            raise StorageUnavailable(f"could not persist storage: {exc}") from exc


class StorageArea:
    """One tab's handle on a SharedStorage origin."""

    def __init__(self, origin: SharedStorage):
        self._origin = origin
        self._listeners: list[StorageListener] = []

    def get_item(self, key: str) -> Optional[str]:
        return self._origin._get(key)

    def set_item(self, key: str, value: str) -> None:
        self._origin._write(self, key, str(value))

    def remove_item(self, key: str) -> None:
        self._origin._write(self, key, None)

    def add_listener(self, listener: StorageListener) -> Callable[[], None]:
        """Register for changes made by other areas. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def close(self) -> None:
        self._listeners.clear()
        self._origin._close(self)

    def _dispatch(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Storage listener raised")


def _size_of(items: dict[str, str]) -> int:
    return sum(len(k.encode("utf-8")) + len(v.encode("utf-8")) for k, v in items.items())
