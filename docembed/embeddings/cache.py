"""
Process-lifetime embedding cache.

Keys are (document_identity, model_id). The identity is opaque here: callers
pass a content hash or a document id, see content_hash() / document_identity().
"""

import hashlib
import threading
from collections import OrderedDict
from typing import Iterable, NamedTuple


class CacheKey(NamedTuple):
    document_identity: str
    model_id: str


def content_hash(text: str) -> str:
    """Stable hash of the text, used as a cache identity."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def document_identity(post_id: str, text: str) -> str:
    """Identity for a document revision: changes whenever the text changes."""
    return f"{post_id}::{content_hash(text)}"


class EmbeddingCache:
    """Thread-safe memo of embeddings, unbounded unless max_entries is set (LRU)."""

    def __init__(self, max_entries: int | None = None):
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._entries: OrderedDict[CacheKey, tuple[float, ...]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: CacheKey) -> list[float] | None:
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
        return list(vector)

    def put(self, key: CacheKey, vector: list[float]) -> None:
        self.put_many([(key, vector)])

    def put_many(self, items: Iterable[tuple[CacheKey, list[float]]]) -> None:
        """Write several entries under one lock acquisition."""
        frozen = [(key, tuple(vector)) for key, vector in items]
        with self._lock:
            for key, vector in frozen:
                self._entries[key] = vector
                self._entries.move_to_end(key)
            self._evict()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def _evict(self) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
