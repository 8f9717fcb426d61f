"""
embedder.py — Process-wide embedding model for the web backend.

Uses sentence-transformers with multilingual-e5-small (384-dim).
The model loads once (lazily, or at startup with EMBEDDINGS_PRELOAD=true)
and stays in memory; concurrent requests share one load and one cache.
"""

from typing import Sequence

from loguru import logger

from docembed import config
from docembed.embeddings.batch import BatchScheduler, validate_batch
from docembed.embeddings.cache import EmbeddingCache, content_hash
from docembed.embeddings.lifecycle import ModelLifecycleManager
from docembed.embeddings.types import ModelSelector
from docembed.errors import EmbeddingError


class ServerEmbedder:
    def __init__(self, manager: ModelLifecycleManager | None = None):
        if manager is None:
            manager = ModelLifecycleManager(
                ModelSelector.of(config.MODEL_ID, config.DEFAULT_DEVICE),
                cache=EmbeddingCache(config.CACHE_MAX_ENTRIES),
            )
        self.manager = manager
        self.scheduler = BatchScheduler(manager, manager.cache)

    @property
    def model_id(self) -> str:
        return self.manager.default_selector.model_id

    @property
    def dimensions(self) -> int:
        status = self.manager.status()
        return status.dimensions or config.EMBEDDING_DIMENSIONS

    def is_ready(self) -> bool:
        return self.manager.ready

    async def preload(self) -> bool:
        """Load the model now instead of on the first request."""
        try:
            await self.manager.init()
        except EmbeddingError as exc:
            logger.error(f"[Embeddings Server] Preload failed: {exc}")
            return False
        return True

    async def generate_embedding(self, text: str) -> list[float]:
        """Embed one text. The text should carry its "passage: " / "query: " prefix."""
        await self.manager.init()
        return await self.scheduler.embed(text, content_hash(text))

    async def generate_embeddings_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed up to MAX_BATCH_SIZE texts, index-aligned with the input."""
        validate_batch(texts)
        await self.manager.init()
        return await self.scheduler.embed_many(texts, [content_hash(t) for t in texts])


_embedder: ServerEmbedder | None = None


def get_embedder() -> ServerEmbedder:
    """Return the singleton ServerEmbedder (created lazily)."""
    global _embedder
    if _embedder is None:
        _embedder = ServerEmbedder()
    return _embedder
