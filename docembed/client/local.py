"""
In-process embedding variant (model runs on this machine's device).
"""

from typing import Sequence

from docembed import config
from docembed.embeddings.batch import BatchScheduler
from docembed.embeddings.cache import EmbeddingCache
from docembed.embeddings.lifecycle import ModelLifecycleManager
from docembed.embeddings.types import ModelSelector, ModelStatus, ProgressCallback


class LocalEmbeddings:
    def __init__(
        self,
        manager: ModelLifecycleManager | None = None,
        cache: EmbeddingCache | None = None,
    ):
        if manager is None:
            manager = ModelLifecycleManager(cache=cache if cache is not None else EmbeddingCache(config.CACHE_MAX_ENTRIES))
        elif manager.cache is None:
            manager.cache = cache if cache is not None else EmbeddingCache(config.CACHE_MAX_ENTRIES)
        self.manager = manager
        self.cache = manager.cache
        self.scheduler = BatchScheduler(manager, manager.cache)

    @property
    def model_id(self) -> str:
        return self.manager.model_id

    async def init(
        self,
        selector: ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ModelStatus:
        return await self.manager.init(selector, on_progress)

    async def embed(self, text: str, identity: str | None = None) -> list[float]:
        return await self.scheduler.embed(text, identity)

    async def embed_many(
        self,
        texts: Sequence[str],
        identities: Sequence[str | None] | None = None,
    ) -> list[list[float]]:
        return await self.scheduler.embed_many(texts, identities)

    async def status(self) -> ModelStatus:
        return self.manager.status()

    async def clear_caches(self) -> None:
        await self.manager.clear_caches()
