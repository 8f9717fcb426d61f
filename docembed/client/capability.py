"""
The capability set shared by every embedding variant.

LocalEmbeddings runs the model in this process; RemoteEmbeddings calls the
embeddings server. Both honour the same batch bounds and return vectors that
rank the same way (not bit-identical).
"""

from typing import Protocol, Sequence

from docembed.embeddings.types import ModelSelector, ModelStatus, ProgressCallback


class EmbeddingCapability(Protocol):
    @property
    def model_id(self) -> str: ...

    async def init(
        self,
        selector: ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ModelStatus: ...

    async def embed(self, text: str, identity: str | None = None) -> list[float]: ...

    async def embed_many(
        self,
        texts: Sequence[str],
        identities: Sequence[str | None] | None = None,
    ) -> list[list[float]]: ...

    async def status(self) -> ModelStatus: ...

    async def clear_caches(self) -> None: ...
