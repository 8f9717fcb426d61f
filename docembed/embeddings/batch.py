"""
batch.py — Batch scheduler.

embed_many() validates the batch, serves cached entries, embeds the rest in
input-order chunks (concurrently, up to the backend's max_concurrency) and
returns vectors index-aligned with the input. One failure fails the batch and
leaves the cache untouched.
"""

import asyncio
from typing import Sequence

from loguru import logger

from docembed import config
from docembed.embeddings.cache import CacheKey, EmbeddingCache
from docembed.embeddings.lifecycle import ModelLifecycleManager
from docembed.errors import EmbeddingError, InferenceFailure, InvalidInput


def validate_batch(
    texts: Sequence[str],
    identities: Sequence[str | None] | None = None,
    max_batch_size: int = config.MAX_BATCH_SIZE,
) -> None:
    """Raise InvalidInput unless 1 <= len(texts) <= max_batch_size and all items are str."""
    if isinstance(texts, str) or not isinstance(texts, Sequence):
        raise InvalidInput("texts must be a list of strings")
    if len(texts) == 0:
        raise InvalidInput("empty batch")
    if len(texts) > max_batch_size:
        raise InvalidInput(f"batch too large: at most {max_batch_size} texts per request")
    if not all(isinstance(t, str) for t in texts):
        raise InvalidInput("every item in texts must be a string")
    if identities is not None and len(identities) != len(texts):
        raise InvalidInput("identities must be index-aligned with texts")


class BatchScheduler:
    def __init__(
        self,
        manager: ModelLifecycleManager,
        cache: EmbeddingCache | None = None,
        max_batch_size: int = config.MAX_BATCH_SIZE,
        chunk_size: int = config.ENCODE_BATCH_SIZE,
    ):
        self.manager = manager
        self.cache = cache
        self.max_batch_size = max_batch_size
        self.chunk_size = max(1, chunk_size)

    async def embed(self, text: str, identity: str | None = None) -> list[float]:
        if not isinstance(text, str):
            raise InvalidInput("text must be a string")
        vectors = await self.embed_many([text], [identity])
        return vectors[0]

    async def embed_many(
        self,
        texts: Sequence[str],
        identities: Sequence[str | None] | None = None,
    ) -> list[list[float]]:
        validate_batch(texts, identities, self.max_batch_size)
        backend = self.manager.backend()
        model_id = backend.model_id

        results: list[list[float] | None] = [None] * len(texts)
        missing: list[int] = []
        for i in range(len(texts)):
            identity = identities[i] if identities is not None else None
            if identity and self.cache is not None:
                cached = self.cache.get(CacheKey(identity, model_id))
                if cached is not None:
                    results[i] = cached
                    continue
            missing.append(i)

        if missing:
            await self._embed_indices(backend, texts, missing, results)

            if self.cache is not None and identities is not None:
                self.cache.put_many(
                    (CacheKey(identities[i], model_id), results[i])
                    for i in missing
                    if identities[i]
                )

        logger.debug(f"Embedded batch: size={len(texts)}, cached={len(texts) - len(missing)}")
        return results

    async def _embed_indices(self, backend, texts, indices: list[int], results: list) -> None:
        semaphore = asyncio.Semaphore(max(1, backend.max_concurrency))
        chunks = [indices[j:j + self.chunk_size] for j in range(0, len(indices), self.chunk_size)]

        async def run(chunk: list[int]) -> None:
            async with semaphore:
                vectors = await asyncio.to_thread(backend.embed_batch, [texts[i] for i in chunk])
            if len(vectors) != len(chunk):
                raise InferenceFailure(f"backend returned {len(vectors)} vectors for {len(chunk)} texts")
            for i, vector in zip(chunk, vectors):
                if len(vector) != backend.dimensions:
                    raise InferenceFailure(
                        f"vector {i} has {len(vector)} dimensions, expected {backend.dimensions}"
                    )
                results[i] = list(vector)

        try:
            await asyncio.gather(*(run(chunk) for chunk in chunks))
        except EmbeddingError:
            raise
        except Exception as exc:
            raise InferenceFailure(f"{type(exc).__name__}: {exc}") from exc
