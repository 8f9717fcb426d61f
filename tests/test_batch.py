"""
Tests for the batch scheduler and the embedding cache.
"""

import asyncio
import threading

import pytest

from docembed.embeddings.batch import BatchScheduler, validate_batch
from docembed.embeddings.cache import CacheKey, EmbeddingCache, content_hash, document_identity
from docembed.embeddings.lifecycle import ModelLifecycleManager
from docembed.embeddings.types import Device, ModelSelector
from docembed.errors import InferenceFailure, InvalidInput, NotReady

from conftest import DIMS, MODEL, FakeLoader, fake_vector


def _ready_scheduler(loader=None, cache=None, chunk_size=32):
    loader = loader or FakeLoader()
    cache = cache if cache is not None else EmbeddingCache()
    manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)
    scheduler = BatchScheduler(manager, cache, chunk_size=chunk_size)
    return manager, scheduler, loader, cache


def _run(manager, coro_factory):
    async def scenario():
        await manager.init()
        return await coro_factory()

    return asyncio.run(scenario())


class TestValidation:
    def test_empty_batch_rejected(self):
        with pytest.raises(InvalidInput, match="empty batch"):
            validate_batch([])

    def test_batch_of_101_rejected(self):
        with pytest.raises(InvalidInput, match="batch too large"):
            validate_batch(["x"] * 101)

    def test_batch_of_100_accepted(self):
        validate_batch(["x"] * 100)

    def test_non_string_items_rejected(self):
        with pytest.raises(InvalidInput):
            validate_batch(["ok", 3])

    def test_plain_string_rejected(self):
        with pytest.raises(InvalidInput):
            validate_batch("not a list")

    def test_misaligned_identities_rejected(self):
        with pytest.raises(InvalidInput):
            validate_batch(["a", "b"], ["only-one"])

    def test_validation_does_not_touch_model(self):
        manager, scheduler, loader, _ = _ready_scheduler()

        with pytest.raises(InvalidInput):
            asyncio.run(scheduler.embed_many([]))

        assert loader.calls == []


class TestEmbedMany:
    def test_requires_ready_model(self):
        _, scheduler, _, _ = _ready_scheduler()

        with pytest.raises(NotReady):
            asyncio.run(scheduler.embed_many(["hello"]))

    def test_vectors_have_model_dimension(self):
        manager, scheduler, _, _ = _ready_scheduler()

        vectors = _run(manager, lambda: scheduler.embed_many(["a", "", "a much longer text " * 50]))

        assert [len(v) for v in vectors] == [DIMS, DIMS, DIMS]

    def test_same_text_twice_gives_same_length(self):
        manager, scheduler, _, _ = _ready_scheduler()

        async def twice():
            return await scheduler.embed("hola mundo"), await scheduler.embed("hola mundo")

        first, second = _run(manager, twice)

        assert len(first) == len(second) == DIMS

    def test_hundred_texts_succeed(self):
        manager, scheduler, _, _ = _ready_scheduler()
        texts = [f"text {i}" for i in range(100)]

        vectors = _run(manager, lambda: scheduler.embed_many(texts))

        assert len(vectors) == 100

    def test_results_are_index_aligned_under_parallelism(self):
        loader = FakeLoader(jitter=True, max_concurrency=4)
        manager, scheduler, _, _ = _ready_scheduler(loader=loader, chunk_size=3)
        texts = [f"document number {i}" for i in reversed(range(40))]

        vectors = _run(manager, lambda: scheduler.embed_many(texts))

        assert vectors == [fake_vector(t) for t in texts]
        assert len(loader.backend.calls) == 14

    def test_cached_identity_skips_backend(self):
        manager, scheduler, loader, _ = _ready_scheduler()

        async def twice():
            first = await scheduler.embed("hello", identity="post-1::abc")
            second = await scheduler.embed("hello", identity="post-1::abc")
            return first, second

        first, second = _run(manager, twice)

        assert first == second
        assert loader.backend.texts_seen == ["hello"]

    def test_only_uncached_texts_hit_backend(self):
        manager, scheduler, loader, cache = _ready_scheduler()
        cache.put(CacheKey("id-b", MODEL), fake_vector("b"))

        vectors = _run(manager, lambda: scheduler.embed_many(["a", "b", "c"], ["id-a", "id-b", "id-c"]))

        assert vectors == [fake_vector("a"), fake_vector("b"), fake_vector("c")]
        assert loader.backend.texts_seen == ["a", "c"]
        assert CacheKey("id-c", MODEL) in cache

    def test_texts_without_identity_are_not_cached(self):
        manager, scheduler, _, cache = _ready_scheduler()

        _run(manager, lambda: scheduler.embed_many(["a", "b"]))

        assert len(cache) == 0

    def test_single_failure_fails_whole_batch(self):
        loader = FakeLoader(fail_on="boom")
        manager, scheduler, _, cache = _ready_scheduler(loader=loader, chunk_size=1)

        with pytest.raises(InferenceFailure, match="boom"):
            _run(manager, lambda: scheduler.embed_many(["fine", "boom", "also fine"], ["1", "2", "3"]))

        assert len(cache) == 0

    def test_wrong_dimension_is_inference_failure(self):
        loader = FakeLoader(output_dims=10)
        manager, scheduler, _, _ = _ready_scheduler(loader=loader)

        with pytest.raises(InferenceFailure, match="dimensions"):
            _run(manager, lambda: scheduler.embed_many(["a"]))


class TestEmbeddingCache:
    def test_get_missing_returns_none(self):
        cache = EmbeddingCache()

        assert cache.get(CacheKey("x", MODEL)) is None
        assert cache.misses == 1

    def test_put_then_get(self):
        cache = EmbeddingCache()
        cache.put(CacheKey("x", MODEL), [1.0, 2.0])

        assert cache.get(CacheKey("x", MODEL)) == [1.0, 2.0]
        assert cache.hits == 1

    def test_key_includes_model_identity(self):
        cache = EmbeddingCache()
        cache.put(CacheKey("x", "model-a"), [1.0])

        assert cache.get(CacheKey("x", "model-b")) is None

    def test_returned_vectors_are_copies(self):
        cache = EmbeddingCache()
        cache.put(CacheKey("x", MODEL), [1.0])

        cache.get(CacheKey("x", MODEL)).append(99.0)

        assert cache.get(CacheKey("x", MODEL)) == [1.0]

    def test_lru_eviction(self):
        cache = EmbeddingCache(max_entries=2)
        cache.put(CacheKey("a", MODEL), [1.0])
        cache.put(CacheKey("b", MODEL), [2.0])
        cache.get(CacheKey("a", MODEL))
        cache.put(CacheKey("c", MODEL), [3.0])

        assert CacheKey("a", MODEL) in cache
        assert CacheKey("b", MODEL) not in cache
        assert len(cache) == 2

    def test_invalid_max_entries(self):
        with pytest.raises(ValueError):
            EmbeddingCache(max_entries=0)

    def test_clear(self):
        cache = EmbeddingCache()
        cache.put(CacheKey("a", MODEL), [1.0])
        cache.clear()

        assert len(cache) == 0

    def test_concurrent_writers(self):
        cache = EmbeddingCache()

        def writer():
            for i in range(200):
                cache.put(CacheKey(f"doc-{i}", MODEL), [float(i)])

        threads = [threading.Thread(target=writer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache) == 200
        assert cache.get(CacheKey("doc-7", MODEL)) == [7.0]

    def test_identity_changes_with_content(self):
        assert content_hash("a") == content_hash("a")
        assert document_identity("post-1", "v1") != document_identity("post-1", "v2")
        assert document_identity("post-1", "v1").startswith("post-1::")
