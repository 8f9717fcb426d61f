"""
Shared fixtures: a deterministic fake inference backend and a loader that
counts how many times a model is actually loaded.
"""

import hashlib
import random
import threading
import time

import pytest

from docembed.embeddings.cache import EmbeddingCache
from docembed.embeddings.lifecycle import ModelLifecycleManager
from docembed.embeddings.types import Device, ModelSelector

DIMS = 384
MODEL = "test/e5-small"


def fake_vector(text: str, dims: int = DIMS) -> list[float]:
    """Deterministic pseudo-embedding derived from the text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i % len(digest)] / 255.0 for i in range(dims)]


class FakeBackend:
    def __init__(
        self,
        model_id,
        device,
        dimensions=DIMS,
        output_dims=None,
        fail_on=None,
        max_concurrency=2,
        jitter=False,
    ):
        self.model_id = model_id
        self.device = device
        self.dimensions = dimensions
        self.output_dims = output_dims or dimensions
        self.fail_on = fail_on
        self.max_concurrency = max_concurrency
        self.jitter = jitter
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    @property
    def texts_seen(self):
        return [t for batch in self.calls for t in batch]

    def embed(self, text):
        return self.embed_batch([text])[0]

    def embed_batch(self, texts):
        with self._lock:
            self.calls.append(list(texts))
        if self.jitter:
            time.sleep(random.random() * 0.02)
        for text in texts:
            if self.fail_on is not None and self.fail_on in text:
                raise RuntimeError(f"cannot embed {text!r}")
        return [fake_vector(t, self.output_dims) for t in texts]

    def close(self):
        self.closed = True


class FakeLoader:
    """Callable matching BackendLoader; records every load attempt."""

    def __init__(self, failing_devices=(), delay_s=0.0, fail_times=0, **backend_kwargs):
        self.failing_devices = set(failing_devices)
        self.delay_s = delay_s
        self.fail_times = fail_times
        self.backend_kwargs = backend_kwargs
        self.calls = []
        self.backends = []

    @property
    def backend(self):
        return self.backends[-1]

    def __call__(self, model_id, device, report):
        self.calls.append((model_id, device))
        report(0.25)
        if self.delay_s:
            time.sleep(self.delay_s)
        report(0.5)
        report(0.4)  # out of order on purpose, must be clamped
        if device in self.failing_devices:
            raise RuntimeError(f"{device.value} unavailable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("network down")
        backend = FakeBackend(model_id, device, **self.backend_kwargs)
        self.backends.append(backend)
        return backend


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def cache():
    return EmbeddingCache()


@pytest.fixture
def manager(loader, cache):
    return ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)
