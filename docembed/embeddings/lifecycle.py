"""
lifecycle.py — Model lifecycle manager.

Owns model acquisition, device selection/fallback, readiness state and
progress reporting. Concurrent init() calls for the same selector attach to
the one in-flight load instead of starting another.

State machine:
    uninitialized -> loading(p) -> ready | failed(reason)
    clear_caches() returns to uninitialized from any state.
"""

import asyncio
import time
from dataclasses import dataclass, field

from loguru import logger

from docembed.embeddings.backend import BackendLoader, InferenceBackend, load_sentence_transformer
from docembed.embeddings.cache import EmbeddingCache
from docembed.embeddings.types import (
    ModelPhase,
    ModelSelector,
    ModelState,
    ModelStatus,
    ProgressCallback,
    ProgressEvent,
)
from docembed.errors import ModelLoadFailure, NotReady


class _MonotonicProgress:
    """Clamps reported fractions to [0, 1] and never lets them go backwards."""

    def __init__(self, sink):
        self._sink = sink
        self._last = 0.0

    def __call__(self, fraction: float) -> None:
        value = min(max(float(fraction), 0.0), 1.0)
        if value < self._last:
            return
        self._last = value
        self._sink(value)


@dataclass
class _PendingLoad:
    task: asyncio.Task | None = None
    listeners: list[ProgressCallback] = field(default_factory=list)


class ModelLifecycleManager:
    """Loads at most one model per selector at a time and tracks its state."""

    def __init__(
        self,
        default_selector: ModelSelector | None = None,
        loader: BackendLoader = load_sentence_transformer,
        cache: EmbeddingCache | None = None,
    ):
        self.default_selector = default_selector or ModelSelector.of()
        self.cache = cache
        self._loader = loader
        self._state = ModelState.uninitialized()
        self._selector: ModelSelector | None = None
        self._backend: InferenceBackend | None = None
        self._pending: dict[ModelSelector, _PendingLoad] = {}
        self._generation = 0
        self.load_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def init(
        self,
        selector: ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ModelStatus:
        """Ensure the model for selector is loaded; coalesces concurrent calls."""
        requested = selector or self.default_selector

        if self._state.phase is ModelPhase.READY and requested.matches(self._selector):
            return self.status()

        pending = self._pending.get(requested)
        if pending is None:
            pending = _PendingLoad()
            self._pending[requested] = pending
            pending.task = asyncio.get_running_loop().create_task(self._load(requested, pending))
            pending.task.add_done_callback(_consume_exception)
        if on_progress is not None:
            pending.listeners.append(on_progress)

        await asyncio.shield(pending.task)
        return self.status()

    def status(self) -> ModelStatus:
        dimensions = self._backend.dimensions if self._backend is not None else None
        return ModelStatus(state=self._state, selector=self._selector, dimensions=dimensions)

    @property
    def ready(self) -> bool:
        return self._state.phase is ModelPhase.READY and self._backend is not None

    @property
    def model_id(self) -> str:
        """Model identity of the active selector (or the default one)."""
        return (self._selector or self.default_selector).model_id

    def backend(self) -> InferenceBackend:
        """The loaded adapter; raises NotReady unless state is ready."""
        if not self.ready:
            raise NotReady(f"Model is {self._state.phase.value}; call init() first")
        return self._backend

    async def clear_caches(self) -> None:
        """Unload the model and empty the embedding cache. Safe in any state."""
        self._generation += 1
        self._pending.clear()

        self._release_backend()
        if self.cache is not None:
            self.cache.clear()

        self._state = ModelState.uninitialized()
        self._selector = None
        logger.info("Embedding model and cache cleared")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _load(self, requested: ModelSelector, pending: _PendingLoad) -> None:
        generation = self._generation
        loop = asyncio.get_running_loop()
        self.load_count += 1
        # state and _backend always agree: a loading or failed manager holds no model
        self._release_backend()
        self._state = ModelState.loading(0.0)
        self._selector = requested
        self._emit(pending, ProgressEvent("loading", "Starting model load", 0.0))

        def on_fraction(fraction: float) -> None:
            loop.call_soon_threadsafe(self._on_progress, pending, generation, fraction)

        report = _MonotonicProgress(on_fraction)
        start = time.perf_counter()

        try:
            backend, device, error = None, None, None
            for device in requested.candidates():
                try:
                    backend = await asyncio.to_thread(self._loader, requested.model_id, device, report)
                    break
                except Exception as exc:
                    error = exc
                    logger.warning(f"Model load failed on {device.value}: {exc}")

            if generation != self._generation:
                if backend is not None:
                    backend.close()
                raise ModelLoadFailure("Model load discarded by clear_caches()")

            if backend is None:
                reason = f"{type(error).__name__}: {error}"
                self._release_backend()
                self._state = ModelState.failed(reason)
                logger.error(f"Model {requested.model_id} could not be loaded: {reason}")
                raise ModelLoadFailure(reason) from error

            self._release_backend()
            self._backend = backend
            self._selector = ModelSelector(requested.model_id, device)
            self._state = ModelState.ready()

            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logger.info(f"Model ready: {requested.model_id} on {device.value} in {elapsed_ms}ms")
            self._emit(pending, ProgressEvent("ready", "Model ready", 1.0))
        finally:
            if self._pending.get(requested) is pending:
                del self._pending[requested]

    def _release_backend(self) -> None:
        backend, self._backend = self._backend, None
        if backend is not None:
            backend.close()

    def _on_progress(self, pending: _PendingLoad, generation: int, fraction: float) -> None:
        if generation != self._generation or self._state.phase is not ModelPhase.LOADING:
            return
        fraction = max(fraction, self._state.progress)
        self._state = ModelState.loading(fraction)
        self._emit(pending, ProgressEvent("loading", "Downloading model", fraction))

    def _emit(self, pending: _PendingLoad, event: ProgressEvent) -> None:
        for listener in list(pending.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress callback raised")


def _consume_exception(task: asyncio.Task) -> None:
    # Failures are delivered to awaiting callers; this keeps asyncio quiet
    # when every caller has gone away.
    if not task.cancelled():
        task.exception()
