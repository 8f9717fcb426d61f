"""
facade.py — Client embedding façade.

Entry point for editor / UI code. Picks the remote server when it answers
ready (faster on a LAN), otherwise runs the model in process. Post embeddings
are memoized by (post id + content hash, model id) whichever variant
produced them.

    client = EmbeddingClient()
    vector = await client.embed_post("post-1", "passage: Hello world")
    query = await client.embed_query("hello")
"""

import asyncio

from loguru import logger

from docembed import config
from docembed.client.capability import EmbeddingCapability
from docembed.client.local import LocalEmbeddings
from docembed.client.remote import RemoteEmbeddings
from docembed.embeddings.cache import CacheKey, EmbeddingCache, document_identity
from docembed.embeddings.types import (
    ModelSelector,
    ModelStatus,
    ProgressCallback,
    ProgressEvent,
)
from docembed.errors import EmbeddingError, InferenceFailure, InvalidInput
from docembed.state.atom import Atom
from docembed.text.markdown import prepare_passage_text

# multilingual-e5 expects these prefixes on documents / search queries
PASSAGE_PREFIX = "passage: "
QUERY_PREFIX = "query: "

MODES = ("auto", "server", "local")


def as_passage(text: str) -> str:
    return text if text.startswith("passage:") else f"{PASSAGE_PREFIX}{text}"


def as_query(text: str) -> str:
    return text if text.startswith("query:") else f"{QUERY_PREFIX}{text}"


def _notify(on_progress: ProgressCallback | None, event: ProgressEvent) -> None:
    if on_progress is not None:
        on_progress(event)


class EmbeddingClient:
    def __init__(
        self,
        mode: str = config.EMBEDDINGS_MODE,
        local: LocalEmbeddings | None = None,
        remote: RemoteEmbeddings | None = None,
        cache: EmbeddingCache | None = None,
        default_selector: ModelSelector | None = None,
    ):
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
        self.mode = mode
        self.cache = cache if cache is not None else EmbeddingCache(config.CACHE_MAX_ENTRIES)
        self.local = local or LocalEmbeddings(cache=self.cache)
        self.remote = remote
        self.default_selector = default_selector or ModelSelector.of(config.MODEL_ID, config.DEFAULT_DEVICE)
        self._capability: EmbeddingCapability | None = None
        self._detecting: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Variant selection
    # ------------------------------------------------------------------

    async def capability(self) -> EmbeddingCapability:
        """Resolve (once) which variant serves this client."""
        if self._capability is not None:
            return self._capability
        if self._detecting is None:
            self._detecting = asyncio.get_running_loop().create_task(self._detect())
        try:
            return await asyncio.shield(self._detecting)
        finally:
            if self._detecting is not None and self._detecting.done():
                self._detecting = None

    async def _detect(self) -> EmbeddingCapability:
        if self.mode == "local":
            self._capability = self.local
        elif self.mode == "server":
            self._capability = self._remote()
        else:
            remote = self._remote()
            use_server = await remote.is_ready()
            self._capability = remote if use_server else self.local
            logger.info(f"Embeddings mode: {'server' if use_server else 'local (fallback)'}")
        return self._capability

    def _remote(self) -> RemoteEmbeddings:
        if self.remote is None:
            self.remote = RemoteEmbeddings()
        return self.remote

    @property
    def using_server(self) -> bool:
        return self._capability is not None and self._capability is self.remote

    def _selector(self, model: dict | ModelSelector | None) -> ModelSelector:
        if isinstance(model, ModelSelector):
            return model
        model = model or {}
        return ModelSelector.of(
            model.get("model_id") or self.default_selector.model_id,
            model.get("device") or self.default_selector.device,
        )

    # ------------------------------------------------------------------
    # Capability contract
    # ------------------------------------------------------------------

    async def init(
        self,
        selector: ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ModelStatus:
        capability = await self.capability()
        return await capability.init(selector or self.default_selector, on_progress)

    async def embed_post(
        self,
        post_id: str,
        text: str,
        model: dict | ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[float]:
        """Embed a post revision, reusing the cached vector when the text is unchanged."""
        if not isinstance(text, str):
            raise InvalidInput("text must be a string")
        selector = self._selector(model)
        key = CacheKey(document_identity(post_id, text), selector.model_id)

        cached = self.cache.get(key)
        if cached:
            _notify(on_progress, ProgressEvent("cached", "From cache", 1.0))
            return cached

        embedding = await self._embed(text, selector, on_progress)
        self.cache.put(key, embedding)
        return embedding

    async def embed_passage(
        self,
        post_id: str,
        title: str,
        markdown: str,
        model: dict | ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[float]:
        """Clean the markdown, put the title first and embed it as a passage."""
        text = as_passage(prepare_passage_text(title, markdown))
        return await self.embed_post(post_id, text, model=model, on_progress=on_progress)

    async def embed_query(
        self,
        query: str,
        model: dict | ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[float]:
        """Embed a search query. Queries are ephemeral and never cached."""
        if not isinstance(query, str):
            raise InvalidInput("query must be a string")
        return await self._embed(as_query(query), self._selector(model), on_progress)

    async def embed_many(self, texts: list[str], model: dict | ModelSelector | None = None) -> list[list[float]]:
        capability = await self.capability()
        await capability.init(self._selector(model))
        return await capability.embed_many(texts)

    async def status(self) -> ModelStatus:
        capability = self._capability or self.local
        return await capability.status()

    async def clear_caches(self) -> None:
        await self.local.clear_caches()
        self.cache.clear()

    async def preload(self, model: dict | ModelSelector | None = None) -> bool:
        """Warm the selected variant up in the background; failures are only logged."""
        try:
            await self.init(self._selector(model))
        except EmbeddingError as exc:
            logger.warning(f"Embeddings preload failed: {exc}")
            return False
        return True

    async def aclose(self) -> None:
        if self.remote is not None:
            await self.remote.aclose()

    async def _embed(
        self,
        text: str,
        selector: ModelSelector,
        on_progress: ProgressCallback | None,
    ) -> list[float]:
        capability = await self.capability()
        await capability.init(selector, on_progress)

        _notify(on_progress, ProgressEvent("running", "Generating embedding", 0.5))
        embedding = await capability.embed(text)
        if not embedding:
            raise InferenceFailure("No embedding returned")
        _notify(on_progress, ProgressEvent("ready", "Done", 1.0))
        return embedding


class DebouncedEmbedder:
    """
    Re-embeds a post a short while after its markdown stops changing.

    `source` is an atom holding the editor's latest markdown snapshot.
    Must be started from inside a running event loop.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        source: Atom,
        post_id: str,
        delay_s: float = 2.0,
        model: dict | ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
        on_embedding=None,
        on_error=None,
    ):
        self.client = client
        self.source = source
        self.post_id = post_id
        self.delay_s = delay_s
        self.model = model
        self.on_progress = on_progress
        self.on_embedding = on_embedding
        self.on_error = on_error
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = None

    def start(self) -> "DebouncedEmbedder":
        self._loop = asyncio.get_running_loop()
        if self._unsubscribe is None:
            self._unsubscribe = self.source.listen(self._on_content)
        return self

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in list(self._tasks):
            task.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def pending(self) -> bool:
        return self._timer is not None or bool(self._tasks)

    def _on_content(self, content) -> None:
        if not content:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self.delay_s, self._fire, content)

    def _fire(self, content: str) -> None:
        self._timer = None
        task = self._loop.create_task(self._embed(content))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _embed(self, content: str) -> None:
        try:
            embedding = await self.client.embed_post(
                self.post_id,
                as_passage(content),
                model=self.model,
                on_progress=self.on_progress,
            )
        except EmbeddingError as exc:
            logger.warning(f"Debounced embedding failed: {exc}")
            if self.on_error is not None:
                self.on_error(exc)
            return
        except Exception as exc:
            logger.exception("Debounced embedding raised unexpectedly")
            if self.on_error is not None:
                self.on_error(exc)
            return
        if self.on_embedding is not None:
            self.on_embedding(embedding)
