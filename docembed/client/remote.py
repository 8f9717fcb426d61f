"""
remote.py — HTTP embedding variant, talks to the /api/embeddings endpoint.

    GET  /api/embeddings              -> {ready, model, dimensions}
    POST /api/embeddings {text}       -> {embedding, dimensions, timeMs}
    POST /api/embeddings {texts}      -> {embeddings, count, dimensions, timeMs}
"""

from typing import Sequence

import httpx
from loguru import logger

from docembed import config
from docembed.embeddings.batch import validate_batch
from docembed.embeddings.types import (
    ModelSelector,
    ModelState,
    ModelStatus,
    ProgressCallback,
    ProgressEvent,
)
from docembed.errors import InferenceFailure, InvalidInput

ENDPOINT = "/api/embeddings"
WARMUP_TEXT = "warmup"


class RemoteEmbeddings:
    def __init__(
        self,
        base_url: str = config.EMBEDDINGS_SERVER_URL,
        timeout: float = config.REQUEST_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._model_id = config.MODEL_ID

    @property
    def model_id(self) -> str:
        return self._model_id

    async def is_ready(self) -> bool:
        """Readiness probe; any transport or HTTP error means not ready."""
        try:
            response = await self._client.get(ENDPOINT)
        except httpx.HTTPError:
            return False
        if response.status_code != 200:
            return False
        try:
            data = response.json()
        except ValueError:
            return False
        if data.get("model"):
            self._model_id = data["model"]
        return bool(data.get("ready"))

    async def status(self) -> ModelStatus:
        try:
            response = await self._client.get(ENDPOINT)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return ModelStatus(state=ModelState.failed(f"embeddings server unavailable: {exc}"))

        self._model_id = data.get("model") or self._model_id
        state = ModelState.ready() if data.get("ready") else ModelState.uninitialized()
        return ModelStatus(
            state=state,
            selector=ModelSelector(self._model_id, None),
            dimensions=data.get("dimensions"),
        )

    async def init(
        self,
        selector: ModelSelector | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ModelStatus:
        """Warm the server model up when it is not loaded yet."""
        if selector is not None and selector.model_id != self._model_id:
            logger.warning(
                f"Server runs {self._model_id}; requested {selector.model_id} is ignored"
            )

        status = await self.status()
        if status.ready:
            return status

        if on_progress is not None:
            on_progress(ProgressEvent("loading", "Warming up server model", 0.0))
        await self.embed(WARMUP_TEXT)
        if on_progress is not None:
            on_progress(ProgressEvent("ready", "Server model ready", 1.0))
        return await self.status()

    async def embed(self, text: str, identity: str | None = None) -> list[float]:
        if not isinstance(text, str):
            raise InvalidInput("text must be a string")
        data = await self._post({"text": text})
        return data["embedding"]

    async def embed_many(
        self,
        texts: Sequence[str],
        identities: Sequence[str | None] | None = None,
    ) -> list[list[float]]:
        validate_batch(texts, identities)
        data = await self._post({"texts": list(texts)})
        return data["embeddings"]

    async def clear_caches(self) -> None:
        # Server state is process-wide and not owned by this client
        logger.debug("clear_caches() on the remote variant is a no-op")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, payload: dict) -> dict:
        try:
            response = await self._client.post(ENDPOINT, json=payload)
        except httpx.HTTPError as exc:
            raise InferenceFailure(f"embeddings server unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if 400 <= response.status_code < 500:
            raise InvalidInput(data.get("error") or f"HTTP {response.status_code}")
        if response.status_code >= 400:
            message = data.get("error") or f"HTTP {response.status_code}"
            details = data.get("details")
            raise InferenceFailure(f"{message}: {details}" if details else message)
        return data
