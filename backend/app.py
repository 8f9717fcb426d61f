"""
app.py — FastAPI backend for server-side embeddings.

Endpoints:
    GET  /health          — Status check
    GET  /api/embeddings  — Model readiness + static model metadata
    POST /api/embeddings  — {text} or {texts} -> embedding(s)
"""

import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from backend.embedder import ServerEmbedder, get_embedder
from docembed import config
from docembed.errors import EmbeddingError, InferenceFailure, InvalidInput

# ---------------------------------------------------------------------------
# Lifespan: optionally pre-load the embedding model on startup
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Model loads lazily on first request unless EMBEDDINGS_PRELOAD is set
    if config.PRELOAD_MODEL:
        await get_embedder().preload()
    yield


app = FastAPI(title="Embeddings API", lifespan=lifespan)

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class EmbeddingRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str | None = None
    texts: list[str] | None = None


class EmbeddingResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    embedding: list[float]
    dimensions: int
    time_ms: int = Field(alias="timeMs")


class EmbeddingsBatchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    embeddings: list[list[float]]
    count: int
    dimensions: int
    time_ms: int = Field(alias="timeMs")


class EmbeddingStatusResponse(BaseModel):
    ready: bool
    model: str
    dimensions: int


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _describe_validation_error(exc)})


@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(EmbeddingError)
async def embedding_error_handler(request: Request, exc: EmbeddingError):
    logger.error(f"[API Embeddings] {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Error generating embeddings", "details": str(exc)},
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health(embedder: ServerEmbedder = Depends(get_embedder)):
    return {"status": "ok", "model_loaded": embedder.is_ready()}


@app.get("/api/embeddings", response_model=EmbeddingStatusResponse)
async def embeddings_status(embedder: ServerEmbedder = Depends(get_embedder)):
    """Readiness probe. Never triggers a model load."""
    return EmbeddingStatusResponse(
        ready=embedder.is_ready(),
        model=embedder.model_id,
        dimensions=config.EMBEDDING_DIMENSIONS,
    )


@app.post("/api/embeddings")
async def embeddings_endpoint(
    req: EmbeddingRequest,
    embedder: ServerEmbedder = Depends(get_embedder),
):
    """Single text -> {embedding}; list of texts -> {embeddings} (1..100)."""
    if req.text is None and req.texts is None:
        raise InvalidInput('"text" or "texts" is required')

    start = time.perf_counter()
    try:
        if req.text is not None:
            embedding = await embedder.generate_embedding(req.text)
            return EmbeddingResponse(
                embedding=embedding,
                dimensions=len(embedding),
                time_ms=_elapsed_ms(start),
            ).model_dump(by_alias=True)

        embeddings = await embedder.generate_embeddings_batch(req.texts)
    except EmbeddingError:
        raise
    except Exception as exc:
        logger.exception("[API Embeddings] Unexpected error")
        raise InferenceFailure(f"unexpected {type(exc).__name__} while generating embeddings") from exc

    logger.info(f"[API Embeddings] Batch of {len(embeddings)} in {_elapsed_ms(start)}ms")
    return EmbeddingsBatchResponse(
        embeddings=embeddings,
        count=len(embeddings),
        dimensions=len(embeddings[0]) if embeddings else embedder.dimensions,
        time_ms=_elapsed_ms(start),
    ).model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _describe_validation_error(exc: RequestValidationError) -> str:
    """Turn pydantic's error list into one readable line."""
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    if first.get("type") == "json_invalid":
        return "Malformed JSON body"
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
