"""
config.py — Runtime configuration for the embedding service.

Values come from the environment (a local .env is loaded first).
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _int_or_none(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return int(raw)


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------
# multilingual-e5-small: 384-dim, expects "passage: " / "query: " prefixes
MODEL_ID = os.getenv("EMBEDDINGS_MODEL_ID", "intfloat/multilingual-e5-small")
EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDINGS_DIMENSIONS", "384"))

# "webgpu" | "wasm" | unset (best available, with fallback)
DEFAULT_DEVICE = os.getenv("EMBEDDINGS_DEVICE") or None

# ---------------------------------------------------------------------------
# Batching / caching
# ---------------------------------------------------------------------------
MAX_BATCH_SIZE = 100
CACHE_MAX_ENTRIES = _int_or_none("EMBEDDINGS_CACHE_MAX_ENTRIES")
INFERENCE_CONCURRENCY = int(os.getenv("EMBEDDINGS_CONCURRENCY", "2"))
ENCODE_BATCH_SIZE = int(os.getenv("EMBEDDINGS_ENCODE_BATCH_SIZE", "32"))

# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
# "auto" probes the server first, "server" / "local" force a variant
EMBEDDINGS_MODE = os.getenv("EMBEDDINGS_MODE", "auto").lower()
EMBEDDINGS_SERVER_URL = os.getenv("EMBEDDINGS_SERVER_URL", "http://localhost:8000")
REQUEST_TIMEOUT_S = float(os.getenv("EMBEDDINGS_TIMEOUT_S", "300"))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
PRELOAD_MODEL = _flag("EMBEDDINGS_PRELOAD")
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:4321"
).split(",")

# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------
DRAFT_KEY = "ai-editor:draft"
DRAFT_STORAGE_PATH = os.getenv("DRAFT_STORAGE_PATH", ".docembed/drafts.json")
