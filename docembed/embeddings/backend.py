"""
backend.py — Inference backend adapter.

Wraps a sentence-transformers model behind embed(text) -> vector.
Vectors are mean-pooled and L2-normalized, so two devices running the same
model produce vectors usable interchangeably for ranking (not bit-identical).

Truncation: inputs longer than the model's max_seq_length tokens
(512 for multilingual-e5-small) are cut by the tokenizer. Deterministic.
"""

from typing import Callable, Protocol, Sequence

from loguru import logger
from tqdm.auto import tqdm

from docembed import config
from docembed.embeddings.types import Device


class InferenceBackend(Protocol):
    model_id: str
    device: Device
    dimensions: int
    max_concurrency: int

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...

    def close(self) -> None: ...


# (model_id, device, report) -> backend; report takes a fraction in [0, 1]
BackendLoader = Callable[[str, Device, Callable[[float], None]], InferenceBackend]


class SentenceTransformerBackend:
    """CPU or GPU embedding backend using Sentence-Transformers."""

    def __init__(
        self,
        model,
        model_id: str,
        device: Device,
        encode_batch_size: int = config.ENCODE_BATCH_SIZE,
    ):
        self.model = model
        self.model_id = model_id
        self.device = device
        self.encode_batch_size = encode_batch_size
        self.dimensions = model.get_sentence_embedding_dimension()
        # A single accelerator serializes kernels anyway
        self.max_concurrency = 1 if device is Device.WEBGPU else max(1, config.INFERENCE_CONCURRENCY)

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = self.model.encode(
            list(texts),
            batch_size=self.encode_batch_size,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return vectors.tolist()

    def close(self) -> None:
        on_gpu = self.device is Device.WEBGPU
        self.model = None
        if on_gpu:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()


def _reporting_bar(report: Callable[[float], None], span: float):
    """tqdm subclass that forwards completed/total (scaled by span) to report."""

    class _ReportingBar(tqdm):
        def __init__(self, *args, **kwargs):
            kwargs["disable"] = False
            super().__init__(*args, **kwargs)

        def update(self, n=1):
            displayed = super().update(n)
            if self.total:
                report(min(self.n / self.total, 1.0) * span)
            return displayed

    return _ReportingBar


# Weights in formats sentence-transformers never loads
IGNORED_MODEL_FILES = [
    "onnx/*",
    "openvino/*",
    "coreml/*",
    "*.onnx",
    "*.h5",
    "*.msgpack",
    "*.ot",
    "tf_model*",
    "flax_model*",
    "rust_model*",
]


def fetch_model_files(model_id: str, report: Callable[[float], None], span: float = 0.8) -> str:
    """Download the PyTorch checkpoint of model_id (or reuse the hub cache); returns its local path."""
    from huggingface_hub import snapshot_download

    logger.info(f"Fetching model files: model={model_id}")
    local_path = snapshot_download(
        repo_id=model_id,
        ignore_patterns=IGNORED_MODEL_FILES,
        tqdm_class=_reporting_bar(report, span),
    )
    report(span)
    return local_path


def load_sentence_transformer(
    model_id: str,
    device: Device,
    report: Callable[[float], None],
) -> SentenceTransformerBackend:
    """Download (or reuse the hub cache for) model_id and load it on device."""
    from sentence_transformers import SentenceTransformer

    # Resolved first: a missing accelerator fails before anything is downloaded
    torch_device = device.torch_device
    local_path = fetch_model_files(model_id, report)

    logger.info(f"Loading model: model={model_id}, device={device.value} ({torch_device})")
    model = SentenceTransformer(local_path, device=torch_device)
    report(0.95)

    return SentenceTransformerBackend(model, model_id=model_id, device=device)
