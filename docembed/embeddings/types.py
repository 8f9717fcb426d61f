"""
Value types for the embedding pipeline.

ModelSelector identifies a (model, device) pair, ModelState is the lifecycle
phase owned by a ModelLifecycleManager, ProgressEvent is what progress
callbacks receive.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, NamedTuple

from docembed import config


class Device(str, Enum):
    """Acceleration backend for local inference."""

    WEBGPU = "webgpu"  # accelerated: cuda / mps
    WASM = "wasm"      # portable: cpu

    @property
    def torch_device(self) -> str:
        if self is Device.WASM:
            return "cpu"
        import torch

        if torch.cuda.is_available():
            return "cuda"
        if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
            return "mps"
        raise RuntimeError("no GPU/MPS accelerator available")


class ModelSelector(NamedTuple):
    """Which model to run and on which device. device=None means best available."""

    model_id: str = config.MODEL_ID
    device: Device | None = None

    @classmethod
    def of(cls, model_id: str | None = None, device: str | Device | None = None) -> "ModelSelector":
        return cls(
            model_id=model_id or config.MODEL_ID,
            device=Device(device) if device else None,
        )

    def candidates(self) -> list[Device]:
        """Devices to try in order: an explicit device is tried alone."""
        if self.device is not None:
            return [self.device]
        return [Device.WEBGPU, Device.WASM]

    def matches(self, active: "ModelSelector | None") -> bool:
        """True when a loaded `active` selector satisfies this request."""
        if active is None or active.model_id != self.model_id:
            return False
        return self.device is None or self.device == active.device


class ModelPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ModelState:
    phase: ModelPhase = ModelPhase.UNINITIALIZED
    progress: float = 0.0
    reason: str | None = None

    @classmethod
    def uninitialized(cls) -> "ModelState":
        return cls()

    @classmethod
    def loading(cls, progress: float = 0.0) -> "ModelState":
        return cls(ModelPhase.LOADING, progress=progress)

    @classmethod
    def ready(cls) -> "ModelState":
        return cls(ModelPhase.READY, progress=1.0)

    @classmethod
    def failed(cls, reason: str) -> "ModelState":
        return cls(ModelPhase.FAILED, reason=reason)


@dataclass(frozen=True)
class ModelStatus:
    """Snapshot returned by status()."""

    state: ModelState
    selector: ModelSelector | None = None
    dimensions: int | None = None

    @property
    def ready(self) -> bool:
        return self.state.phase is ModelPhase.READY

    def to_dict(self) -> dict:
        return {
            "ready": self.ready,
            "phase": self.state.phase.value,
            "progress": self.state.progress,
            "reason": self.state.reason,
            "model": self.selector.model_id if self.selector else None,
            "device": self.selector.device.value if self.selector and self.selector.device else None,
            "dimensions": self.dimensions,
        }


@dataclass(frozen=True)
class ProgressEvent:
    phase: str          # loading | running | cached | ready
    label: str
    progress: float = field(default=0.0)


ProgressCallback = Callable[[ProgressEvent], None]
