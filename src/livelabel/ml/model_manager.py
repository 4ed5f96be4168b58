"""Model manager: download, load, cache, and evict ONNX classification models.

Handles fetching model and label files from HuggingFace (or reusing copies
already present in the models directory), creating and caching ONNX
InferenceSessions, and TTL-based eviction.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from livelabel.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def ensure_labels(self, model_name: str) -> Path:
        """Ensure a model's label file is downloaded and return its path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class TensorLayout(StrEnum):
    NCHW = "NCHW"
    NHWC = "NHWC"


IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    input_width: int
    input_height: int
    layout: TensorLayout
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    outputs_logits: bool
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "inception_v3": ModelSpec(
        name="inception_v3",
        repo_id="livelabel/classification-models",
        filename="inception_v3.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        input_width=299,
        input_height=299,
        layout=TensorLayout.NCHW,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        outputs_logits=True,
        license="BSD-3-Clause",
    ),
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id="livelabel/classification-models",
        filename="mobilenet_v2.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        input_width=224,
        input_height=224,
        layout=TensorLayout.NCHW,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        outputs_logits=True,
        license="BSD-3-Clause",
    ),
    "resnet50": ModelSpec(
        name="resnet50",
        repo_id="livelabel/classification-models",
        filename="resnet50.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        input_width=224,
        input_height=224,
        layout=TensorLayout.NCHW,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        outputs_logits=True,
        license="BSD-3-Clause",
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry, raising ``KeyError`` for unknown names."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Downloads, loads, caches, and evicts ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._model_paths: dict[str, Path] = {}
        self._label_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = get_model_spec(model_name)
        return self._fetch(spec, spec.filename, self._model_paths, model_name)

    def ensure_labels(self, model_name: str) -> Path:
        """Download a model's label file if not already present locally."""
        spec = get_model_spec(model_name)
        return self._fetch(spec, spec.labels_filename, self._label_paths, model_name)

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._sessions[model_name] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._sessions[name]
                logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _fetch(self, spec: ModelSpec, filename: str, cache: dict[str, Path], model_name: str) -> Path:
        cached = cache.get(model_name)
        if cached is not None and cached.exists():
            return cached

        local = self._models_dir / spec.subfolder / filename if spec.subfolder else self._models_dir / filename
        if local.exists():
            cache[model_name] = local
            return local

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        cache[model_name] = downloaded
        logger.info("Downloaded %s for %s to %s", filename, model_name, downloaded)
        return downloaded

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
