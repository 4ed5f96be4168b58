"""Image classification over fixed-format tensor buffers.

The classifier is a black box from the pipeline's point of view: it takes a
``TensorBuffer`` in its declared input size and encoding and returns the
best label together with the full label distribution.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

import numpy as np

from livelabel.errors import ClassificationError, ModelLoadError
from livelabel.ml.frames import PixelEncoding, RowOrientation, TensorBuffer
from livelabel.ml.model_manager import TensorLayout, get_model_spec

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from numpy.typing import NDArray

    from livelabel.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    """Best label plus the label -> probability distribution it was taken from.

    Probabilities are reported as the model produced them; they are not
    renormalized and need not sum to exactly 1.0.
    """

    best_label: str
    distribution: Mapping[str, float]

    def __post_init__(self) -> None:
        if self.best_label not in self.distribution:
            raise ClassificationError(f"Best label {self.best_label!r} is not in the distribution")
        object.__setattr__(self, "distribution", MappingProxyType(dict(self.distribution)))

    @classmethod
    def from_scores(cls, labels: Sequence[str], scores: Sequence[float]) -> Classification:
        """Build a classification by taking the argmax of ``scores``."""
        if len(labels) != len(scores):
            raise ClassificationError(f"Model produced {len(scores)} scores for {len(labels)} labels")
        if not labels:
            raise ClassificationError("Model produced no scores")
        best = max(range(len(scores)), key=scores.__getitem__)
        return cls(
            best_label=labels[best],
            distribution={label: float(score) for label, score in zip(labels, scores, strict=True)},
        )

    def top(self, k: int) -> list[tuple[str, float]]:
        """Return the ``k`` most probable labels, highest first."""
        return sorted(self.distribution.items(), key=lambda item: item[1], reverse=True)[:k]


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def input_size(self) -> tuple[int, int]:
        """Return the expected ``(width, height)`` of input buffers."""
        ...

    @property
    def input_encoding(self) -> PixelEncoding:
        """Return the expected pixel encoding of input buffers."""
        ...

    def classify(self, buffer: TensorBuffer) -> Classification:
        """Classify a tensor buffer.

        Raises:
            ClassificationError: If the model cannot produce a result.
        """
        ...


class OnnxImageClassifier:
    """ONNX Runtime classifier fed with 4-channel ARGB tensor buffers."""

    input_encoding: PixelEncoding = PixelEncoding.ARGB32

    def __init__(self, model_manager: ModelManager, model_name: str) -> None:
        self._manager = model_manager
        self._spec = get_model_spec(model_name)
        self._mean = np.asarray(self._spec.mean, dtype=np.float32)
        self._std = np.asarray(self._spec.std, dtype=np.float32)
        self._labels: list[str] | None = None
        self._labels_lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def input_size(self) -> tuple[int, int]:
        return self._spec.input_width, self._spec.input_height

    def load(self) -> None:
        """Fetch labels and create the inference session ahead of the first frame.

        Raises:
            ModelLoadError: If the model or label file cannot be fetched, or
                onnxruntime rejects the model.
        """
        try:
            self._get_labels()
            self._manager.get_session(self._spec.name)
        except Exception as exc:  # noqa: BLE001 - hub and onnxruntime failures share no base class
            raise ModelLoadError(
                f"Cannot load model {self._spec.name}: {exc}",
                {"model": self._spec.name, "repo_id": self._spec.repo_id},
            ) from exc
        logger.info("Classifier %s ready (%dx%d)", self._spec.name, *self.input_size)

    def classify(self, buffer: TensorBuffer) -> Classification:
        self._check_buffer(buffer)
        tensor = self._to_model_input(buffer)
        try:
            labels = self._get_labels()
            session = self._manager.get_session(self._spec.name)
            input_name = session.get_inputs()[0].name
            outputs = session.run(None, {input_name: tensor})
            return self._to_classification(labels, outputs)
        except ClassificationError:
            raise
        except Exception as exc:  # noqa: BLE001 - onnxruntime raises non-RuntimeError native errors
            raise ClassificationError(f"Inference failed for {self._spec.name}: {exc}") from exc

    # -- Internal -----------------------------------------------------------

    def _to_classification(self, labels: list[str], outputs: Sequence[object]) -> Classification:
        if not outputs:
            raise ClassificationError(f"{self._spec.name} produced no outputs")
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if self._spec.outputs_logits:
            scores = _softmax(scores)
        return Classification.from_scores(labels, scores.tolist())

    def _check_buffer(self, buffer: TensorBuffer) -> None:
        if buffer.encoding is not self.input_encoding:
            raise ClassificationError(f"Expected {self.input_encoding} input, got {buffer.encoding}")
        if (buffer.width, buffer.height) != self.input_size:
            raise ClassificationError(
                f"Expected {self._spec.input_width}x{self._spec.input_height} input, "
                f"got {buffer.width}x{buffer.height}"
            )

    def _to_model_input(self, buffer: TensorBuffer) -> NDArray[np.float32]:
        pixels = buffer.to_orientation(RowOrientation.TOP_DOWN).data
        order = buffer.encoding.channel_order
        rgb = pixels[..., [order.index(ch) for ch in "RGB"]].astype(np.float32) / 255.0
        rgb = (rgb - self._mean) / self._std
        if self._spec.layout is TensorLayout.NCHW:
            rgb = np.transpose(rgb, (2, 0, 1))
        return np.ascontiguousarray(rgb[np.newaxis], dtype=np.float32)

    def _get_labels(self) -> list[str]:
        with self._labels_lock:
            if self._labels is None:
                path = self._manager.ensure_labels(self._spec.name)
                lines = path.read_text(encoding="utf-8").splitlines()
                self._labels = [line.strip() for line in lines if line.strip()]
                logger.info("Loaded %d labels for %s", len(self._labels), self._spec.name)
            return self._labels


def _softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(scores - scores.max())
    return shifted / shifted.sum()
