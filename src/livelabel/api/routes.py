"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import cv2
import numpy as np
from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from livelabel.api.middleware import verify_api_key
from livelabel.api.schemas import (
    CaptureStats,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    LabelResponse,
    LabelScore,
    ModelInfo,
    ModelsResponse,
)
from livelabel.errors import ClassificationError, ConversionError
from livelabel.ml.frames import Frame, PixelEncoding
from livelabel.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from livelabel.capture.camera import CaptureSession
    from livelabel.capture.channel import FrameChannel
    from livelabel.capture.pipeline import RecognitionPipeline
    from livelabel.config import Settings
    from livelabel.ml.image_classifier import Classification
    from livelabel.ml.inference import InferencePool
    from livelabel.ml.model_manager import ModelManager
    from livelabel.presentation.label_sink import LabelSink

logger = logging.getLogger(__name__)

HTTP_413_CONTENT_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE_CONTENT = 422

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _top_scores(classification: Classification, k: int) -> list[LabelScore]:
    return [LabelScore(label=label, probability=p) for label, p in classification.top(k)]


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.get(
    "/label",
    response_model=LabelResponse,
    summary="Currently displayed label",
)
async def current_label(request: Request) -> LabelResponse:
    """Return the label the live camera pipeline is currently showing."""
    settings = _get_settings(request)
    sink: LabelSink = request.app.state.label_sink
    last = sink.last
    return LabelResponse(
        text=sink.text,
        best_label=last.best_label if last is not None else None,
        top=_top_scores(last, settings.top_k) if last is not None else [],
        updates=sink.updates,
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an uploaded image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Run an uploaded image through the same conversion and classifier as camera frames."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    pipeline: RecognitionPipeline = request.app.state.pipeline

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(HTTP_413_CONTENT_TOO_LARGE, "Image exceeds the maximum file size")
    if not data:
        return _error(HTTP_422_UNPROCESSABLE_CONTENT, "Could not decode image")

    try:
        image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    except cv2.error:
        image = None
    if image is None:
        return _error(HTTP_422_UNPROCESSABLE_CONTENT, "Could not decode image")

    frame = Frame.from_array(image, PixelEncoding.BGR24)
    try:
        result = await pool.run_upload(pipeline.process, frame)
    except ConversionError as exc:
        return _error(HTTP_422_UNPROCESSABLE_CONTENT, exc.message)
    except ClassificationError as exc:
        logger.warning("Classification failed for upload %s: %s", file.filename, exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Classification failed")
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference capacity exhausted, retry later")

    return ClassifyImageResponse(best_label=result.best_label, top=_top_scores(result, settings.top_k))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager: ModelManager = request.app.state.model_manager
    channel: FrameChannel = request.app.state.frame_channel
    pipeline: RecognitionPipeline = request.app.state.pipeline
    capture: CaptureSession | None = request.app.state.capture
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        capture=CaptureStats(
            running=capture is not None and capture.running,
            frames_captured=capture.frames_captured if capture is not None else 0,
            frames_processed=pipeline.frames_processed,
            frames_dropped=pipeline.frames_dropped,
            frames_skipped=channel.dropped_count,
        ),
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available classification models and which one is active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            input_size=f"{spec.input_width}x{spec.input_height}",
            status="active" if spec.name == settings.classification_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
