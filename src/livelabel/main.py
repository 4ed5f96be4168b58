"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from livelabel.config import Settings
    from livelabel.ml.image_classifier import ImageClassifier
    from livelabel.ml.model_manager import ModelManager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livelabel.api.routes import router
from livelabel.capture.camera import CaptureSession
from livelabel.capture.channel import FrameChannel
from livelabel.capture.pipeline import RecognitionPipeline
from livelabel.config import get_settings
from livelabel.errors import StartupError
from livelabel.ml.image_classifier import OnnxImageClassifier
from livelabel.ml.inference import InferencePool
from livelabel.ml.model_manager import OnnxModelManager
from livelabel.ml.preprocessing import FrameConverter, ResizeMode
from livelabel.presentation.label_sink import LabelSink

logger = logging.getLogger(__name__)

MIN_EVICTION_INTERVAL_SECONDS: float = 1.0


def init_state(app: FastAPI, settings: Settings, classifier: ImageClassifier | None = None) -> None:
    """Wire the pipeline components into ``app.state`` without starting them."""
    model_manager = OnnxModelManager(settings)
    if classifier is None:
        classifier = OnnxImageClassifier(model_manager, settings.classification_model)

    pool = InferencePool(settings)
    channel = FrameChannel()
    sink = LabelSink()
    pipeline = RecognitionPipeline(
        channel=channel,
        converter=FrameConverter(ResizeMode(settings.resize_mode)),
        classifier=classifier,
        sink=sink,
        pool=pool,
    )

    app.state.settings = settings
    app.state.model_manager = model_manager
    app.state.classifier = classifier
    app.state.inference_pool = pool
    app.state.frame_channel = channel
    app.state.label_sink = sink
    app.state.pipeline = pipeline
    app.state.capture = None
    app.state.eviction_task = None


async def evict_idle_models(model_manager: ModelManager, interval: float) -> None:
    """Drop sessions idle for longer than the model TTL, every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        model_manager.unload_idle_models()


def start_model_eviction(app: FastAPI) -> None:
    """Schedule idle-session eviction; a TTL of 0 keeps sessions forever."""
    settings: Settings = app.state.settings
    if settings.model_ttl == 0 or app.state.eviction_task is not None:
        return
    interval = max(settings.model_ttl / 2, MIN_EVICTION_INTERVAL_SECONDS)
    app.state.eviction_task = asyncio.create_task(
        evict_idle_models(app.state.model_manager, interval),
        name="model-eviction",
    )


async def shutdown_state(app: FastAPI) -> None:
    """Stop capture first, then the consumers, then release models and threads."""
    capture: CaptureSession | None = app.state.capture
    if capture is not None:
        capture.stop()
        app.state.capture = None
    eviction_task: asyncio.Task[None] | None = app.state.eviction_task
    if eviction_task is not None:
        eviction_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction_task
        app.state.eviction_task = None
    await app.state.pipeline.stop()
    await app.state.label_sink.stop()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()


async def start_state(app: FastAPI) -> None:
    """Load the model, start the consumers and open the camera.

    Raises:
        StartupError: After logging it once and releasing everything
            ``init_state`` created.
    """
    settings: Settings = app.state.settings
    try:
        classifier = app.state.classifier
        if isinstance(classifier, OnnxImageClassifier):
            classifier.load()

        app.state.label_sink.start()
        app.state.pipeline.start()
        start_model_eviction(app)

        if settings.capture_enabled:
            channel: FrameChannel = app.state.frame_channel
            capture = CaptureSession(
                settings,
                on_frame=functools.partial(channel.offer_threadsafe, asyncio.get_running_loop()),
            )
            capture.start()
            app.state.capture = capture
    except StartupError as exc:
        logger.error("Startup failed: %s", exc.message)
        await shutdown_state(app)
        raise


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting LiveLabel (device=%s, model=%s, capture=%s, camera=%s)",
        settings.device,
        settings.classification_model,
        settings.capture_enabled,
        settings.camera_index,
    )

    init_state(app, settings)
    await start_state(app)

    logger.info("LiveLabel ready")
    yield

    logger.info("Shutting down LiveLabel")
    await shutdown_state(app)
    logger.info("LiveLabel shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LiveLabel",
        description="Live camera image classification with a label status API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def main() -> None:
    """Serve the application with uvicorn."""
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
