"""Recognition pipeline: frame channel -> convert -> classify -> label sink."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from livelabel.errors import ClassificationError, ConversionError

if TYPE_CHECKING:
    from livelabel.capture.channel import FrameChannel
    from livelabel.ml.frames import Frame
    from livelabel.ml.image_classifier import Classification, ImageClassifier
    from livelabel.ml.inference import InferencePool
    from livelabel.ml.preprocessing import FrameConverter
    from livelabel.presentation.label_sink import LabelSink

logger = logging.getLogger(__name__)


class RecognitionPipeline:
    """Single consumer of a ``FrameChannel``.

    Each frame is converted and classified in the inference pool, then the
    result is posted to the label sink. Frames that fail for any reason are
    dropped; the loop moves on to the next frame. Frames run on the pool's
    live lane, so upload traffic never delays them.
    """

    def __init__(
        self,
        channel: FrameChannel,
        converter: FrameConverter,
        classifier: ImageClassifier,
        sink: LabelSink,
        pool: InferencePool,
    ) -> None:
        self._channel = channel
        self._converter = converter
        self._classifier = classifier
        self._sink = sink
        self._pool = pool
        self._frames_processed: int = 0
        self._frames_dropped: int = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    @property
    def frames_dropped(self) -> int:
        """Frames lost to conversion or classification failures."""
        return self._frames_dropped

    def process(self, frame: Frame) -> Classification:
        """Convert and classify one frame synchronously.

        Raises:
            ConversionError: If the frame cannot be converted.
            ClassificationError: If the classifier fails.
        """
        width, height = self._classifier.input_size
        buffer = self._converter.convert(frame, width, height, self._classifier.input_encoding)
        return self._classifier.classify(buffer)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="recognition-pipeline")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._channel.clear()
        logger.info(
            "Recognition pipeline stopped (processed=%d, dropped=%d)",
            self._frames_processed,
            self._frames_dropped,
        )

    async def run(self) -> None:
        """Consume frames until cancelled."""
        while True:
            frame = await self._channel.get()
            try:
                await self.handle(frame)
            finally:
                self._channel.task_done()

    async def handle(self, frame: Frame) -> None:
        try:
            result = await self._pool.run_live(self.process, frame)
        except (ConversionError, ClassificationError) as exc:
            self._frames_dropped += 1
            logger.debug("Dropped frame %dx%d: %s", frame.width, frame.height, exc)
            return
        except Exception:
            self._frames_dropped += 1
            logger.exception("Unexpected error on frame %dx%d, dropping it", frame.width, frame.height)
            return

        self._frames_processed += 1
        self._sink.post(result)
