"""Camera capture session.

``CaptureSession`` owns the OpenCV ``VideoCapture`` handle and the reader
thread. Frames are delivered one at a time to an ``on_frame`` callback on
the reader thread; the callback must not block (the pipeline wires it to
``FrameChannel.offer_threadsafe``).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import cv2

from livelabel.errors import DeviceUnavailableError, InputAttachError
from livelabel.ml.frames import Frame, PixelEncoding

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from livelabel.config import Settings

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECONDS: float = 2.0


@dataclass
class _ReaderState:
    stop: threading.Event = field(default_factory=threading.Event)
    done: bool = False
    release_on_exit: bool = False


class CaptureSession:
    """Explicit start/stop lifecycle around a camera device."""

    def __init__(self, settings: Settings, on_frame: Callable[[Frame], None]) -> None:
        self._camera_index = settings.camera_index
        self._width = settings.capture_width
        self._height = settings.capture_height
        self._on_frame = on_frame

        self._capture: cv2.VideoCapture | None = None
        self._thread: threading.Thread | None = None
        self._release_lock = threading.Lock()
        self._reader: _ReaderState | None = None
        self._frames_captured: int = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def frames_captured(self) -> int:
        return self._frames_captured

    def start(self) -> None:
        """Open the camera and start delivering frames.

        Raises:
            DeviceUnavailableError: If the camera cannot be opened.
            InputAttachError: If the camera opens but delivers no frames.
        """
        if self._capture is not None:
            return

        capture = cv2.VideoCapture(self._camera_index)
        if not capture.isOpened():
            capture.release()
            raise DeviceUnavailableError(
                f"Can't open capture device {self._camera_index}",
                {"camera_index": self._camera_index},
            )

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        ok, probe = capture.read()
        if not ok or probe is None:
            capture.release()
            raise InputAttachError(
                f"Capture device {self._camera_index} delivered no frames",
                {"camera_index": self._camera_index},
            )

        self._capture = capture
        self._reader = _ReaderState()
        self._thread = threading.Thread(
            target=self._read_loop,
            args=(capture, self._reader),
            name="camera-capture",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Capture started on device %d (%dx%d)",
            self._camera_index,
            probe.shape[1],
            probe.shape[0],
        )

    def stop(self) -> None:
        """Stop the reader thread and release the camera.

        If the reader is stuck inside ``read()`` past ``STOP_TIMEOUT_SECONDS``
        the device is handed over to the reader, which releases it on exit.
        """
        thread, self._thread = self._thread, None
        capture, self._capture = self._capture, None
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.stop.set()
        if capture is None:
            return
        if thread is not None and reader is not None:
            thread.join(timeout=STOP_TIMEOUT_SECONDS)
            with self._release_lock:
                if not reader.done:
                    reader.release_on_exit = True
                    logger.warning(
                        "Capture reader on device %d did not stop within %.1fs; it releases the device on exit",
                        self._camera_index,
                        STOP_TIMEOUT_SECONDS,
                    )
                    return
        capture.release()
        logger.info("Capture stopped after %d frames", self._frames_captured)

    def __enter__(self) -> CaptureSession:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    def _read_loop(self, capture: cv2.VideoCapture, reader: _ReaderState) -> None:
        try:
            while not reader.stop.is_set():
                ok, image = capture.read()
                if reader.stop.is_set():
                    break
                if not ok or image is None:
                    logger.warning("Capture device %d stopped delivering frames", self._camera_index)
                    break
                self._frames_captured += 1
                self._on_frame(Frame.from_array(image, PixelEncoding.BGR24))
        finally:
            with self._release_lock:
                reader.done = True
                if reader.release_on_exit:
                    capture.release()
                    logger.info("Capture device %d released by its reader", self._camera_index)
