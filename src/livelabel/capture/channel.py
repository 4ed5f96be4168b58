"""Single-slot frame channel with drop-newest-if-busy backpressure.

The channel sits between the camera thread (producer) and the recognition
pipeline (single consumer). It holds at most one frame, counting the frame
the consumer is currently working on. While a frame is pending or in flight,
newly offered frames are dropped; the producer is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from livelabel.ml.frames import Frame

logger = logging.getLogger(__name__)


class FrameChannel:
    """Hands frames from the capture thread to one consumer task.

    Example:
        channel = FrameChannel()

        # Producer (camera thread)
        channel.offer_threadsafe(loop, frame)

        # Consumer task
        frame = await channel.get()
        try:
            process(frame)
        finally:
            channel.task_done()
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Frame] = asyncio.Queue(maxsize=1)
        self._in_flight: bool = False
        self._dropped_count: int = 0
        self._total_offered: int = 0

    @property
    def busy(self) -> bool:
        """Whether a frame is pending or being processed."""
        return self._in_flight or not self._queue.empty()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def dropped_count(self) -> int:
        """Number of frames dropped because the consumer was busy."""
        return self._dropped_count

    @property
    def total_offered(self) -> int:
        return self._total_offered

    def offer(self, frame: Frame) -> bool:
        """Offer a frame without blocking.

        Must be called from the event loop thread.

        Returns:
            True if the frame was accepted, False if it was dropped.
        """
        self._total_offered += 1
        if self.busy:
            self._dropped_count += 1
            logger.debug("Consumer busy, dropped frame (total dropped: %d)", self._dropped_count)
            return False
        self._queue.put_nowait(frame)
        return True

    def offer_threadsafe(self, loop: asyncio.AbstractEventLoop, frame: Frame) -> None:
        """Schedule ``offer`` on ``loop`` from another thread."""
        loop.call_soon_threadsafe(self.offer, frame)

    async def get(self) -> Frame:
        """Wait for the next frame and mark it in flight."""
        frame = await self._queue.get()
        self._in_flight = True
        return frame

    def task_done(self) -> None:
        """Mark the in-flight frame as finished."""
        self._in_flight = False
        self._queue.task_done()

    def clear(self) -> int:
        """Discard a pending frame, if any. Returns the number discarded."""
        cleared = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            cleared += 1
        return cleared

    def metrics(self) -> dict[str, int | bool]:
        """Channel counters for the health endpoint."""
        return {
            "in_flight": self._in_flight,
            "pending": self._queue.qsize(),
            "dropped_count": self._dropped_count,
            "total_offered": self._total_offered,
        }
