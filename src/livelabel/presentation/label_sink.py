"""Presentation sink for classification results.

``LabelSink`` is a small actor: producers ``post`` results without waiting,
and a single task on the event loop applies them to the displayed label and
writes the full distribution to the diagnostics logger.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from livelabel.ml.image_classifier import Classification

logger = logging.getLogger(__name__)
diagnostics = logging.getLogger("livelabel.diagnostics")

INITIAL_TEXT = "Looking for objects..."


class LabelSink:
    """Owns the displayed label text."""

    def __init__(self, initial_text: str = INITIAL_TEXT) -> None:
        self._queue: asyncio.Queue[Classification] = asyncio.Queue()
        self._text = initial_text
        self._last: Classification | None = None
        self._updates: int = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def text(self) -> str:
        """Currently displayed label."""
        return self._text

    @property
    def last(self) -> Classification | None:
        return self._last

    @property
    def updates(self) -> int:
        return self._updates

    def post(self, classification: Classification) -> None:
        """Send a result to the sink. Never blocks."""
        self._queue.put_nowait(classification)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="label-sink")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Label sink stopped after %d updates", self._updates)

    async def run(self) -> None:
        """Apply posted results until cancelled."""
        while True:
            classification = await self._queue.get()
            try:
                self.apply(classification)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every posted result has been applied."""
        await self._queue.join()

    def apply(self, classification: Classification) -> None:
        self._text = classification.best_label
        self._last = classification
        self._updates += 1
        if diagnostics.isEnabledFor(logging.DEBUG):
            for label, probability in classification.distribution.items():
                diagnostics.debug("%s = %s", label, probability)
