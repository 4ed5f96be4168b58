"""Inference concurrency layer.

Architecture:
    live pipeline (one frame at a time)
        -> live lane: ThreadPoolExecutor(1) -> convert + classify
    upload endpoint (async, many callers)
        -> asyncio.Semaphore(N) -> upload lane: ThreadPoolExecutor(N) -> convert + classify

Conversion and ONNX inference are synchronous and CPU bound, so both lanes
run them in worker threads and the event loop (label sink, HTTP surface)
stays responsive. The live lane has its own worker and never queues behind
uploads: a camera frame that waited for upload traffic would be stale by the
time it ran. Uploads wait up to ``UPLOAD_ACQUIRE_TIMEOUT_SECONDS`` for a
slot, then get ``TimeoutError``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from livelabel.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

UPLOAD_ACQUIRE_TIMEOUT_SECONDS: float = 5.0


class Lane(StrEnum):
    LIVE = "live"
    UPLOAD = "upload"


@dataclass
class LaneStats:
    active: int = 0
    waiting: int = 0
    completed: int = 0
    failed: int = 0


class InferencePool:
    """Runs frame inference off the event loop on a live lane and an upload lane."""

    def __init__(self, settings: Settings) -> None:
        self._upload_slots = asyncio.Semaphore(settings.max_concurrent)
        self._executors: dict[Lane, ThreadPoolExecutor] = {
            Lane.LIVE: ThreadPoolExecutor(max_workers=1, thread_name_prefix="live-inference"),
            Lane.UPLOAD: ThreadPoolExecutor(
                max_workers=settings.max_concurrent,
                thread_name_prefix="upload-inference",
            ),
        }
        self._stats: dict[Lane, LaneStats] = {lane: LaneStats() for lane in Lane}
        self._counter_lock = threading.Lock()
        self._closed = False

    async def run_live(self, func: Callable[..., T], *args: object) -> T:
        """Run one live frame on the dedicated single-worker lane.

        The caller guarantees that live calls never overlap; the recognition
        pipeline's single consumer does.
        """
        return await self._execute(Lane.LIVE, func, *args)

    async def run_upload(self, func: Callable[..., T], *args: object) -> T:
        """Run an uploaded image through the shared upload lane.

        Raises:
            TimeoutError: If no slot frees up within ``UPLOAD_ACQUIRE_TIMEOUT_SECONDS``.
        """
        stats = self._stats[Lane.UPLOAD]
        with self._counter_lock:
            stats.waiting += 1
        try:
            await asyncio.wait_for(self._upload_slots.acquire(), timeout=UPLOAD_ACQUIRE_TIMEOUT_SECONDS)
        finally:
            with self._counter_lock:
                stats.waiting -= 1

        try:
            return await self._execute(Lane.UPLOAD, func, *args)
        finally:
            self._upload_slots.release()

    @property
    def active_count(self) -> int:
        """Number of inference calls running on either lane."""
        with self._counter_lock:
            return sum(stats.active for stats in self._stats.values())

    @property
    def queue_depth(self) -> int:
        """Number of uploads waiting for a slot."""
        with self._counter_lock:
            return self._stats[Lane.UPLOAD].waiting

    @property
    def live_busy(self) -> bool:
        with self._counter_lock:
            return self._stats[Lane.LIVE].active > 0

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self, lane: Lane) -> LaneStats:
        """Return a snapshot of one lane's counters."""
        with self._counter_lock:
            return dataclasses.replace(self._stats[lane])

    def shutdown(self) -> None:
        """Shut down both executors, waiting for running calls to finish."""
        if self._closed:
            return
        self._closed = True
        for executor in self._executors.values():
            executor.shutdown(wait=True)
        live, upload = self.stats(Lane.LIVE), self.stats(Lane.UPLOAD)
        logger.info(
            "Inference pool stopped (live: %d ok / %d failed, upload: %d ok / %d failed)",
            live.completed,
            live.failed,
            upload.completed,
            upload.failed,
        )

    # -- Internal -----------------------------------------------------------

    async def _execute(self, lane: Lane, func: Callable[..., T], *args: object) -> T:
        stats = self._stats[lane]
        with self._counter_lock:
            stats.active += 1
        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._executors[lane], func, *args)
        except Exception:
            with self._counter_lock:
                stats.failed += 1
            raise
        finally:
            with self._counter_lock:
                stats.active -= 1

        with self._counter_lock:
            stats.completed += 1
        return result
