"""Tests for the live/upload inference pool."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import pytest

from livelabel.config import Settings
from livelabel.ml.inference import InferencePool, Lane

if TYPE_CHECKING:
    from collections.abc import Iterator


def _fail() -> None:
    raise ValueError("bad frame")


async def _wait_until_active(pool: InferencePool, count: int) -> None:
    for _ in range(500):
        if pool.active_count == count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"pool never reached {count} active calls")


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    """Pool with a single upload slot."""
    inference_pool = InferencePool(Settings(max_concurrent=1))
    yield inference_pool
    inference_pool.shutdown()


class TestInferencePool:
    async def test_live_lane_runs_while_uploads_are_saturated(self, pool: InferencePool) -> None:
        gate = threading.Event()
        upload = asyncio.create_task(pool.run_upload(gate.wait, 5.0))
        try:
            await _wait_until_active(pool, 1)

            result = await asyncio.wait_for(pool.run_live(str.upper, "frame"), timeout=2.0)

            assert result == "FRAME"
            assert pool.stats(Lane.LIVE).completed == 1
        finally:
            gate.set()
            await upload
        assert pool.stats(Lane.UPLOAD).completed == 1

    async def test_upload_times_out_when_slots_are_taken(
        self, pool: InferencePool, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("livelabel.ml.inference.UPLOAD_ACQUIRE_TIMEOUT_SECONDS", 0.05)
        gate = threading.Event()
        first = asyncio.create_task(pool.run_upload(gate.wait, 5.0))
        try:
            await _wait_until_active(pool, 1)
            with pytest.raises(TimeoutError):
                await pool.run_upload(str.upper, "late")
            assert pool.queue_depth == 0
        finally:
            gate.set()
            await first

    async def test_live_busy_while_frame_runs(self, pool: InferencePool) -> None:
        gate = threading.Event()
        live = asyncio.create_task(pool.run_live(gate.wait, 5.0))
        try:
            await _wait_until_active(pool, 1)
            assert pool.live_busy
            assert pool.queue_depth == 0
        finally:
            gate.set()
            await live
        assert not pool.live_busy

    async def test_failures_are_counted_per_lane(self, pool: InferencePool) -> None:
        with pytest.raises(ValueError, match="bad frame"):
            await pool.run_live(_fail)
        assert await pool.run_upload(str.upper, "ok") == "OK"

        live = pool.stats(Lane.LIVE)
        upload = pool.stats(Lane.UPLOAD)
        assert (live.completed, live.failed, live.active) == (0, 1, 0)
        assert (upload.completed, upload.failed, upload.active) == (1, 0, 0)

    def test_shutdown_is_idempotent(self, pool: InferencePool) -> None:
        pool.shutdown()
        pool.shutdown()
        assert pool.closed
