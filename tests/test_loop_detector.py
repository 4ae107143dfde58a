# tests/test_loop_detector.py

import asyncio
import time

import numpy as np
import pytest

from mediaguard.detectors.frames import FramePool
from mediaguard.detectors.tuner import BASE_THRESHOLDS, LoopTuner, RunMetrics, TunerSettings
from mediaguard.detectors.video import (
    LoopAnalysisOptions,
    LoopArtifactDetector,
    decide_loop,
    frame_similarity,
    motion_consistency,
    optical_flow_score,
)

from conftest import FakeFrameSource

URL = "https://cdn.example.org/clips/loop.mp4"


@pytest.fixture
def detector():
    return LoopArtifactDetector(pool=FramePool(capacity=10), tuner=LoopTuner())


# --- Measurements ---

def test_flat_identical_frames_are_fully_similar():
    a = np.full((48, 64), 90, dtype=np.uint8)
    assert frame_similarity(a, a.copy()) == 1.0
    assert frame_similarity(a, np.full((48, 64), 10, dtype=np.uint8)) == 0.0


def test_motion_consistency_needs_three_frames():
    a = np.zeros((48, 64), dtype=np.uint8)
    assert motion_consistency([a, a]) == 0.0
    assert optical_flow_score([a]) == 0.0


def test_decide_loop_requires_every_measurement():
    is_loop, confidence = decide_loop(0.99, 0.0, 0.99, BASE_THRESHOLDS)
    assert not is_loop
    assert confidence == pytest.approx(0.99 * 0.4 + 0.99 * 0.25)

    is_loop, confidence = decide_loop(0.95, 0.95, 0.9, BASE_THRESHOLDS)
    assert is_loop
    assert confidence == pytest.approx(0.95 * 0.4 + 0.95 * 0.35 + 0.9 * 0.25)


# --- Detector ---

@pytest.mark.asyncio
async def test_still_clip_is_not_a_loop_and_buffers_return(detector):
    source = FakeFrameSource()
    result = await detector.analyze(URL, source)

    assert result.error is None
    assert not result.is_loop
    assert result.similarity == pytest.approx(1.0, abs=1e-3)
    assert result.optical_flow_score == 0.0
    assert result.quality == "medium"
    assert result.thresholds == BASE_THRESHOLDS
    assert result.performance.frames_analyzed == 5
    assert detector.pool.in_use == 0
    assert len(detector.tuner.history) == 1


@pytest.mark.asyncio
async def test_vertical_drift_reads_as_circular_flow(detector):
    result = await detector.analyze(URL, FakeFrameSource(shift_px=5, shift_axis=0))
    assert result.optical_flow_score > 0.5


@pytest.mark.asyncio
async def test_horizontal_drift_is_not_circular(detector):
    result = await detector.analyze(URL, FakeFrameSource(shift_px=5, shift_axis=1))
    assert result.optical_flow_score < 0.5


@pytest.mark.asyncio
async def test_capture_failure_is_reported_and_buffers_return(detector):
    result = await detector.analyze(URL, FakeFrameSource(fail_on=3))

    assert result.error.startswith("transient: Failed to capture frame")
    assert not result.is_loop
    assert result.performance.frames_analyzed == 2
    assert detector.pool.in_use == 0
    assert detector.pool.stats()["free"] == 2


@pytest.mark.asyncio
async def test_metadata_failure_is_categorized(detector, mocker):
    source = FakeFrameSource()
    mocker.patch.object(source, "load_metadata", side_effect=MemoryError())

    result = await detector.analyze(URL, source)
    assert result.error.startswith("resource")


@pytest.mark.asyncio
async def test_cancellation_returns_buffers(detector):
    source = FakeFrameSource(hang_on=3)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(detector.analyze(URL, source), timeout=0.3)

    assert source.captures == 3
    assert detector.pool.in_use == 0


@pytest.mark.asyncio
async def test_measurement_does_not_block_the_event_loop(detector):
    source = FakeFrameSource(width=1920, height=1080, shift_px=2)
    stalls = []
    running = True

    async def ticker():
        last = time.perf_counter()
        while running:
            await asyncio.sleep(0.005)
            now = time.perf_counter()
            stalls.append(now - last - 0.005)
            last = now

    ticking = asyncio.ensure_future(ticker())
    result = await detector.analyze(URL, source, LoopAnalysisOptions(quality_mode="thorough"))
    running = False
    await ticking

    assert result.error is None
    assert stalls
    assert max(stalls) < 0.1


@pytest.mark.asyncio
async def test_cancelled_measurement_keeps_buffers_until_worker_finishes(detector, mocker):
    def slow_measure(frames):
        time.sleep(0.3)
        return 0.0, 0.0, 0.0

    mocker.patch("mediaguard.detectors.video.measure_frames", side_effect=slow_measure)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(detector.analyze(URL, FakeFrameSource()), timeout=0.1)

    assert detector.pool.in_use > 0

    await asyncio.sleep(0.5)
    assert detector.pool.in_use == 0


@pytest.mark.asyncio
async def test_heavy_media_is_skipped_when_tuner_says_so():
    tuner = LoopTuner(TunerSettings(skip_frames=True))
    for _ in range(3):
        tuner.history.append(RunMetrics(processing_time_ms=8000.0, frames_analyzed=5))
    detector = LoopArtifactDetector(pool=FramePool(), tuner=tuner)
    source = FakeFrameSource()

    result = await detector.analyze(
        URL, source, LoopAnalysisOptions(file_size=64 * 1024 * 1024)
    )

    assert result.skipped
    assert not result.is_loop
    assert result.error is None
    assert source.captures == 0


@pytest.mark.asyncio
async def test_fast_mode_uses_fewer_frames(detector):
    result = await detector.analyze(URL, FakeFrameSource(), LoopAnalysisOptions(quality_mode="fast"))
    assert result.performance.frames_analyzed == 3
    assert result.performance.memory_used_bytes == 3 * 320 * 240
