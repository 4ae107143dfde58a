# tests/test_frames.py

import numpy as np
import pytest

from mediaguard.detectors.frames import (
    FramePool,
    VideoMetadata,
    file_extension,
    is_supported_format,
    plan_strategy,
    to_gray_into,
    video_complexity,
)
from mediaguard.detectors.tuner import TunerSettings


# --- Pool ---

def test_checkout_hands_out_distinct_buffers():
    pool = FramePool(capacity=4)
    a = pool.checkout(64, 48)
    b = pool.checkout(64, 48)

    assert a is not b
    assert a.shape == (48, 64)
    assert a.dtype == np.uint8
    assert pool.in_use == 2


def test_returned_buffers_are_reused():
    pool = FramePool(capacity=4)
    a = pool.checkout(64, 48)
    pool.give_back(a)

    assert pool.in_use == 0
    assert pool.checkout(64, 48) is a
    assert pool.stats()["reused"] == 1


def test_sizes_are_pooled_separately():
    pool = FramePool(capacity=4)
    a = pool.checkout(64, 48)
    pool.give_back(a)
    b = pool.checkout(32, 24)

    assert b is not a
    assert b.shape == (24, 32)


def test_double_return_is_a_no_op():
    pool = FramePool(capacity=4)
    a = pool.checkout(16, 16)
    pool.give_back(a)
    pool.give_back(a)

    assert pool.stats()["free"] == 1
    # one free buffer cannot be handed to two holders
    first = pool.checkout(16, 16)
    second = pool.checkout(16, 16)
    assert first is not second


def test_foreign_buffer_is_ignored():
    pool = FramePool(capacity=4)
    pool.give_back(np.zeros((16, 16), dtype=np.uint8))
    assert pool.stats()["free"] == 0


def test_overflow_is_discarded():
    pool = FramePool(capacity=2)
    bufs = [pool.checkout(8, 8) for _ in range(3)]
    for buf in bufs:
        pool.give_back(buf)

    stats = pool.stats()
    assert stats["free"] == 2
    assert stats["discarded"] == 1
    assert stats["in_use"] == 0


def test_clear_drops_free_buffers():
    pool = FramePool(capacity=2)
    pool.give_back(pool.checkout(8, 8))
    pool.clear()
    assert pool.stats()["free"] == 0


def test_to_gray_into_fills_the_pooled_buffer():
    pool = FramePool()
    buf = pool.checkout(100, 50)
    frame = np.full((200, 400, 3), 200, dtype=np.uint8)

    out = to_gray_into(frame, buf)

    assert out is buf
    assert out.shape == (50, 100)
    assert int(out[10, 10]) == 200


# --- Format / strategy ---

@pytest.mark.parametrize("url, ext, supported", [
    ("https://cdn.example.org/clips/a.MP4?sig=1", "mp4", True),
    ("https://cdn.example.org/clips/a.webm", "webm", True),
    ("https://cdn.example.org/clips/a.gif", "gif", False),
    ("https://cdn.example.org/stream", "", False),
])
def test_file_extension(url, ext, supported):
    assert file_extension(url) == ext
    assert is_supported_format(url) is supported


def test_complexity_is_capped():
    meta = VideoMetadata(format="mp4", duration=600.0, width=3840, height=2160, frame_rate=120.0)
    assert video_complexity(meta) == 1.0


def test_complex_video_gets_smaller_frames():
    meta = VideoMetadata(format="mp4", duration=60.0, width=1920, height=1080, frame_rate=60.0)
    strategy = plan_strategy(meta, "balanced", TunerSettings())

    assert strategy.complexity == pytest.approx(1.0)
    assert (strategy.width, strategy.height) == (480, 270)
    assert len(strategy.frame_times) == 3


def test_small_short_video_keeps_its_size():
    meta = VideoMetadata(format="mp4", duration=8.0, width=320, height=240, frame_rate=30.0)
    strategy = plan_strategy(meta, "fast", TunerSettings())

    assert (strategy.width, strategy.height) == (320, 240)
    assert len(strategy.frame_times) == 3


def test_tight_budget_reduces_frames_on_longer_clips():
    meta = VideoMetadata(format="mp4", duration=20.0, width=640, height=480, frame_rate=30.0)
    assert len(plan_strategy(meta, "balanced", TunerSettings(), time_budget_ms=2000).frame_times) == 5
    assert len(plan_strategy(meta, "balanced", TunerSettings(), time_budget_ms=1000).frame_times) == 3


def test_tuner_caps_frames_and_resolution():
    meta = VideoMetadata(format="mp4", duration=8.0, width=1280, height=720, frame_rate=30.0)
    strategy = plan_strategy(meta, "thorough", TunerSettings(max_frames=4, max_resolution=320))

    assert len(strategy.frame_times) == 4
    assert strategy.width == 320
    assert strategy.height % 2 == 0
