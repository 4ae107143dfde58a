# mediaguard/detectors/tuner.py
"""
Self-tuning knobs for the loop detector.

The adjustment rules are pure functions over an immutable settings value and a
run history, so they can be tested without timing anything. ``LoopTuner`` is the
small stateful wrapper the detector holds.
"""
import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, List, Sequence, Tuple

from mediaguard.core.schemas import LoopThresholds, VideoQuality

logger = logging.getLogger(__name__)

MIN_FRAMES = 3
MAX_FRAMES = 5
MIN_RESOLUTION = 320
RESOLUTION_STEP = 80

SLOW_RUN_MS = 3000.0
FAST_RUN_MS = 1000.0
HEAVY_RUN_BYTES = 50 * 1024 * 1024
SLOW_OPENCV_MS = 1000.0

SKIP_AVG_MS = 5000.0
SKIP_FILE_BYTES = 10 * 1024 * 1024
SKIP_DURATION_S = 120.0

BASE_THRESHOLDS = LoopThresholds(similarity=0.85, motion=0.9, optical_flow=0.8)


@dataclass(frozen=True)
class TunerSettings:
    max_frames: int = MAX_FRAMES
    max_resolution: int = 640
    skip_frames: bool = False


@dataclass(frozen=True)
class RunMetrics:
    processing_time_ms: float
    frames_analyzed: int
    memory_used_bytes: int = 0
    opencv_time_ms: float = 0.0


def observe(settings: TunerSettings, history: Sequence[RunMetrics]) -> TunerSettings:
    """Return the settings to use next, given the most recent runs."""
    recent = list(history)[-5:]
    if not recent:
        return settings

    avg_time = sum(r.processing_time_ms for r in recent) / len(recent)
    avg_memory = sum(r.memory_used_bytes for r in recent) / len(recent)

    max_frames = settings.max_frames
    if avg_time > SLOW_RUN_MS:
        max_frames = max(MIN_FRAMES, max_frames - 1)
    elif avg_time < FAST_RUN_MS:
        max_frames = min(MAX_FRAMES, max_frames + 1)

    max_resolution = settings.max_resolution
    if avg_memory > HEAVY_RUN_BYTES:
        max_resolution = max(MIN_RESOLUTION, max_resolution - RESOLUTION_STEP)

    return replace(settings, max_frames=max_frames, max_resolution=max_resolution)


def estimate_quality(width: int, height: int, duration: float) -> VideoQuality:
    pixels = width * height
    if pixels < 320 * 240 or duration < 3:
        return "low"
    if pixels > 1280 * 720 or duration > 60:
        return "high"
    return "medium"


def adaptive_thresholds(quality: VideoQuality) -> LoopThresholds:
    """Relax thresholds for poor footage, tighten them for high quality footage."""
    base = BASE_THRESHOLDS
    if quality == "low":
        delta = -0.1
    elif quality == "high":
        delta = 0.05
    else:
        return base
    return LoopThresholds(
        similarity=min(1.0, base.similarity + delta),
        motion=min(1.0, base.motion + delta),
        optical_flow=min(1.0, base.optical_flow + delta),
    )


def key_frame_times(duration: float, frame_count: int) -> List[float]:
    """
    Timestamps (seconds) to sample, kept 0.1s inside both ends of the clip.
    Clips shorter than 0.4s shrink that margin so every time stays in range.

    3 frames -> start / middle / end, 4 -> start / thirds / end,
    5 -> start / quarters / end. Long clips get fewer frames.
    """
    if duration > 60:
        frame_count = MIN_FRAMES
    elif duration > 30:
        frame_count = int(frame_count * 0.7)
    frame_count = max(MIN_FRAMES, min(MAX_FRAMES, frame_count))

    start = min(0.1, duration / 4)
    end = max(duration - 0.1, duration * 0.75)

    if frame_count == 3:
        return [start, duration / 2, end]
    if frame_count == 4:
        return [start, duration * 0.33, duration * 0.66, end]
    return [start, duration * 0.25, duration * 0.5, duration * 0.75, end]


def target_size(width: int, height: int, max_resolution: int) -> Tuple[int, int]:
    """Scale (width, height) to fit max_resolution, keeping both dimensions even."""
    if width <= 0 or height <= 0:
        return max_resolution, max_resolution * 3 // 4 // 2 * 2
    scale = min(1.0, max_resolution / max(width, height))
    w = max(2, int(width * scale) // 2 * 2)
    h = max(2, int(height * scale) // 2 * 2)
    return w, h


def should_skip(
    settings: TunerSettings,
    history: Sequence[RunMetrics],
    file_size: int,
    duration: float,
) -> bool:
    if not settings.skip_frames:
        return False
    recent = list(history)[-3:]
    if not recent:
        return False
    avg_time = sum(r.processing_time_ms for r in recent) / len(recent)
    heavy = file_size > SKIP_FILE_BYTES or duration > SKIP_DURATION_S
    return avg_time > SKIP_AVG_MS and heavy


class LoopTuner:
    def __init__(self, settings: TunerSettings = TunerSettings(), history_size: int = 100):
        self.settings = settings
        self.history: Deque[RunMetrics] = deque(maxlen=history_size)

    def record(self, metrics: RunMetrics) -> TunerSettings:
        self.history.append(metrics)
        if metrics.opencv_time_ms > SLOW_OPENCV_MS and not self.settings.skip_frames:
            logger.info(
                "OpenCV step took %.0fms; enabling frame skipping",
                metrics.opencv_time_ms,
            )
            self.settings = replace(self.settings, skip_frames=True)

        updated = observe(self.settings, self.history)
        if updated != self.settings:
            logger.info(
                "Loop tuner adjusted: frames %d->%d, resolution %d->%d",
                self.settings.max_frames, updated.max_frames,
                self.settings.max_resolution, updated.max_resolution,
            )
        self.settings = updated
        return updated

    def should_skip(self, file_size: int, duration: float) -> bool:
        return should_skip(self.settings, self.history, file_size, duration)

    def report(self) -> Dict[str, float]:
        recent = list(self.history)[-10:]
        if not recent:
            return {
                "avg_processing_time_ms": 0.0,
                "avg_frames_analyzed": 0.0,
                "avg_memory_used_bytes": 0.0,
                "runs": 0,
                "max_frames": self.settings.max_frames,
                "max_resolution": self.settings.max_resolution,
            }
        n = len(recent)
        return {
            "avg_processing_time_ms": sum(r.processing_time_ms for r in recent) / n,
            "avg_frames_analyzed": sum(r.frames_analyzed for r in recent) / n,
            "avg_memory_used_bytes": sum(r.memory_used_bytes for r in recent) / n,
            "runs": len(self.history),
            "max_frames": self.settings.max_frames,
            "max_resolution": self.settings.max_resolution,
        }
