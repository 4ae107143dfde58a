# mediaguard/detectors/video.py

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from mediaguard.core.config import get_settings
from mediaguard.core.schemas import (
    LoopAnalysisResult,
    LoopPerformance,
    LoopThresholds,
)
from mediaguard.detectors.frames import (
    FramePool,
    FrameSourceError,
    QualityMode,
    VideoFrameSource,
    plan_strategy,
    to_gray_into,
)
from mediaguard.detectors.tuner import (
    LoopTuner,
    RunMetrics,
    adaptive_thresholds,
    estimate_quality,
)

logger = logging.getLogger(__name__)

SIMILARITY_SIZE = (320, 240)
MOTION_SCALE_PX = 20.0
FLAT_STD = 1e-3

MIN_FLOW_PX = 2.0
MAX_FLOW_PX = 20.0

SIMILARITY_WEIGHT = 0.4
MOTION_WEIGHT = 0.35
FLOW_WEIGHT = 0.25


@dataclass(frozen=True)
class LoopAnalysisOptions:
    quality_mode: QualityMode = "balanced"
    time_budget_ms: float = 2000.0
    file_size: int = 0


# -----------------------------
# FRAME MEASUREMENTS
# -----------------------------
def frame_similarity(first: np.ndarray, last: np.ndarray) -> float:
    """Normalized cross-correlation of the first and last frame, in [0, 1]."""
    a = cv2.resize(first, SIMILARITY_SIZE, interpolation=cv2.INTER_AREA)
    b = cv2.resize(last, SIMILARITY_SIZE, interpolation=cv2.INTER_AREA)
    if float(a.std()) < FLAT_STD or float(b.std()) < FLAT_STD:
        # flat frames have no variance to correlate
        return 1.0 if np.array_equal(a, b) else 0.0
    score = float(cv2.matchTemplate(a, b, cv2.TM_CCOEFF_NORMED)[0][0])
    if not math.isfinite(score):
        return 0.0
    return max(0.0, min(1.0, score))


def motion_magnitude(prev: np.ndarray, nxt: np.ndarray) -> float:
    """Mean Farneback flow magnitude, scaled to [0, 1]."""
    flow = cv2.calcOpticalFlowFarneback(prev, nxt, None, 0.5, 3, 15, 3, 5, 1.2, 0)
    mag, _ = cv2.cartToPolar(flow[..., 0], flow[..., 1])
    return float(min(1.0, float(np.mean(mag)) / MOTION_SCALE_PX))


def motion_consistency(frames: List[np.ndarray]) -> float:
    if len(frames) < 3:
        return 0.0
    mags = [motion_magnitude(frames[i], frames[i + 1]) for i in range(len(frames) - 1)]
    consistencies = [
        max(0.0, min(1.0, 1.0 - abs(mags[i] - mags[i + 1])))
        for i in range(len(mags) - 1)
    ]
    return float(sum(consistencies) / len(consistencies))


def _is_circular(dx: float, dy: float) -> bool:
    magnitude = math.hypot(dx, dy)
    if magnitude < MIN_FLOW_PX or magnitude > MAX_FLOW_PX:
        return False
    angle = math.atan2(dy, dx) % (2 * math.pi)
    return (math.pi / 4 < angle < 3 * math.pi / 4) or (5 * math.pi / 4 < angle < 7 * math.pi / 4)


def pair_flow_score(prev: np.ndarray, nxt: np.ndarray) -> float:
    """Fraction of tracked corners moving in a circular-looking direction."""
    corners = cv2.goodFeaturesToTrack(prev, maxCorners=100, qualityLevel=0.01, minDistance=10)
    if corners is None or len(corners) == 0:
        return 0.0

    moved, status, _ = cv2.calcOpticalFlowPyrLK(prev, nxt, corners, None)
    if moved is None or status is None:
        return 0.0

    tracked = 0
    circular = 0
    for p0, p1, ok in zip(corners.reshape(-1, 2), moved.reshape(-1, 2), status.reshape(-1)):
        if not ok:
            continue
        tracked += 1
        if _is_circular(float(p1[0] - p0[0]), float(p1[1] - p0[1])):
            circular += 1
    if tracked == 0:
        return 0.0
    return circular / tracked


def optical_flow_score(frames: List[np.ndarray]) -> float:
    if len(frames) < 2:
        return 0.0
    scores = [pair_flow_score(frames[i], frames[i + 1]) for i in range(len(frames) - 1)]
    return float(sum(scores) / len(scores))


# -----------------------------
# DECISION
# -----------------------------
def decide_loop(
    similarity: float,
    motion: float,
    flow: float,
    thresholds: LoopThresholds,
) -> Tuple[bool, float]:
    """
    A clip is a loop only if ALL three measurements clear their thresholds.
    Confidence is the weighted blend regardless of the verdict.
    """
    is_loop = (
        similarity > thresholds.similarity
        and motion > thresholds.motion
        and flow > thresholds.optical_flow
    )
    confidence = min(
        1.0,
        similarity * SIMILARITY_WEIGHT + motion * MOTION_WEIGHT + flow * FLOW_WEIGHT,
    )
    return is_loop, confidence


def measure_frames(frames: List[np.ndarray]) -> Tuple[float, float, float]:
    """(first/last similarity, motion consistency, optical-flow score). CPU bound."""
    return (
        frame_similarity(frames[0], frames[-1]),
        motion_consistency(frames),
        optical_flow_score(frames),
    )


def _error_category(exc: BaseException) -> str:
    if isinstance(exc, FrameSourceError):
        return "transient"
    if isinstance(exc, (MemoryError, cv2.error)):
        return "resource"
    return "unknown"


# -----------------------------
# MAIN ANALYSIS FUNCTION
# -----------------------------
class LoopArtifactDetector:
    def __init__(self, pool: Optional[FramePool] = None, tuner: Optional[LoopTuner] = None):
        self.pool = pool or FramePool(get_settings().FRAME_POOL_SIZE)
        self.tuner = tuner or LoopTuner()

    async def analyze(
        self,
        url: str,
        source: VideoFrameSource,
        options: Optional[LoopAnalysisOptions] = None,
    ) -> LoopAnalysisResult:
        """
        Steps:
          1. Probe metadata and pick quality-dependent thresholds.
          2. Capture 3-5 key frames into pooled grayscale buffers.
          3. Measure first/last similarity, motion consistency and flow circularity.
          4. Combine with the AND rule.

        Buffers go back to the pool on every exit, including cancellation.
        """
        options = options or LoopAnalysisOptions()
        started = time.perf_counter()
        buffers: List[np.ndarray] = []
        measuring: Optional[asyncio.Future] = None
        opencv_ms = 0.0

        try:
            meta = await source.load_metadata(url)
            quality = estimate_quality(meta.width, meta.height, meta.duration)
            thresholds = adaptive_thresholds(quality)

            if self.tuner.should_skip(options.file_size or meta.file_size, meta.duration):
                logger.info("Skipping loop analysis for %s (budget)", url)
                return LoopAnalysisResult(
                    thresholds=thresholds,
                    quality=quality,
                    skipped=True,
                    performance=LoopPerformance(
                        processing_time_ms=(time.perf_counter() - started) * 1000,
                    ),
                )

            strategy = plan_strategy(
                meta, options.quality_mode, self.tuner.settings, options.time_budget_ms
            )

            for t in strategy.frame_times:
                frame = await source.seek_and_capture(t)
                buf = self.pool.checkout(strategy.width, strategy.height)
                buffers.append(buf)
                to_gray_into(frame, buf)

            cv_started = time.perf_counter()
            measuring = asyncio.ensure_future(asyncio.to_thread(measure_frames, buffers))
            similarity, motion, flow = await asyncio.shield(measuring)
            opencv_ms = (time.perf_counter() - cv_started) * 1000

            is_loop, confidence = decide_loop(similarity, motion, flow, thresholds)
            elapsed_ms = (time.perf_counter() - started) * 1000
            memory = sum(b.nbytes for b in buffers)

            self.tuner.record(RunMetrics(
                processing_time_ms=elapsed_ms,
                frames_analyzed=len(buffers),
                memory_used_bytes=memory,
                opencv_time_ms=opencv_ms,
            ))

            return LoopAnalysisResult(
                is_loop=is_loop,
                confidence=confidence,
                similarity=similarity,
                motion_consistency=motion,
                optical_flow_score=flow,
                thresholds=thresholds,
                quality=quality,
                performance=LoopPerformance(
                    processing_time_ms=elapsed_ms,
                    frames_analyzed=len(buffers),
                    memory_used_bytes=memory,
                ),
            )
        except Exception as e:
            category = _error_category(e)
            logger.warning("Loop analysis failed [%s] for %s: %s", category, url, e)
            return LoopAnalysisResult(
                error=f"{category}: {e}",
                performance=LoopPerformance(
                    processing_time_ms=(time.perf_counter() - started) * 1000,
                    frames_analyzed=len(buffers),
                ),
            )
        finally:
            if measuring is not None and not measuring.done():
                # the worker thread still reads the buffers
                held = list(buffers)
                measuring.add_done_callback(lambda fut: self._release(held, fut))
            else:
                self._release(buffers)

    def _release(self, buffers: List[np.ndarray], measuring: Optional[asyncio.Future] = None) -> None:
        if measuring is not None and not measuring.cancelled() and measuring.exception() is not None:
            logger.debug("Loop measurement finished after cancellation: %s", measuring.exception())
        for buf in buffers:
            self.pool.give_back(buf)
