# mediaguard/detectors/frames.py

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Protocol, Tuple
from urllib.parse import urlparse

import cv2
import numpy as np

from mediaguard.core.config import get_settings
from mediaguard.detectors.tuner import TunerSettings, key_frame_times, target_size

logger = logging.getLogger(__name__)

QualityMode = Literal["fast", "balanced", "thorough"]

SUPPORTED_FORMATS = ("mp4", "webm", "mov", "avi", "mkv", "ogg")

# max frames / longest output side
QUALITY_SETTINGS: Dict[str, Tuple[int, int]] = {
    "fast": (3, 320),
    "balanced": (5, 640),
    "thorough": (5, 1280),
}


class FrameSourceError(Exception):
    """Raised when a video cannot be opened, probed or seeked."""


@dataclass(frozen=True)
class VideoMetadata:
    format: str
    duration: float
    width: int
    height: int
    frame_rate: float = 30.0
    file_size: int = 0


@dataclass(frozen=True)
class FrameStrategy:
    frame_times: List[float]
    width: int
    height: int
    complexity: float


class VideoFrameSource(Protocol):
    async def load_metadata(self, url: str) -> VideoMetadata:
        ...

    async def seek_and_capture(self, time_s: float) -> np.ndarray:
        ...

    def close(self) -> None:
        ...


# -----------------------------
# FRAME BUFFER POOL
# -----------------------------
class FramePool:
    """
    Reusable grayscale frame buffers.

    Each buffer has exactly one holder between checkout() and give_back().
    Returning a buffer the pool does not consider checked out is a no-op, and
    buffers returned while the pool is full are dropped.
    """

    def __init__(self, capacity: int = 10):
        self.capacity = capacity
        self._free: Dict[Tuple[int, int], List[np.ndarray]] = {}
        self._in_use: Dict[int, np.ndarray] = {}
        self._lock = threading.Lock()
        self._created = 0
        self._reused = 0
        self._discarded = 0

    def checkout(self, width: int, height: int) -> np.ndarray:
        key = (height, width)
        with self._lock:
            bucket = self._free.get(key)
            if bucket:
                buf = bucket.pop()
                self._reused += 1
            else:
                buf = np.empty(key, dtype=np.uint8)
                self._created += 1
            self._in_use[id(buf)] = buf
            return buf

    def give_back(self, buf: np.ndarray) -> None:
        with self._lock:
            if self._in_use.pop(id(buf), None) is None:
                return
            if self._free_count() >= self.capacity:
                self._discarded += 1
                return
            self._free.setdefault(buf.shape[:2], []).append(buf)

    def _free_count(self) -> int:
        return sum(len(b) for b in self._free.values())

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._in_use)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "capacity": self.capacity,
                "free": self._free_count(),
                "in_use": len(self._in_use),
                "created": self._created,
                "reused": self._reused,
                "discarded": self._discarded,
            }

    def clear(self) -> None:
        with self._lock:
            self._free.clear()


# -----------------------------
# FORMAT / STRATEGY
# -----------------------------
def file_extension(url: str) -> str:
    path = urlparse(url).path
    if "." not in path.rsplit("/", 1)[-1]:
        return ""
    return path.rsplit(".", 1)[-1].lower()


def is_supported_format(url: str) -> bool:
    return file_extension(url) in SUPPORTED_FORMATS


def video_complexity(meta: VideoMetadata) -> float:
    """0..1 blend of resolution, duration and frame rate."""
    resolution_factor = (meta.width * meta.height) / (1920 * 1080)
    duration_factor = min(meta.duration / 60, 1.0)
    frame_rate_factor = meta.frame_rate / 60
    return min(1.0, (resolution_factor + duration_factor + frame_rate_factor) / 3)


def plan_strategy(
    meta: VideoMetadata,
    quality_mode: QualityMode,
    tuner: TunerSettings,
    time_budget_ms: float = 2000.0,
) -> FrameStrategy:
    mode_frames, mode_resolution = QUALITY_SETTINGS[quality_mode]
    frame_count = min(mode_frames, tuner.max_frames)
    if meta.duration > 10:
        frame_count = max(3, int(frame_count * min(1.0, time_budget_ms / 2000)))

    longest = min(mode_resolution, tuner.max_resolution)
    complexity = video_complexity(meta)
    if complexity > 0.7:
        longest = int(longest * 0.75)

    width, height = target_size(meta.width or 640, meta.height or 480, longest)

    return FrameStrategy(
        frame_times=key_frame_times(meta.duration, frame_count),
        width=width,
        height=height,
        complexity=complexity,
    )


def to_gray_into(frame: np.ndarray, buf: np.ndarray) -> np.ndarray:
    """Resize + grayscale a captured BGR frame into a pooled buffer."""
    height, width = buf.shape[:2]
    if frame.ndim == 3:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    else:
        gray = frame
    buf[...] = cv2.resize(gray, (width, height), interpolation=cv2.INTER_AREA)
    return buf


# -----------------------------
# OPENCV SOURCE
# -----------------------------
class OpenCVFrameSource:
    """VideoFrameSource backed by cv2.VideoCapture (file paths or stream URLs)."""

    def __init__(
        self,
        seek_timeout_s: Optional[float] = None,
        metadata_timeout_s: Optional[float] = None,
    ):
        settings = get_settings()
        self.seek_timeout_s = seek_timeout_s or settings.FRAME_SEEK_TIMEOUT_S
        self.metadata_timeout_s = metadata_timeout_s or settings.VIDEO_METADATA_TIMEOUT_S
        self._cap: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

    def _open(self, url: str) -> VideoMetadata:
        cap = cv2.VideoCapture(url)
        if not cap.isOpened():
            cap.release()
            raise FrameSourceError(f"Failed to load video metadata: {url}")
        fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
        frames = cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        with self._lock:
            if self._cap is not None:
                self._cap.release()
            self._cap = cap
        return VideoMetadata(
            format=file_extension(url),
            duration=frames / fps if fps else 0.0,
            width=width,
            height=height,
            frame_rate=fps,
        )

    async def load_metadata(self, url: str) -> VideoMetadata:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._open, url),
                timeout=self.metadata_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise FrameSourceError("Metadata extraction timeout") from e

    def _capture(self, time_s: float) -> np.ndarray:
        with self._lock:
            if self._cap is None:
                raise FrameSourceError("Video not loaded")
            self._cap.set(cv2.CAP_PROP_POS_MSEC, time_s * 1000.0)
            ok, frame = self._cap.read()
        if not ok or frame is None:
            raise FrameSourceError(f"Failed to capture frame at {time_s:.2f}s")
        return frame

    async def seek_and_capture(self, time_s: float) -> np.ndarray:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._capture, time_s),
                timeout=self.seek_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise FrameSourceError(f"Seek timeout at {time_s:.2f}s") from e

    def close(self) -> None:
        with self._lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
