# tests/conftest.py

import asyncio
import io
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import cv2
import numpy as np
import pytest
from PIL import Image

from mediaguard.detectors.frames import FrameSourceError, VideoMetadata
from mediaguard.services.byte_source import ByteSourceError, HeadResponse


# --- Builders ---

def make_jpeg(width: int = 64, height: int = 48, color=(120, 140, 160)) -> bytes:
    """Plain camera-less JPEG with no embedded metadata."""
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buf, format="JPEG", quality=90)
    return buf.getvalue()


def make_noise_jpeg(width: int = 64, height: int = 48, seed: int = 3) -> bytes:
    """JPEG of per-pixel RGB noise; every sampled neighbour pair is an edge."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 255, size=(height, width, 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buf, format="JPEG", quality=95)
    return buf.getvalue()


def with_manifest_marker(data: bytes) -> bytes:
    """Insert an APP11 segment carrying a JUMBF/c2pa marker right after SOI."""
    payload = b"JP\x00\x00\x00\x00\x00\x0cjumbc2pa.manifest"
    segment = b"\xff\xeb" + (len(payload) + 2).to_bytes(2, "big") + payload
    return data[:2] + segment + data[2:]


def make_store(now: datetime, **overrides: Any) -> Dict[str, Any]:
    """Raw manifest store for a well-formed, trusted, recent manifest."""
    manifest = {
        "claim_generator": "Adobe Photoshop 25.0",
        "title": "photo.jpg",
        "timestamp": (now - timedelta(days=1)).isoformat(),
        "producer": {"name": "Jane Photographer"},
        "assertions": [
            {"label": "c2pa.actions", "data": {"actions": [{"action": "c2pa.created"}]}},
        ],
        "signature": {
            "algorithm": "ES256",
            "signature_value": "MEUCIQDx",
            "timestamp_info": {"gen_time": (now - timedelta(days=1)).isoformat()},
        },
    }
    manifest.update(overrides.pop("manifest", {}))
    store = {
        "manifest": manifest,
        "certificate_chain": [
            {
                "subject": "CN=Jane Photographer, O=Example",
                "issuer": "Adobe Systems Incorporated",
                "serial_number": "01",
                "valid_from": (now - timedelta(days=365)).isoformat(),
                "valid_to": (now + timedelta(days=365)).isoformat(),
            }
        ],
        "validation_status": [],
    }
    store.update(overrides)
    return store


# --- Fakes ---

class FakeByteSource:
    def __init__(
        self,
        data: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        elapsed_ms: float = 120.0,
        head_delay: float = 0.0,
        head_hangs: bool = False,
        head_error: Optional[Exception] = None,
        range_error: Optional[Exception] = None,
    ):
        self.data = data
        self.headers = headers if headers is not None else {
            "content-type": "image/jpeg",
            "content-length": str(max(len(data), 20000)),
        }
        self.elapsed_ms = elapsed_ms
        self.head_delay = head_delay
        self.head_hangs = head_hangs
        self.head_error = head_error
        self.range_error = range_error
        self.head_calls: List[str] = []
        self.range_calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def head_request(self, url: str) -> HeadResponse:
        self.head_calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.head_hangs:
                await asyncio.Event().wait()
            if self.head_delay:
                await asyncio.sleep(self.head_delay)
            if self.head_error is not None:
                raise self.head_error
            return HeadResponse(status=200, headers=dict(self.headers), elapsed_ms=self.elapsed_ms)
        finally:
            self.in_flight -= 1

    async def range_request(self, url: str, start: int, end: int) -> bytes:
        self.range_calls.append((url, start, end))
        if self.range_error is not None:
            raise self.range_error
        return self.data[start:end + 1]


class FakeReader:
    def __init__(self, store: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.store = store
        self.error = error
        self.delay = delay
        self.calls = 0

    def read(self, data: bytes, mime_type: Optional[str] = None):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.store


class FakeFrameSource:
    """Serves the same textured frame, optionally shifted by ``shift_px`` per capture."""

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        duration: float = 10.0,
        fail_on: Optional[int] = None,
        hang_on: Optional[int] = None,
        shift_px: int = 0,
        shift_axis: int = 0,
    ):
        rng = np.random.default_rng(7)
        noise = rng.integers(0, 255, size=(height, width, 3), dtype=np.uint8)
        self.base = cv2.GaussianBlur(noise, (9, 9), 2.5)
        self.meta = VideoMetadata(format="mp4", duration=duration, width=width, height=height, frame_rate=30.0)
        self.fail_on = fail_on
        self.hang_on = hang_on
        self.shift_px = shift_px
        self.shift_axis = shift_axis
        self.captures = 0
        self.closed = False

    async def load_metadata(self, url: str) -> VideoMetadata:
        return self.meta

    async def seek_and_capture(self, time_s: float) -> np.ndarray:
        self.captures += 1
        if self.fail_on is not None and self.captures >= self.fail_on:
            raise FrameSourceError(f"Failed to capture frame at {time_s:.2f}s")
        if self.hang_on is not None and self.captures >= self.hang_on:
            await asyncio.Event().wait()
        return np.roll(self.base, self.shift_px * self.captures, axis=self.shift_axis)

    def close(self) -> None:
        self.closed = True


# --- Fixtures ---

@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def clean_jpeg() -> bytes:
    return make_jpeg()


@pytest.fixture
def manifest_jpeg() -> bytes:
    return with_manifest_marker(make_jpeg())


@pytest.fixture
def byte_source_error() -> ByteSourceError:
    return ByteSourceError("GET failed: ConnectError")
