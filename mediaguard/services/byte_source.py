# mediaguard/services/byte_source.py

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import httpx
from httpx import AsyncClient, Timeout

from mediaguard.core.config import get_settings

logger = logging.getLogger(__name__)


class ByteSourceError(Exception):
    """HEAD or range request failed (network, status or timeout)."""


@dataclass
class HeadResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0


class ByteSource(Protocol):
    async def head_request(self, url: str) -> HeadResponse:
        ...

    async def range_request(self, url: str, start: int, end: int) -> bytes:
        ...


class HttpByteSource:
    """
    ByteSource over a shared httpx.AsyncClient.

    Range reads are capped at ``end`` even when the server ignores the
    Range header and streams the whole body.
    """

    def __init__(self, client: Optional[AsyncClient] = None):
        settings = get_settings()
        self.head_timeout = Timeout(settings.HEAD_TIMEOUT_S)
        self.range_timeout = Timeout(settings.RANGE_TIMEOUT_S)
        self._owns_client = client is None
        self.client = client or AsyncClient(
            transport=httpx.AsyncHTTPTransport(retries=settings.HTTP_RETRIES),
            follow_redirects=True,
            headers={"User-Agent": settings.USER_AGENT},
        )

    async def head_request(self, url: str) -> HeadResponse:
        started = time.perf_counter()
        try:
            response = await self.client.head(url, timeout=self.head_timeout)
        except httpx.HTTPError as e:
            raise ByteSourceError(f"HEAD {url} failed: {e.__class__.__name__}: {e}") from e
        elapsed_ms = (time.perf_counter() - started) * 1000
        if response.status_code >= 400:
            raise ByteSourceError(f"HEAD {url} returned {response.status_code}")
        return HeadResponse(
            status=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            elapsed_ms=elapsed_ms,
        )

    async def range_request(self, url: str, start: int, end: int) -> bytes:
        """Bytes [start, end] inclusive."""
        limit = end - start + 1
        chunks = []
        received = 0
        try:
            async with self.client.stream(
                "GET",
                url,
                headers={"Range": f"bytes={start}-{end}"},
                timeout=self.range_timeout,
            ) as response:
                if response.status_code >= 400:
                    raise ByteSourceError(f"GET {url} returned {response.status_code}")
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    received += len(chunk)
                    if received >= limit:
                        break
        except httpx.HTTPError as e:
            raise ByteSourceError(f"GET {url} failed: {e.__class__.__name__}: {e}") from e

        data = b"".join(chunks)
        return data[:limit]

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
