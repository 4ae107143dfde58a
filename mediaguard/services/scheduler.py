# mediaguard/services/scheduler.py
"""
Budgeted scan orchestration.

A scan moves through

    Idle -> FastPath -> (Done | Planning -> Executing -> Aggregating -> Done)

and can end in TimedOut from any state before Done. Tasks run in priority
groups; tasks in one group run concurrently, each bounded by whatever budget
is left. A failing or slow task is recorded and never stops the others.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from mediaguard.core.config import Settings, get_settings
from mediaguard.core.heuristics import (
    aggregate_task_results,
    fuse_signals,
    is_suspicious_source,
    quick_heuristics,
)
from mediaguard.core.schemas import (
    ElementHandle,
    FallbackReport,
    FusedRisk,
    ImageAnalysis,
    LoopAnalysisResult,
    MediaType,
    PerformanceReport,
    ScanResult,
    ScanStatus,
    SignalBundle,
    TaskResult,
    ValidationOutcome,
    Verdict,
)
from mediaguard.detectors.fallback import HeuristicFallbackAnalyzer
from mediaguard.detectors.frames import OpenCVFrameSource, VideoFrameSource, is_supported_format
from mediaguard.detectors.image import analyze_image, decode_data_url
from mediaguard.detectors.manifest import ManifestValidator
from mediaguard.detectors.signals import (
    FileSignatureAnalyzer,
    HeaderAnalyzer,
    NetworkBehaviorAnalyzer,
    URLPatternAnalyzer,
)
from mediaguard.detectors.video import LoopAnalysisOptions, LoopArtifactDetector
from mediaguard.services.byte_source import ByteSource, ByteSourceError, HeadResponse, HttpByteSource
from mediaguard.services.cache import ResultCache

logger = logging.getLogger(__name__)

MIN_PLANNING_BUDGET_MS = 500
MANIFEST_MIN_REMAINING_MS = 300
HEURISTIC_MIN_REMAINING_MS = 300
IMAGE_MIN_REMAINING_MS = 800
VIDEO_MIN_REMAINING_MS = 1200

MIN_REASONABLE_BYTES = 1024
MAX_REASONABLE_BYTES = 100 * 1024 * 1024
TIMEOUT_CONFIDENCE_CAP = 0.4
FORGED_MANIFEST_MIN_CONFIDENCE = 0.7
FORGED_MANIFEST_REASON = "Manifest detected on suspicious source - likely self-signed or forged"

# rough per-method accuracy, used for the diagnostics estimate only
METHOD_ACCURACY: Dict[str, float] = {
    "quick-heuristics": 0.7,
    "metadata-check": 0.75,
    "heuristic-scan": 0.85,
    "image-analysis": 0.8,
    "video-analysis": 0.8,
    "manifest-check": 0.95,
}


class ScanState(str, Enum):
    IDLE = "idle"
    FAST_PATH = "fast-path"
    PLANNING = "planning"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    DONE = "done"
    TIMED_OUT = "timed-out"


TaskOutcome = Tuple[bool, List[str]]


@dataclass
class ScanTask:
    name: str
    priority: int
    estimated_ms: int
    run: Callable[["ScanContext"], Awaitable[TaskOutcome]]


@dataclass
class ScanContext:
    url: str
    budget_ms: float
    media_type: MediaType
    element: Optional[ElementHandle] = None
    started: float = field(default_factory=time.perf_counter)
    state: ScanState = ScanState.IDLE

    bundle: SignalBundle = field(default_factory=SignalBundle)
    head: Optional[HeadResponse] = None
    prefix: Optional[bytes] = None
    prefix_complete: bool = False
    bytes_downloaded: int = 0
    budget_exhausted: bool = False

    validation: Optional[ValidationOutcome] = None
    fallback: Optional[FallbackReport] = None
    loop_analysis: Optional[LoopAnalysisResult] = None
    image_analysis: Optional[ImageAnalysis] = None
    tasks: List[TaskResult] = field(default_factory=list)
    fetch_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def remaining_ms(self) -> float:
        return self.budget_ms - self.elapsed_ms()


def guess_media_type(url: str, element: Optional[ElementHandle]) -> MediaType:
    if element is not None:
        return element.media_type
    return "video" if is_supported_format(url) else "image"


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _forged_manifest(ctx: ScanContext, fused: FusedRisk) -> bool:
    if "Suspicious manifest signature" in fused.signals:
        return True
    return (
        ctx.validation is not None
        and ctx.validation.status != "missing"
        and is_suspicious_source(ctx.bundle.url)
    )


class ScanScheduler:
    def __init__(
        self,
        byte_source: Optional[ByteSource] = None,
        validator: Optional[ManifestValidator] = None,
        fallback: Optional[HeuristicFallbackAnalyzer] = None,
        loop_detector: Optional[LoopArtifactDetector] = None,
        cache: Optional[ResultCache] = None,
        frame_source_factory: Callable[[], VideoFrameSource] = OpenCVFrameSource,
        image_analyzer: Callable[[bytes], ImageAnalysis] = analyze_image,
        settings: Optional[Settings] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.settings = settings or get_settings()
        self.byte_source = byte_source or HttpByteSource()
        self.validator = validator or ManifestValidator()
        self.fallback = fallback or HeuristicFallbackAnalyzer()
        self.loop_detector = loop_detector or LoopArtifactDetector()
        self.cache = cache or ResultCache(
            ttl_seconds=self.settings.CACHE_TTL_SECONDS,
            max_entries=self.settings.CACHE_MAX_ENTRIES,
        )
        self.frame_source_factory = frame_source_factory
        self.image_analyzer = image_analyzer

        self.urls = URLPatternAnalyzer()
        self.headers = HeaderAnalyzer()
        self.files = FileSignatureAnalyzer()
        self.network = NetworkBehaviorAnalyzer()

        # asyncio.Semaphore wakes waiters in FIFO order
        self._semaphore = asyncio.Semaphore(max_concurrent or self.settings.MAX_CONCURRENT_SCANS)
        self._history: Deque[Tuple[float, int, List[str]]] = deque(maxlen=100)

    # -----------------------------
    # ENTRY POINT
    # -----------------------------
    async def scan(
        self,
        url: str,
        element: Optional[ElementHandle] = None,
        budget_ms: Optional[int] = None,
    ) -> ScanResult:
        """Always returns a ScanResult; failures and overruns are folded into it."""
        budget = float(budget_ms or self.settings.DEFAULT_BUDGET_MS)
        ctx = ScanContext(url=url, budget_ms=budget, media_type=guess_media_type(url, element), element=element)

        cached = self.cache.get(url)
        if cached is not None:
            logger.debug("Cache hit for %s", url)
            return cached.model_copy(update={
                "status": "cached",
                "scan_time_ms": ctx.elapsed_ms(),
                "bytes_downloaded": 0,
            })

        slack_s = self.settings.TASK_TIMEOUT_SLACK_MS / 1000
        try:
            result = await asyncio.wait_for(self._run(ctx), timeout=budget / 1000 + slack_s)
        except asyncio.TimeoutError:
            logger.warning("Scan of %s exceeded its %dms budget [budget]", url, budget)
            result = self._timeout_result(ctx, f"Scan exceeded {budget:.0f}ms budget")
        except Exception as e:
            logger.exception("Scan of %s failed", url)
            self._transition(ctx, ScanState.DONE)
            result = self._result(
                ctx,
                verdict="warning",
                confidence=0.0,
                status="error",
                signals=["Scan error"],
                reasons=["Unable to complete analysis"],
                error=str(e) or e.__class__.__name__,
            )

        self._record(result)
        if result.status in ("complete", "fast-path"):
            self.cache.put(url, result)
        return result

    async def _run(self, ctx: ScanContext) -> ScanResult:
        async with self._semaphore:
            self._transition(ctx, ScanState.FAST_PATH)
            url_signals = self.urls.analyze(ctx.url)
            ctx.bundle.url = url_signals
            verdict, confidence, reasons = quick_heuristics(url_signals, ctx.element)
            if confidence > self.settings.FAST_PATH_THRESHOLD:
                self._transition(ctx, ScanState.DONE)
                return self._result(
                    ctx,
                    verdict=verdict,
                    confidence=confidence,
                    status="fast-path",
                    signals=["Quick heuristics"],
                    reasons=reasons or ["URL analysis was conclusive"],
                )

            self._transition(ctx, ScanState.PLANNING)
            remaining = ctx.remaining_ms()
            if remaining < MIN_PLANNING_BUDGET_MS:
                return self._timeout_result(ctx, "Insufficient budget for analysis")
            tasks = self.plan(ctx, remaining)

            self._transition(ctx, ScanState.EXECUTING)
            for priority in sorted({t.priority for t in tasks}):
                remaining = ctx.remaining_ms()
                if remaining <= 0:
                    ctx.budget_exhausted = True
                    break
                group = [t for t in tasks if t.priority == priority]
                outcomes = await asyncio.gather(
                    *(self._run_task(ctx, t, remaining) for t in group),
                    return_exceptions=True,
                )
                for task, outcome in zip(group, outcomes):
                    if isinstance(outcome, BaseException):
                        outcome = TaskResult(
                            name=task.name, priority=task.priority, success=False, error=str(outcome)
                        )
                    ctx.tasks.append(outcome)

            self._transition(ctx, ScanState.AGGREGATING)
            if ctx.budget_exhausted:
                return self._timeout_result(ctx, "Analysis budget exhausted")
            result = self._aggregate(ctx)
            self._transition(ctx, ScanState.DONE)
            return result

    # -----------------------------
    # PLANNING / EXECUTION
    # -----------------------------
    def plan(self, ctx: ScanContext, remaining_ms: float) -> List[ScanTask]:
        tasks = [ScanTask("metadata-check", 1, 50, self._metadata_check)]
        if remaining_ms > MANIFEST_MIN_REMAINING_MS:
            tasks.append(ScanTask("manifest-check", 2, 200, self._manifest_check))
        if remaining_ms > HEURISTIC_MIN_REMAINING_MS:
            tasks.append(ScanTask("heuristic-scan", 3, 150, self._heuristic_scan))
        if ctx.media_type == "image" and remaining_ms > IMAGE_MIN_REMAINING_MS:
            tasks.append(ScanTask("image-analysis", 3, 400, self._image_analysis))
        if ctx.media_type == "video" and remaining_ms > VIDEO_MIN_REMAINING_MS:
            tasks.append(ScanTask("video-analysis", 3, 600, self._video_analysis))
        logger.debug("Planned %s for %s", [t.name for t in tasks], ctx.url)
        return tasks

    async def _run_task(self, ctx: ScanContext, task: ScanTask, remaining_ms: float) -> TaskResult:
        started = time.perf_counter()
        try:
            suspicious, reasons = await asyncio.wait_for(task.run(ctx), timeout=remaining_ms / 1000)
        except asyncio.TimeoutError:
            ctx.budget_exhausted = True
            logger.warning("Task %s timed out for %s [budget]", task.name, ctx.url)
            return TaskResult(
                name=task.name,
                priority=task.priority,
                success=False,
                error="timeout",
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        except Exception as e:
            logger.warning("Task %s failed for %s [transient]: %s", task.name, ctx.url, e)
            return TaskResult(
                name=task.name,
                priority=task.priority,
                success=False,
                error=str(e) or e.__class__.__name__,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        return TaskResult(
            name=task.name,
            priority=task.priority,
            success=True,
            suspicious=suspicious,
            reasons=reasons,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    # -----------------------------
    # BYTES
    # -----------------------------
    def _element_bytes(self, ctx: ScanContext) -> Optional[bytes]:
        if ctx.element is None or not ctx.element.data_url:
            return None
        return decode_data_url(ctx.element.data_url)

    async def _fetch_prefix(self, ctx: ScanContext) -> bytes:
        """Fetch the manifest-sized prefix once per scan; fall back to the element's pixels."""
        async with ctx.fetch_lock:
            if ctx.prefix is not None:
                return ctx.prefix
            size = self.settings.MANIFEST_PREFIX_BYTES
            try:
                data = await self.byte_source.range_request(ctx.url, 0, size - 1)
                ctx.bytes_downloaded += len(data)
                ctx.prefix_complete = len(data) < size
            except ByteSourceError as e:
                data = self._element_bytes(ctx)
                if data is None:
                    raise
                logger.info("Range fetch failed for %s (%s); using element pixels", ctx.url, e)
                ctx.prefix_complete = True
            ctx.prefix = data
            return data

    async def _fetch_image(self, ctx: ScanContext) -> bytes:
        prefix = await self._fetch_prefix(ctx)
        if ctx.prefix_complete:
            return prefix
        limit = self.settings.MAX_IMAGE_BYTES
        size = ctx.bundle.headers.file_size if ctx.bundle.headers else None
        if size is not None and size > limit:
            raise ByteSourceError(f"Image too large for pixel analysis ({size} bytes)")
        data = await self.byte_source.range_request(ctx.url, 0, limit - 1)
        ctx.bytes_downloaded += len(data)
        return data

    # -----------------------------
    # TASKS
    # -----------------------------
    async def _metadata_check(self, ctx: ScanContext) -> TaskOutcome:
        started = time.perf_counter()
        try:
            head = await self.byte_source.head_request(ctx.url)
        except ByteSourceError as e:
            ctx.bundle.network = self.network.analyze(None, (time.perf_counter() - started) * 1000, e)
            raise
        ctx.head = head
        ctx.bytes_downloaded += sum(len(k) + len(v) + 4 for k, v in head.headers.items())
        ctx.bundle.headers = self.headers.analyze(head.headers)
        ctx.bundle.network = self.network.analyze(head.headers, head.elapsed_ms)

        reasons: List[str] = []
        mime = ctx.bundle.headers.mime_type
        if mime and not mime.lower().startswith(("image/", "video/")):
            reasons.append(f"Unexpected content type: {mime}")
        size = ctx.bundle.headers.file_size
        if size is not None and not (MIN_REASONABLE_BYTES <= size <= MAX_REASONABLE_BYTES):
            reasons.append(f"Unusual file size: {size} bytes")
        return bool(reasons), reasons

    async def _manifest_check(self, ctx: ScanContext) -> TaskOutcome:
        data = await self._fetch_prefix(ctx)
        ctx.bundle.file = self.files.analyze(data, complete=ctx.prefix_complete)
        mime = ctx.bundle.headers.mime_type if ctx.bundle.headers else None
        outcome = await self.validator.validate(data, mime)
        ctx.validation = outcome

        if outcome.status == "invalid":
            return True, ["Manifest failed validation: " + "; ".join(outcome.errors[:3])]
        if outcome.status != "missing" and is_suspicious_source(ctx.bundle.url):
            return True, [FORGED_MANIFEST_REASON]
        if outcome.status == "valid-untrusted" and outcome.trust_level == "low":
            return True, ["Manifest signer is not trusted"]
        if outcome.status == "valid":
            return False, [f"Valid provenance manifest signed by {outcome.signer}"]
        return False, []

    async def _heuristic_scan(self, ctx: ScanContext) -> TaskOutcome:
        try:
            data = await self._fetch_prefix(ctx)
        except ByteSourceError:
            data = b""

        reasons: List[str] = []
        ai_finding = False
        needs_fallback = ctx.validation is None or ctx.validation.status in ("missing", "error")
        if needs_fallback:
            head_headers = ctx.head.headers if ctx.head else None
            report = await self.fallback.scan_fallback(
                data,
                ctx.media_type,
                url=ctx.url,
                headers=head_headers,
                load_time_ms=ctx.head.elapsed_ms if ctx.head else None,
                complete=ctx.prefix_complete,
            )
            ctx.fallback = report
            if ctx.bundle.file is None:
                ctx.bundle.file = report.bundle.file
            if ctx.validation is not None:
                ctx.validation = self.validator.merge_fallback(ctx.validation, report)
            for f in report.findings:
                if f.type == "signature" and ("AI" in f.description or "deepfake" in f.description):
                    ai_finding = True
                    reasons.append(f.description)
        elif ctx.bundle.file is None and data:
            ctx.bundle.file = self.files.analyze(data, complete=ctx.prefix_complete)

        fused = fuse_signals(ctx.bundle)
        suspicious = ai_finding or fused.verdict == "danger"
        if ctx.fallback is not None and ctx.fallback.suspicion > 0.5:
            suspicious = True
        if fused.verdict != "safe":
            reasons.extend(fused.reasons)
        return suspicious, reasons

    async def _image_analysis(self, ctx: ScanContext) -> TaskOutcome:
        data = await self._fetch_image(ctx)
        analysis = await asyncio.to_thread(self.image_analyzer, data)
        ctx.image_analysis = analysis

        reasons: List[str] = []
        if analysis.has_anomalies:
            reasons.append(f"Pixel anomalies detected (edge density {analysis.edge_density:.2f})")
        if analysis.model_backed and (analysis.synthetic_probability or 0.0) > 0.8:
            reasons.append(
                f"Image model rates content as synthetic ({analysis.synthetic_probability:.0%})"
            )
        return bool(reasons), reasons

    async def _video_analysis(self, ctx: ScanContext) -> TaskOutcome:
        remaining = ctx.remaining_ms()
        options = LoopAnalysisOptions(
            quality_mode="fast" if remaining < 1500 else "balanced",
            time_budget_ms=remaining,
            file_size=(ctx.bundle.headers.file_size or 0) if ctx.bundle.headers else 0,
        )
        source = self.frame_source_factory()
        try:
            result = await self.loop_detector.analyze(ctx.url, source, options)
        finally:
            source.close()
        ctx.loop_analysis = result

        if result.error:
            raise RuntimeError(f"Loop analysis failed: {result.error}")
        if result.is_loop:
            return True, [f"Video loop artifact detected ({result.confidence:.0%} confidence)"]
        return False, []

    # -----------------------------
    # AGGREGATION
    # -----------------------------
    def _partial_verdict(self, ctx: ScanContext) -> Tuple[Verdict, float, List[str], List[str]]:
        successful = [t for t in ctx.tasks if t.success]
        suspicious = [t for t in successful if t.suspicious]
        verdict, confidence = aggregate_task_results(len(suspicious), len(successful))

        fused = fuse_signals(ctx.bundle)
        # a manifest claim on a suspicious source settles the verdict on its own
        if _forged_manifest(ctx, fused):
            verdict, confidence = "danger", max(confidence, FORGED_MANIFEST_MIN_CONFIDENCE)

        signals = list(fused.signals) + [f"{t.name}: suspicious" for t in suspicious]
        reasons: List[str] = []
        for t in suspicious:
            reasons.extend(t.reasons)
        reasons.extend(fused.reasons)
        if not successful:
            reasons.append("No analysis task completed")
        return verdict, confidence, _dedupe(signals), _dedupe(reasons)

    def _aggregate(self, ctx: ScanContext) -> ScanResult:
        verdict, confidence, signals, reasons = self._partial_verdict(ctx)
        return self._result(ctx, verdict, confidence, "complete", signals, reasons)

    def _timeout_result(self, ctx: ScanContext, message: str) -> ScanResult:
        self._transition(ctx, ScanState.TIMED_OUT)
        verdict, confidence, signals, reasons = self._partial_verdict(ctx)
        if verdict != "danger":
            verdict = "warning"
        return self._result(
            ctx,
            verdict=verdict,
            confidence=min(confidence, TIMEOUT_CONFIDENCE_CAP),
            status="timeout",
            signals=signals,
            reasons=_dedupe([message] + reasons),
            error=message,
        )

    def _result(
        self,
        ctx: ScanContext,
        verdict: Verdict,
        confidence: float,
        status: ScanStatus,
        signals: List[str],
        reasons: List[str],
        error: Optional[str] = None,
    ) -> ScanResult:
        return ScanResult(
            url=ctx.url,
            verdict=verdict,
            confidence=max(0.0, min(1.0, confidence)),
            status=status,
            signals=signals,
            reasons=reasons,
            scan_time_ms=ctx.elapsed_ms(),
            bytes_downloaded=ctx.bytes_downloaded,
            error=error,
            bundle=ctx.bundle.model_copy(deep=True),
            validation=ctx.validation,
            fallback=ctx.fallback,
            loop_analysis=ctx.loop_analysis,
            image_analysis=ctx.image_analysis,
            tasks=list(ctx.tasks),
        )

    def _transition(self, ctx: ScanContext, state: ScanState) -> None:
        logger.debug("scan %s: %s -> %s", ctx.url, ctx.state.value, state.value)
        ctx.state = state

    # -----------------------------
    # DIAGNOSTICS
    # -----------------------------
    def _record(self, result: ScanResult) -> None:
        if result.status == "fast-path":
            methods = ["quick-heuristics"]
        else:
            methods = [t.name for t in result.tasks if t.success]
        self._history.append((result.scan_time_ms, result.bytes_downloaded, methods))

    def get_performance_report(self) -> PerformanceReport:
        scans = list(self._history)
        n = len(scans)
        accuracies = [
            max(METHOD_ACCURACY.get(m, 0.5) for m in methods)
            for _, _, methods in scans
            if methods
        ]
        return PerformanceReport(
            avg_scan_time_ms=sum(s[0] for s in scans) / n if n else 0.0,
            avg_bandwidth_bytes=sum(s[1] for s in scans) / n if n else 0.0,
            accuracy_estimate=sum(accuracies) / len(accuracies) if accuracies else 0.0,
            scans_recorded=n,
            cache=self.cache.stats(),
            loop_detector=self.loop_detector.tuner.report(),
            frame_pool=self.loop_detector.pool.stats(),
        )

    async def aclose(self) -> None:
        close = getattr(self.byte_source, "aclose", None)
        if close is not None:
            await close()
        self.loop_detector.pool.clear()


@lru_cache()
def get_scheduler() -> ScanScheduler:
    """
    Returns the process-wide scheduler used by the API.
    """
    return ScanScheduler()
