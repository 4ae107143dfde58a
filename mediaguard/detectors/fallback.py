# mediaguard/detectors/fallback.py

import asyncio
import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple

from mediaguard.core.heuristics import fuse_signals
from mediaguard.core.schemas import FallbackReport, Finding, MediaType, SignalBundle
from mediaguard.detectors.signals import (
    FileSignatureAnalyzer,
    HeaderAnalyzer,
    NetworkBehaviorAnalyzer,
    URLPatternAnalyzer,
    sniff_mime,
)

logger = logging.getLogger(__name__)

EXIF_MARKER = b"\xff\xe1"
XMP_MARKER = b"<x:"
PHOTOSHOP_MARKER = b"8BIM"

AI_GENERATORS = (
    "midjourney", "dalle", "dall-e", "stable diffusion", "firefly",
    "nightcafe", "artbreeder", "runway", "leonardo", "playground",
)
EDITING_SOFTWARE = (
    "adobe photoshop", "gimp", "canva", "facetune", "snapseed",
    "vsco", "lightroom", "aftereffects", "premiere",
)
DEEPFAKE_TOOLS = (
    "deepfacelab", "faceswap", "deepfakes", "first order motion",
    "wav2lip", "face2face", "fsgan",
)
CAMERA_INDICATORS = ("canon", "nikon", "sony", "apple", "samsung", "make", "model")
PERFECT_RATIOS = (1.0, 1.5, 1.33, 1.78, 2.0)

FINDING_WEIGHTS: Dict[str, float] = {
    "metadata": 0.4,
    "signature": 0.3,
    "structure": 0.2,
    "anomaly": 0.1,
}

SIGNATURE_WINDOW = 8192
TEXT_WINDOW = 4096


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="ignore")


def _exif_field(text: str, field: str) -> Optional[str]:
    match = re.search(field + r"[\x00\s]*([^\x00\n\r]+)", text, re.IGNORECASE)
    return match.group(1).strip() if match else None


def jpeg_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
    """(width, height) from the first SOF0/SOF2 marker."""
    if not data.startswith(b"\xff\xd8"):
        return None
    for offset in range(2, len(data) - 8):
        if data[offset] == 0xFF and data[offset + 1] in (0xC0, 0xC2):
            height = (data[offset + 5] << 8) | data[offset + 6]
            width = (data[offset + 7] << 8) | data[offset + 8]
            return width, height
    return None


# -----------------------------
# SUB-SCANS
# -----------------------------
def scan_metadata(data: bytes) -> List[Finding]:
    findings: List[Finding] = []

    exif_at = data.find(EXIF_MARKER)
    if exif_at != -1:
        text = _decode(data[exif_at:exif_at + 1000])
        camera = _exif_field(text, "Make") or _exif_field(text, "Model")
        software = _exif_field(text, "Software")
        findings.append(Finding(
            type="metadata",
            description=f"EXIF metadata found: {camera or 'Unknown camera'}",
            confidence=0.9,
            evidence=f"Software: {software}" if software else None,
        ))

    xmp_at = data.find(XMP_MARKER)
    if xmp_at != -1:
        text = _decode(data[xmp_at:xmp_at + 2000])
        creator = re.search(r"dc:creator[^>]*>([^<]+)", text, re.IGNORECASE)
        findings.append(Finding(
            type="metadata",
            description="XMP metadata found",
            confidence=0.8,
            evidence=f"Creator: {creator.group(1).strip()}" if creator else None,
        ))

    if data.find(PHOTOSHOP_MARKER) != -1:
        findings.append(Finding(
            type="metadata",
            description="Adobe Photoshop metadata detected",
            confidence=0.8,
            evidence="Contains 8BIM resource blocks",
        ))

    return findings


def scan_signatures(data: bytes) -> List[Finding]:
    text = _decode(data[:SIGNATURE_WINDOW]).lower()
    findings: List[Finding] = []

    for tool in AI_GENERATORS:
        if tool in text:
            findings.append(Finding(
                type="signature",
                description=f"AI generation tool detected: {tool}",
                confidence=0.95,
                evidence="Found in metadata strings",
            ))
    for software in EDITING_SOFTWARE:
        if software in text:
            findings.append(Finding(
                type="signature",
                description=f"Editing software detected: {software}",
                confidence=0.7,
                evidence="Found in metadata strings",
            ))
    for tool in DEEPFAKE_TOOLS:
        if tool in text:
            findings.append(Finding(
                type="signature",
                description=f"Known deepfake tool signature: {tool}",
                confidence=0.9,
                evidence="Suspicious generation tool detected",
            ))
    return findings


def _jpeg_segment_findings(data: bytes) -> List[Finding]:
    offset = 2
    segments = 0
    while offset < len(data) - 3 and segments < 50:
        if data[offset] != 0xFF:
            break
        marker = data[offset + 1]
        if marker == 0xDA:
            break
        segments += 1
        if 0xE0 <= marker <= 0xEF and segments > 10:
            return [Finding(
                type="structure",
                description="Unusual JPEG segment structure",
                confidence=0.4,
                evidence=f"Excessive application segments ({segments})",
            )]
        length = (data[offset + 2] << 8) | data[offset + 3]
        offset += length + 2
    return []


def scan_structure(data: bytes, media_type: MediaType) -> List[Finding]:
    mime = sniff_mime(data)
    if media_type == "image":
        if mime == "image/jpeg":
            return _jpeg_segment_findings(data)
        if mime == "image/png" and data[12:16] != b"IHDR":
            return [Finding(
                type="structure",
                description="PNG does not start with an IHDR chunk",
                confidence=0.5,
                evidence=f"First chunk: {data[12:16]!r}",
            )]
        return []

    if mime is None or not mime.startswith("video/"):
        return [Finding(
            type="structure",
            description="Unrecognized video container",
            confidence=0.3,
            evidence="No ftyp or EBML header at start of file",
        )]
    return []


def scan_ai_indicators(data: bytes, media_type: MediaType) -> List[Finding]:
    text = _decode(data[:TEXT_WINDOW]).lower()
    findings: List[Finding] = []

    if "generated" in text or "synthesized" in text:
        findings.append(Finding(
            type="anomaly",
            description="AI generation keywords in metadata",
            confidence=0.8,
            evidence="Contains generation-related terms",
        ))

    if media_type == "image" and not any(i in text for i in CAMERA_INDICATORS):
        findings.append(Finding(
            type="anomaly",
            description="Missing typical camera metadata",
            confidence=0.6,
            evidence="No camera make/model information found",
        ))

    dims = jpeg_dimensions(data)
    if dims and dims[1] > 0:
        ratio = dims[0] / dims[1]
        if any(abs(ratio - r) < 0.01 for r in PERFECT_RATIOS):
            findings.append(Finding(
                type="anomaly",
                description="Perfect aspect ratio (AI-typical)",
                confidence=0.5,
                evidence=f"Dimensions: {dims[0]}x{dims[1]}",
            ))
    return findings


# -----------------------------
# AGGREGATION
# -----------------------------
def overall_confidence(findings: List[Finding]) -> float:
    if not findings:
        return 0.0
    total = sum(FINDING_WEIGHTS.get(f.type, 0.1) for f in findings)
    weighted = sum(f.confidence * FINDING_WEIGHTS.get(f.type, 0.1) for f in findings)
    return min(1.0, weighted / total) if total else 0.0


def metadata_type(findings: List[Finding]) -> Optional[str]:
    meta = [f for f in findings if f.type == "metadata"]
    if not meta:
        return None
    best = max(meta, key=lambda f: f.confidence)
    for kind in ("EXIF", "XMP", "IPTC", "JFIF"):
        if kind in best.description:
            return kind
    if "Photoshop" in best.description:
        return "8BIM"
    return "UNKNOWN"


def recommends_upgrade(findings: List[Finding]) -> bool:
    return any(
        "Adobe" in f.description
        or "camera" in f.description
        or (f.type == "metadata" and f.confidence > 0.8)
        for f in findings
    )


def _evidence_value(findings: List[Finding], prefix: str) -> Optional[str]:
    for f in findings:
        if f.evidence and f.evidence.startswith(prefix):
            return f.evidence[len(prefix):].strip() or None
    return None


class HeuristicFallbackAnalyzer:
    """Manifest-free evidence: metadata, tool signatures, structure and URL shape."""

    def __init__(self):
        self.headers = HeaderAnalyzer()
        self.urls = URLPatternAnalyzer()
        self.files = FileSignatureAnalyzer()
        self.network = NetworkBehaviorAnalyzer()

    async def scan_fallback(
        self,
        data: bytes,
        media_type: MediaType,
        url: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        load_time_ms: Optional[float] = None,
        complete: bool = False,
    ) -> FallbackReport:
        scans = await asyncio.gather(
            asyncio.to_thread(scan_metadata, data),
            asyncio.to_thread(scan_signatures, data),
            asyncio.to_thread(scan_structure, data, media_type),
            asyncio.to_thread(scan_ai_indicators, data, media_type),
            return_exceptions=True,
        )

        findings: List[Finding] = []
        metadata_findings: List[Finding] = []
        for name, result in zip(("metadata", "signature", "structure", "ai-indicator"), scans):
            if isinstance(result, BaseException):
                logger.warning("Fallback %s scan failed [input]: %s", name, result)
                continue
            findings.extend(result)
            if name == "metadata":
                metadata_findings = result

        bundle = self.build_bundle(data, url, headers, load_time_ms, complete)
        fused = fuse_signals(bundle)

        return FallbackReport(
            bundle=bundle,
            findings=findings,
            has_metadata=bool(metadata_findings),
            metadata_type=metadata_type(metadata_findings),
            confidence=overall_confidence(findings),
            suspicion=max(0.0, min(1.0, fused.risk)),
            recommends_upgrade=recommends_upgrade(findings),
            software_agent=_evidence_value(findings, "Software:"),
            creator=_evidence_value(findings, "Creator:"),
        )

    def build_bundle(
        self,
        data: bytes,
        url: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        load_time_ms: Optional[float] = None,
        complete: bool = False,
    ) -> SignalBundle:
        """Each group is filled independently; a failing analyzer leaves its group empty."""
        bundle = SignalBundle()
        try:
            bundle.file = self.files.analyze(data, complete=complete) if data else None
        except Exception as e:
            logger.warning("File signature analysis failed [input]: %s", e)
        if url:
            try:
                bundle.url = self.urls.analyze(url)
            except Exception as e:
                logger.warning("URL analysis failed [input]: %s", e)
        if headers is not None:
            bundle.headers = self.headers.analyze(headers)
            if load_time_ms is not None:
                bundle.network = self.network.analyze(headers, load_time_ms)
        return bundle
