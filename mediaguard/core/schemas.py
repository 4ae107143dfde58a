# mediaguard/core/schemas.py
from typing import Any, Dict, List, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


Verdict = Literal["safe", "warning", "danger"]
ValidationStatus = Literal["valid", "valid-untrusted", "invalid", "missing", "error"]
TrustLevel = Literal["high", "medium", "low"]
MediaType = Literal["image", "video"]
ScanStatus = Literal["complete", "fast-path", "cached", "timeout", "error"]
FindingType = Literal["metadata", "signature", "structure", "anomaly"]
VideoQuality = Literal["low", "medium", "high"]


def trust_level_for(score: int) -> TrustLevel:
    if score >= 80:
        return "high"
    if score >= 50:
        return "medium"
    return "low"


# -----------------------------
# MANIFEST
# -----------------------------
class Assertion(BaseModel):
    label: str
    data: Any = None
    hash: Optional[str] = None


class Ingredient(BaseModel):
    title: Optional[str] = None
    format: Optional[str] = None
    document_id: Optional[str] = None
    instance_id: Optional[str] = None
    relationship: Optional[str] = None
    hash: Optional[str] = None


class TimestampInfo(BaseModel):
    gen_time: Optional[str] = None
    timestamp_authority: Optional[str] = None


class Signature(BaseModel):
    algorithm: Optional[str] = None
    certificate: Optional[str] = None
    signature_value: Optional[str] = None
    timestamp_info: Optional[TimestampInfo] = None


class Producer(BaseModel):
    name: Optional[str] = None
    identifier: Optional[str] = None
    credential: List[str] = []


class ManifestRecord(BaseModel):
    claim_generator: Optional[str] = None
    title: Optional[str] = None
    format: Optional[str] = None
    instance_id: Optional[str] = None
    timestamp: Optional[str] = None
    producer: Optional[Producer] = None
    assertions: List[Assertion] = []
    ingredients: List[Ingredient] = []
    signature: Optional[Signature] = None


class CertificateRecord(BaseModel):
    subject: str = "Unknown"
    issuer: str = "Unknown"
    serial_number: str = ""
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    is_valid: bool = False
    is_trusted: bool = False
    purpose: List[str] = []

    @property
    def is_self_signed(self) -> bool:
        return self.subject == self.issuer

    @model_validator(mode="after")
    def _self_signed_is_never_trusted(self) -> "CertificateRecord":
        if self.is_self_signed and self.is_trusted:
            self.is_trusted = False
        return self


class ValidationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ValidationStatus
    errors: List[str] = []
    warnings: List[str] = []
    confidence_score: int = Field(default=0, ge=0, le=100)
    manifest: Optional[ManifestRecord] = None
    certificate_chain: List[CertificateRecord] = []
    signer: Optional[str] = None
    signed_timestamp: Optional[str] = None
    software_agent: Optional[str] = None

    @computed_field  # type: ignore[misc]
    @property
    def trust_level(self) -> TrustLevel:
        return trust_level_for(self.confidence_score)


# -----------------------------
# SIGNALS
# -----------------------------
class HeaderSignals(BaseModel):
    has_manifest_hint: bool = False
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    server_signature: Optional[str] = None
    last_modified: Optional[str] = None
    via: Optional[str] = None
    x_forwarded_for: Optional[str] = None
    cdn_headers: List[str] = []


class URLSignals(BaseModel):
    suspicion_score: float = Field(default=0.0, ge=0.0, le=1.0)
    trust_score: float = Field(default=0.0, ge=0.0, le=1.0)
    generated_likelihood: float = Field(default=0.0, ge=0.0, le=1.0)
    temporary_hosting: bool = False
    domain: str = ""
    tld: str = ""


class FileSignals(BaseModel):
    has_manifest_hint: bool = False
    camera_model: Optional[str] = None
    has_gps_data: bool = False
    editing_software: Optional[str] = None
    generation_markers: List[str] = []
    header_consistency: bool = True
    file_format_valid: bool = True


class NetworkSignals(BaseModel):
    load_time_ms: float = 0.0
    suspicious_fast_load: bool = False
    has_rate_limiting: bool = False
    network_error: bool = False
    error_type: Optional[str] = None
    server_location: Optional[str] = None
    cdn_fingerprint: Optional[str] = None


class SignalBundle(BaseModel):
    headers: Optional[HeaderSignals] = None
    url: Optional[URLSignals] = None
    file: Optional[FileSignals] = None
    network: Optional[NetworkSignals] = None


class FusedRisk(BaseModel):
    verdict: Verdict
    confidence: float
    risk: float
    signals: List[str] = []
    reasons: List[str] = []


# -----------------------------
# FALLBACK
# -----------------------------
class Finding(BaseModel):
    type: FindingType
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: Optional[str] = None


class FallbackReport(BaseModel):
    bundle: SignalBundle = SignalBundle()
    findings: List[Finding] = []
    has_metadata: bool = False
    metadata_type: Optional[str] = None
    confidence: float = 0.0
    suspicion: float = 0.0
    recommends_upgrade: bool = False
    software_agent: Optional[str] = None
    creator: Optional[str] = None


# -----------------------------
# LOOP / IMAGE ANALYSIS
# -----------------------------
class LoopThresholds(BaseModel):
    similarity: float
    motion: float
    optical_flow: float


class LoopPerformance(BaseModel):
    processing_time_ms: float = 0.0
    frames_analyzed: int = 0
    memory_used_bytes: int = 0


class LoopAnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_loop: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    motion_consistency: float = Field(default=0.0, ge=0.0, le=1.0)
    optical_flow_score: float = Field(default=0.0, ge=0.0, le=1.0)
    thresholds: Optional[LoopThresholds] = None
    quality: Optional[VideoQuality] = None
    skipped: bool = False
    error: Optional[str] = None
    performance: LoopPerformance = LoopPerformance()


class ImageAnalysis(BaseModel):
    width: int = 0
    height: int = 0
    complexity: float = 0.0
    edge_density: float = 0.0
    has_anomalies: bool = False
    synthetic_probability: Optional[float] = None
    model_backed: bool = False


# -----------------------------
# SCAN
# -----------------------------
class ElementHandle(BaseModel):
    media_type: MediaType = "image"
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    data_url: Optional[str] = None  # already-loaded pixels, used when the network is blocked


class TaskResult(BaseModel):
    name: str
    priority: int
    success: bool
    suspicious: bool = False
    duration_ms: float = 0.0
    error: Optional[str] = None
    reasons: List[str] = []


class ScanResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    verdict: Verdict
    confidence: float = Field(ge=0.0, le=1.0)
    status: ScanStatus = "complete"
    signals: List[str] = []
    reasons: List[str] = []
    scan_time_ms: float = 0.0
    bytes_downloaded: int = 0
    error: Optional[str] = None

    bundle: Optional[SignalBundle] = None
    validation: Optional[ValidationOutcome] = None
    fallback: Optional[FallbackReport] = None
    loop_analysis: Optional[LoopAnalysisResult] = None
    image_analysis: Optional[ImageAnalysis] = None
    tasks: List[TaskResult] = []

    def to_record(self) -> Dict[str, Any]:
        """Flat shape handed to history storage."""
        return {
            "verdict": self.verdict,
            "confidence": self.confidence,
            "scanTime": self.scan_time_ms,
            "bytesDownloaded": self.bytes_downloaded,
            "reasons": list(self.reasons),
            "signals": list(self.signals),
        }


class ScanRequest(BaseModel):
    url: str
    budgetMs: Optional[int] = None
    element: Optional[ElementHandle] = None


class ScanResponse(BaseModel):
    verdict: Verdict
    confidence: float
    status: ScanStatus
    signals: List[str]
    reasons: List[str]
    scanTime: float
    bytesDownloaded: int
    error: Optional[str] = None
    explanation: str
    extra: Dict[str, Any] = {}


class PerformanceReport(BaseModel):
    avg_scan_time_ms: float = 0.0
    avg_bandwidth_bytes: float = 0.0
    accuracy_estimate: float = 0.0
    scans_recorded: int = 0
    cache: Dict[str, Any] = {}
    loop_detector: Dict[str, Any] = {}
    frame_pool: Dict[str, Any] = {}
