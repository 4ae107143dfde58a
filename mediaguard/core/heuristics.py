# mediaguard/core/heuristics.py
import re
from typing import List, Optional, Tuple

from mediaguard.core.schemas import ElementHandle, FusedRisk, SignalBundle, URLSignals, Verdict


SUSPICIOUS_DOMAIN_RE = re.compile(r"fake|test|generated|placeholder|malicious", re.IGNORECASE)


def is_suspicious_source(url_signals: Optional[URLSignals]) -> bool:
    """A manifest claim on such a source counts against the media."""
    if url_signals is None:
        return False
    return (
        url_signals.suspicion_score > 0.5
        or url_signals.generated_likelihood > 0.5
        or url_signals.temporary_hosting
        or bool(SUSPICIOUS_DOMAIN_RE.search(url_signals.domain))
    )


# -----------------------------
# SIGNAL FUSION
# -----------------------------
def fuse_signals(bundle: SignalBundle) -> FusedRisk:
    """
    Additive risk over whichever signal groups are present.

    Policy:
      - risk > 0.5 → danger
      - risk > 0.2 → warning
      - else       → safe, confidence 1 - risk
    """
    risk = 0.0
    signals: List[str] = []
    reasons: List[str] = []

    manifest_hint = bool(
        (bundle.headers and bundle.headers.has_manifest_hint)
        or (bundle.file and bundle.file.has_manifest_hint)
    )
    if manifest_hint:
        if is_suspicious_source(bundle.url):
            risk += 0.6
            signals.append("Suspicious manifest signature")
            reasons.append("Manifest detected on suspicious source - likely self-signed or forged")
        else:
            risk -= 0.4
            signals.append("Manifest signature")
            reasons.append("Content has an embedded provenance manifest")

    if bundle.url:
        if bundle.url.suspicion_score > 0.8:
            risk += 0.4
            signals.append("Suspicious URL pattern")
            reasons.append("URL contains suspicious patterns or domains")
        if bundle.url.trust_score > 0.9:
            risk -= 0.3
            signals.append("Trusted domain")
            reasons.append("Content from trusted domain")
        if bundle.url.generated_likelihood > 0.7:
            risk += 0.3
            signals.append("AI service domain")
            reasons.append("URL suggests AI-generated content")

    if bundle.file:
        if bundle.file.generation_markers:
            risk += 0.3
            signals.append("AI generation markers")
            reasons.append("AI generation markers found: " + ", ".join(bundle.file.generation_markers))
        if bundle.file.camera_model:
            risk -= 0.2
            signals.append("Camera metadata")
            reasons.append(f"Camera metadata present: {bundle.file.camera_model}")
        if not bundle.file.header_consistency:
            risk += 0.2
            signals.append("File structure issues")
            reasons.append("File structure inconsistencies detected")

    if bundle.network:
        if bundle.network.suspicious_fast_load:
            risk += 0.1
            signals.append("Suspicious load pattern")
            reasons.append("Unusually fast load time may indicate cached/generated content")
        if bundle.network.has_rate_limiting:
            risk += 0.1
            signals.append("Rate limiting detected")
            reasons.append("Server implements rate limiting (common with AI services)")

    if bundle.headers and len(bundle.headers.cdn_headers) > 2:
        risk += 0.1
        signals.append("Complex CDN setup")
        reasons.append("Complex CDN configuration may indicate content farms")

    if risk > 0.5:
        verdict: Verdict = "danger"
        confidence = min(max(risk, 0.1), 0.95)
    elif risk > 0.2:
        verdict = "warning"
        confidence = min(max(risk, 0.1), 0.95)
    else:
        verdict = "safe"
        confidence = min(1.0, 1.0 - risk)
        signals = signals or ["No red flags detected"]
        reasons = reasons or ["Content appears authentic based on available signals"]

    return FusedRisk(
        verdict=verdict,
        confidence=confidence,
        risk=risk,
        signals=signals,
        reasons=reasons,
    )


# -----------------------------
# FAST PATH
# -----------------------------
def quick_heuristics(
    url_signals: URLSignals,
    element: Optional[ElementHandle] = None,
) -> Tuple[Verdict, float, List[str]]:
    """
    URL + element-size verdict with no network access.
    Only a clearly malicious or a clearly trusted source ends up confident.
    """
    suspicion = url_signals.suspicion_score
    reasons: List[str] = []

    if element is not None and element.width and element.height:
        if element.width < 50 or element.height < 50:
            suspicion = min(1.0, suspicion + 0.1)
            reasons.append("Very small media element")

    if suspicion > 0.7:
        reasons.insert(0, "URL matches known malicious or synthetic patterns")
        return "danger", 0.9, reasons
    if suspicion > 0.4:
        reasons.insert(0, "URL contains suspicious patterns")
        return "warning", 0.75, reasons

    if url_signals.trust_score > 0.8:
        reasons.insert(0, "Content from trusted domain")
    return "safe", 0.5 + 0.4 * url_signals.trust_score, reasons


# -----------------------------
# TASK AGGREGATION
# -----------------------------
def aggregate_task_results(suspicious: int, successful: int) -> Tuple[Verdict, float]:
    """
    Map the share of suspicious task outcomes to a verdict.

      ratio > 0.6 → danger  (0.70 .. 0.95)
      ratio > 0.3 → warning (0.50 .. 0.80)
      else        → safe    (0.90 .. 0.60)
    """
    if successful <= 0:
        return "warning", 0.3

    ratio = suspicious / successful
    if ratio > 0.6:
        return "danger", min(0.95, 0.7 + (ratio - 0.6) * 0.625)
    if ratio > 0.3:
        return "warning", min(0.8, 0.5 + (ratio - 0.3) * 0.833)
    return "safe", max(0.6, 0.9 - ratio * 1.5)
