# tests/test_heuristics.py

import pytest

from mediaguard.core.heuristics import (
    aggregate_task_results,
    fuse_signals,
    is_suspicious_source,
    quick_heuristics,
)
from mediaguard.core.schemas import (
    ElementHandle,
    FileSignals,
    HeaderSignals,
    NetworkSignals,
    SignalBundle,
    URLSignals,
)


def test_empty_bundle_is_safe_with_default_reason():
    risk = fuse_signals(SignalBundle())

    assert risk.verdict == "safe"
    assert risk.confidence == pytest.approx(1.0)
    assert risk.signals == ["No red flags detected"]
    assert risk.reasons == ["Content appears authentic based on available signals"]


def test_manifest_on_clean_source_lowers_risk():
    bundle = SignalBundle(
        headers=HeaderSignals(has_manifest_hint=True),
        url=URLSignals(domain="photos.example.org", trust_score=0.5),
    )
    risk = fuse_signals(bundle)

    assert risk.verdict == "safe"
    assert risk.risk == pytest.approx(-0.4)
    assert "Manifest signature" in risk.signals


def test_manifest_on_suspicious_source_is_danger():
    bundle = SignalBundle(
        file=FileSignals(has_manifest_hint=True),
        url=URLSignals(suspicion_score=0.9, domain="fake-images.example.net"),
    )
    risk = fuse_signals(bundle)

    assert risk.verdict == "danger"
    assert risk.confidence == pytest.approx(0.95)
    assert "Suspicious manifest signature" in risk.signals
    assert "Suspicious URL pattern" in risk.signals


def test_generation_markers_alone_are_a_warning():
    risk = fuse_signals(SignalBundle(file=FileSignals(generation_markers=["midjourney"])))

    assert risk.verdict == "warning"
    assert risk.confidence == pytest.approx(0.3)
    assert risk.reasons == ["AI generation markers found: midjourney"]


def test_camera_metadata_offsets_fast_load():
    bundle = SignalBundle(
        file=FileSignals(camera_model="Nikon"),
        network=NetworkSignals(suspicious_fast_load=True),
    )
    risk = fuse_signals(bundle)
    assert risk.verdict == "safe"
    assert risk.risk == pytest.approx(-0.1)


def test_complex_cdn_and_rate_limit_add_up():
    bundle = SignalBundle(
        headers=HeaderSignals(cdn_headers=["a", "b", "c"]),
        network=NetworkSignals(has_rate_limiting=True),
        file=FileSignals(header_consistency=False),
    )
    risk = fuse_signals(bundle)
    assert risk.verdict == "warning"
    assert risk.risk == pytest.approx(0.4)


@pytest.mark.parametrize("signals, expected", [
    (None, False),
    (URLSignals(domain="images.example.org"), False),
    (URLSignals(domain="placeholder-pics.net"), True),
    (URLSignals(temporary_hosting=True, domain="x.org"), True),
    (URLSignals(generated_likelihood=0.6, domain="x.org"), True),
])
def test_is_suspicious_source(signals, expected):
    assert is_suspicious_source(signals) is expected


# --- Fast path ---

def test_quick_heuristics_malicious_url():
    verdict, confidence, reasons = quick_heuristics(URLSignals(suspicion_score=1.0))
    assert verdict == "danger"
    assert confidence == 0.9
    assert reasons[0] == "URL matches known malicious or synthetic patterns"


def test_quick_heuristics_small_element_tips_into_warning():
    element = ElementHandle(width=30, height=200)
    verdict, confidence, reasons = quick_heuristics(URLSignals(suspicion_score=0.35), element)

    assert verdict == "warning"
    assert confidence == 0.75
    assert "Very small media element" in reasons


def test_quick_heuristics_trusted_domain():
    verdict, confidence, reasons = quick_heuristics(URLSignals(trust_score=1.0))
    assert verdict == "safe"
    assert confidence == pytest.approx(0.9)
    assert reasons == ["Content from trusted domain"]


def test_quick_heuristics_unknown_domain_is_unsure():
    verdict, confidence, _ = quick_heuristics(URLSignals())
    assert verdict == "safe"
    assert confidence == pytest.approx(0.5)


# --- Task aggregation ---

@pytest.mark.parametrize("suspicious, successful, verdict, confidence", [
    (0, 0, "warning", 0.3),
    (0, 5, "safe", 0.9),
    (1, 4, "safe", 0.6),
    (1, 2, "warning", 0.5 + 0.2 * 0.833),
    (3, 4, "danger", 0.7 + 0.15 * 0.625),
    (4, 4, "danger", 0.95),
])
def test_aggregate_task_results(suspicious, successful, verdict, confidence):
    got_verdict, got_confidence = aggregate_task_results(suspicious, successful)
    assert got_verdict == verdict
    assert got_confidence == pytest.approx(confidence)
