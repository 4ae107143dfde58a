# tests/test_fallback.py

import pytest

from mediaguard.core.schemas import Finding
from mediaguard.detectors.fallback import (
    HeuristicFallbackAnalyzer,
    jpeg_dimensions,
    metadata_type,
    overall_confidence,
    scan_ai_indicators,
    scan_metadata,
    scan_signatures,
    scan_structure,
)

from conftest import make_jpeg

EXIF_JPEG = b"\xff\xd8\xff\xe1\x00\x40Exif\x00\x00Make\x00Canon\x00Software\x00GIMP 2.10\x00"
AI_PNG = (
    b"\x89PNG\r\n\x1a\n\x00\x00\x00\x0dIHDR\x00\x00\x04\x00\x00\x00\x04\x00"
    b"tEXtSoftware\x00Midjourney v6 generated"
)


# --- Sub-scans ---

def test_exif_metadata_is_read():
    findings = scan_metadata(EXIF_JPEG)

    assert len(findings) == 1
    assert findings[0].type == "metadata"
    assert findings[0].description == "EXIF metadata found: Canon"
    assert findings[0].evidence == "Software: GIMP 2.10"


def test_xmp_creator_and_photoshop_blocks():
    data = b"\xff\xd8<x:xmpmeta><dc:creator>Ann Smith</dc:creator></x:xmpmeta>8BIM\x04\x04"
    findings = scan_metadata(data)

    descriptions = [f.description for f in findings]
    assert descriptions == ["XMP metadata found", "Adobe Photoshop metadata detected"]
    assert findings[0].evidence == "Creator: Ann Smith"


def test_signature_scan_names_tools():
    findings = scan_signatures(b"...created with FaceSwap, retouched in Lightroom, base by DALL-E...")
    descriptions = {f.description for f in findings}

    assert "AI generation tool detected: dall-e" in descriptions
    assert "Editing software detected: lightroom" in descriptions
    assert "Known deepfake tool signature: faceswap" in descriptions


def test_excessive_app_segments_flag_structure():
    data = b"\xff\xd8" + b"\xff\xe2\x00\x04\x00\x00" * 12 + b"\xff\xda"
    findings = scan_structure(data, "image")

    assert len(findings) == 1
    assert findings[0].type == "structure"
    assert findings[0].evidence == "Excessive application segments (11)"


def test_normal_jpeg_structure_is_clean():
    assert scan_structure(make_jpeg(), "image") == []


def test_video_container_must_be_recognized():
    assert scan_structure(b"\x00\x00\x00\x18ftypisom\x00\x00", "video") == []
    findings = scan_structure(b"definitely not a video", "video")
    assert findings[0].description == "Unrecognized video container"


def test_ai_indicators_for_generated_png():
    findings = scan_ai_indicators(AI_PNG, "image")
    descriptions = [f.description for f in findings]

    assert "AI generation keywords in metadata" in descriptions
    assert "Missing typical camera metadata" in descriptions


def test_missing_camera_check_is_image_only():
    findings = scan_ai_indicators(b"\x00\x00\x00\x18ftypisom", "video")
    assert findings == []


def test_perfect_ratio_from_jpeg_dimensions():
    jpeg = make_jpeg(64, 48)
    assert jpeg_dimensions(jpeg) == (64, 48)

    findings = scan_ai_indicators(jpeg, "image")
    ratio = [f for f in findings if f.description.startswith("Perfect aspect ratio")]
    assert ratio[0].evidence == "Dimensions: 64x48"


# --- Aggregation ---

def test_overall_confidence_is_type_weighted():
    findings = [
        Finding(type="metadata", description="m", confidence=1.0),
        Finding(type="anomaly", description="a", confidence=0.0),
    ]
    assert overall_confidence(findings) == pytest.approx(0.8)
    assert overall_confidence([]) == 0.0


def test_metadata_type_uses_strongest_finding():
    findings = [
        Finding(type="metadata", description="XMP metadata found", confidence=0.8),
        Finding(type="metadata", description="EXIF metadata found: Nikon", confidence=0.9),
    ]
    assert metadata_type(findings) == "EXIF"
    assert metadata_type([Finding(type="metadata", description="Adobe Photoshop metadata detected", confidence=0.8)]) == "8BIM"
    assert metadata_type([]) is None


# --- Full fallback ---

@pytest.mark.asyncio
async def test_scan_fallback_on_edited_camera_jpeg():
    report = await HeuristicFallbackAnalyzer().scan_fallback(
        EXIF_JPEG,
        "image",
        url="https://photos.example.org/a.jpg",
        headers={"content-type": "image/jpeg"},
        load_time_ms=150.0,
    )

    assert report.has_metadata
    assert report.metadata_type == "EXIF"
    assert report.software_agent == "GIMP 2.10"
    assert report.recommends_upgrade
    assert report.confidence == pytest.approx((0.9 * 0.4 + 0.7 * 0.3) / 0.7)
    assert report.bundle.file.camera_model == "Canon"
    assert report.bundle.network is not None
    assert report.bundle.url.domain == "photos.example.org"


@pytest.mark.asyncio
async def test_scan_fallback_survives_a_failing_subscan(mocker):
    mocker.patch(
        "mediaguard.detectors.fallback.scan_signatures",
        side_effect=RuntimeError("boom"),
    )
    report = await HeuristicFallbackAnalyzer().scan_fallback(AI_PNG, "image")

    assert not any(f.type == "signature" for f in report.findings)
    assert any(f.type == "anomaly" for f in report.findings)
    assert report.bundle.file.generation_markers == ["midjourney", "generated"]


def test_build_bundle_without_network_context():
    bundle = HeuristicFallbackAnalyzer().build_bundle(b"")
    assert bundle.file is None
    assert bundle.url is None
    assert bundle.headers is None
    assert bundle.network is None
