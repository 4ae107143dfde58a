# tests/test_api.py

from functools import partial

import pytest
from fastapi.testclient import TestClient

from mediaguard.detectors.image import analyze_image
from mediaguard.detectors.manifest import ManifestValidator
from mediaguard.main import app
from mediaguard.services.scheduler import ScanScheduler, get_scheduler

from conftest import FakeByteSource, FakeReader


@pytest.fixture
def client(clean_jpeg):
    scheduler = ScanScheduler(
        byte_source=FakeByteSource(clean_jpeg),
        validator=ManifestValidator(reader=FakeReader()),
        image_analyzer=partial(analyze_image, use_model=False),
    )
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["service"] == "mediaguard-backend"


def test_scan_trusted_url(client):
    resp = client.post(
        "/api/v1/scan",
        json={"url": "https://upload.wikimedia.org/wikipedia/commons/a/a9/Example.jpg"},
    )
    body = resp.json()

    assert resp.status_code == 200
    assert body["verdict"] == "safe"
    assert body["status"] == "fast-path"
    assert "No red flags" in body["explanation"]
    assert body["extra"]["tasks"] == []


def test_scan_full_path_reports_tasks(client):
    resp = client.post(
        "/api/v1/scan",
        json={"url": "https://media.example.org/photos/pic.jpg", "budgetMs": 3000},
    )
    body = resp.json()

    assert resp.status_code == 200
    assert body["status"] == "complete"
    assert body["bytesDownloaded"] > 0
    assert {t["name"] for t in body["extra"]["tasks"]} >= {"metadata-check", "manifest-check"}
    assert body["extra"]["validation"]["status"] == "missing"


def test_scan_requires_url(client):
    resp = client.post("/api/v1/scan", json={"url": "   "})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "No media URL provided."


def test_performance_endpoint(client):
    client.post("/api/v1/scan", json={"url": "https://malware-test.example.com/img.jpg"})

    resp = client.get("/api/v1/performance")
    body = resp.json()

    assert resp.status_code == 200
    assert body["scans_recorded"] == 1
    assert body["accuracy_estimate"] == pytest.approx(0.7)
