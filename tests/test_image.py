# tests/test_image.py

import base64

import pytest
import torch
import torch.nn as nn
from PIL import Image, UnidentifiedImageError

from mediaguard.detectors.image import analyze_image, decode_data_url, pixel_statistics

from conftest import make_jpeg, make_noise_jpeg


class ConstantModel(nn.Module):
    is_fallback = False
    device = torch.device("cpu")

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.full((x.shape[0], 1), 0.93)


def test_solid_image_has_no_anomalies():
    stats = pixel_statistics(Image.new("RGB", (64, 64), color=(128, 128, 128)))

    assert stats.edge_density == 0.0
    assert stats.complexity == pytest.approx(0.0)
    assert not stats.has_anomalies


def test_noise_image_is_anomalous():
    analysis = analyze_image(make_noise_jpeg(), use_model=False)

    assert analysis.has_anomalies
    assert analysis.edge_density > 0.3
    assert analysis.width == 64
    assert analysis.synthetic_probability is None


def test_complexity_of_extreme_colour():
    stats = pixel_statistics(Image.new("RGB", (32, 32), color=(0, 0, 0)))
    assert stats.complexity == pytest.approx(1.0)


def test_decode_data_url_with_and_without_prefix():
    raw = make_jpeg()
    encoded = base64.b64encode(raw).decode()

    assert decode_data_url("data:image/jpeg;base64," + encoded) == raw
    assert decode_data_url(encoded.rstrip("=")) == raw
    assert decode_data_url(encoded[:40] + "\n" + encoded[40:]) == raw


def test_fallback_model_gives_no_probability(mocker):
    fallback = mocker.MagicMock()
    fallback.is_fallback = True
    mocker.patch("mediaguard.detectors.image.get_image_model", return_value=fallback)

    analysis = analyze_image(make_jpeg())

    assert analysis.synthetic_probability is None
    assert not analysis.model_backed
    fallback.assert_not_called()


def test_real_model_probability_is_reported(mocker):
    mocker.patch("mediaguard.detectors.image.get_image_model", return_value=ConstantModel())

    analysis = analyze_image(make_jpeg())

    assert analysis.model_backed
    assert analysis.synthetic_probability == pytest.approx(0.93)


def test_model_failure_is_not_fatal(mocker):
    mocker.patch("mediaguard.detectors.image.get_image_model", side_effect=RuntimeError("CUDA OOM"))

    analysis = analyze_image(make_jpeg())

    assert analysis.synthetic_probability is None
    assert analysis.width == 64


def test_non_image_bytes_raise():
    with pytest.raises(UnidentifiedImageError):
        analyze_image(b"not an image", use_model=False)
