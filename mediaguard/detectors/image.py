# mediaguard/detectors/image.py

import base64
import io
import logging
from typing import Optional

import numpy as np
import torch
import torchvision.transforms as T
from PIL import Image

from mediaguard.core.schemas import ImageAnalysis
from mediaguard.detectors.model_loader import get_image_model

logger = logging.getLogger(__name__)

SAMPLE_STRIDE = 16
EDGE_DIFF = 50
EDGE_ANOMALY_DENSITY = 0.3


# -----------------------------
# IMAGE PREPROCESSING
# -----------------------------
_transform = T.Compose([
    T.Resize((224, 224)),
    T.ToTensor(),
    T.Normalize(
        mean=[0.485, 0.456, 0.406],
        std=[0.229, 0.224, 0.225],
    ),
])


def decode_data_url(data_url: str) -> bytes:
    """
    Handles both full data URLs and raw base64 strings.
    """
    if "," in data_url:
        _, b64data = data_url.split(",", 1)
    else:
        b64data = data_url

    b64data = "".join(b64data.split())
    missing_padding = len(b64data) % 4
    if missing_padding:
        b64data += "=" * (4 - missing_padding)

    return base64.b64decode(b64data)


def pixel_statistics(img: Image.Image) -> ImageAnalysis:
    """
    Sample every 16th pixel (row-major) and measure:
      - complexity: mean distance of each channel from mid-grey, scaled to [0, 1]
      - edge density: share of consecutive samples whose RGB difference exceeds 50
    """
    rgb = np.asarray(img.convert("RGB"), dtype=np.int16).reshape(-1, 3)
    samples = rgb[::SAMPLE_STRIDE]
    if len(samples) == 0:
        return ImageAnalysis(width=img.width, height=img.height)

    complexity = float(np.abs(samples - 128).sum(axis=1).mean()) / (3 * 128)
    if len(samples) > 1:
        diffs = np.abs(np.diff(samples, axis=0)).sum(axis=1)
        edge_density = float((diffs > EDGE_DIFF).sum()) / len(samples)
    else:
        edge_density = 0.0

    return ImageAnalysis(
        width=img.width,
        height=img.height,
        complexity=min(1.0, complexity),
        edge_density=edge_density,
        has_anomalies=edge_density > EDGE_ANOMALY_DENSITY,
    )


def synthetic_probability(img: Image.Image) -> Optional[float]:
    """Model score, or None when only the fallback model is loaded."""
    model = get_image_model()
    if getattr(model, "is_fallback", True):
        return None
    device = getattr(model, "device", torch.device("cpu"))
    batch = _transform(img.convert("RGB")).unsqueeze(0).to(device)
    with torch.inference_mode():
        prob = model(batch).view(-1)[0].item()
    return float(prob)


def analyze_image(data: bytes, use_model: bool = True) -> ImageAnalysis:
    """Pixel statistics plus (optionally) the learned synthetic probability."""
    img = Image.open(io.BytesIO(data))
    img.load()
    stats = pixel_statistics(img)
    if not use_model:
        return stats

    try:
        prob = synthetic_probability(img)
    except Exception as e:
        logger.warning("Image model inference failed [resource]: %s", e)
        prob = None
    return stats.model_copy(update={
        "synthetic_probability": prob,
        "model_backed": prob is not None,
    })
