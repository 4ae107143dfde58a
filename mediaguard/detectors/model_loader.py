# mediaguard/detectors/model_loader.py

import logging
import os
from functools import lru_cache

import timm
import torch
import torch.nn as nn

from mediaguard.core.config import get_settings

logger = logging.getLogger(__name__)


class EfficientNetSynthetic(nn.Module):
    """
    EfficientNet-B0 backbone (from timm) for binary real/synthetic image scoring.

    - Expects RGB images normalized like ImageNet, size 224x224.
    - Outputs [B, 1] with the synthetic probability in [0, 1].

    Checkpoints are plain state_dicts for a 2-class head; class 0 is "synthetic".
    """

    def __init__(self):
        super().__init__()
        self.backbone = timm.create_model(
            "efficientnet_b0",
            pretrained=False,
            num_classes=2,
            in_chans=3,
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        logits = self.backbone(x)              # [B, 2]
        probs = torch.softmax(logits, dim=1)   # [B, 2]
        return probs[:, 0].unsqueeze(1)        # [B, 1]


class DummySyntheticModel(nn.Module):
    """
    Tiny stand-in used when no checkpoint is available.
    Its output carries no information; callers check ``is_fallback``.
    """
    def __init__(self):
        super().__init__()
        self.conv = nn.Conv2d(3, 16, kernel_size=3, stride=2, padding=1)
        self.relu = nn.ReLU()
        self.pool = nn.AdaptiveAvgPool2d(1)
        self.fc = nn.Linear(16, 1)
        self.sigmoid = nn.Sigmoid()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.pool(self.relu(self.conv(x)))  # [B, 16, 1, 1]
        x = x.view(x.size(0), -1)               # [B, 16]
        return self.sigmoid(self.fc(x))         # [B, 1]


def _fallback(device: torch.device) -> nn.Module:
    model = DummySyntheticModel()
    model.is_fallback = True  # type: ignore[attr-defined]
    model.to(device)
    model.eval()
    return model


def _load_model(device: torch.device) -> nn.Module:
    """
    Load EfficientNet weights from IMAGE_MODEL_PATH.
    Any failure falls back to DummySyntheticModel.
    """
    model_path = get_settings().IMAGE_MODEL_PATH
    logger.info("IMAGE_MODEL_PATH = %s", model_path)

    if not os.path.exists(model_path):
        logger.warning("Model file not found at %s; using DummySyntheticModel", model_path)
        return _fallback(device)

    try:
        model: nn.Module = EfficientNetSynthetic()
        ckpt = torch.load(model_path, map_location=device)
        if isinstance(ckpt, nn.Module):
            logger.info("Checkpoint is a full model object (%s); using it directly", type(ckpt).__name__)
            model = ckpt
        else:
            missing, unexpected = model.backbone.load_state_dict(ckpt, strict=False)
            if missing:
                logger.warning("Missing keys when loading: %s", missing)
            if unexpected:
                logger.warning("Unexpected keys when loading: %s", unexpected)
        logger.info("Loaded EfficientNet-based synthetic image model")
    except Exception as e:
        logger.error("Failed to load model from %s: %s; using DummySyntheticModel", model_path, e)
        return _fallback(device)

    model.is_fallback = False  # type: ignore[attr-defined]
    model.to(device)
    model.eval()
    return model


@lru_cache()
def get_image_model() -> nn.Module:
    """
    Returns a cached instance of the image model on the right device.
    """
    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    model = _load_model(device)
    model.device = device  # type: ignore[attr-defined]
    return model
