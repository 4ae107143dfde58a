# mediaguard/core/config.py
import os
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ENV: str = os.getenv("MG_ENV", "development")
    LOG_LEVEL: str = os.getenv("MG_LOG_LEVEL", "INFO")
    IMAGE_MODEL_PATH: str = os.getenv(
        "MG_IMAGE_MODEL_PATH",
        "models/image/synthetic_model.pt"
    )

    # Scan budget / scheduling
    DEFAULT_BUDGET_MS: int = int(os.getenv("MG_DEFAULT_BUDGET_MS", "2000"))
    TASK_TIMEOUT_SLACK_MS: int = 250
    MAX_CONCURRENT_SCANS: int = 3
    FAST_PATH_THRESHOLD: float = 0.8

    # Result cache
    CACHE_TTL_SECONDS: int = 300
    CACHE_MAX_ENTRIES: int = 100

    # Network (ByteSource)
    HEAD_TIMEOUT_S: float = 2.0
    RANGE_TIMEOUT_S: float = 3.0
    HTTP_RETRIES: int = 1
    MANIFEST_PREFIX_BYTES: int = 65536
    MAX_IMAGE_BYTES: int = 5 * 1024 * 1024
    USER_AGENT: str = "MediaGuard/0.1"

    # Manifest reading
    MANIFEST_READ_TIMEOUT_S: float = 1.5
    TRUSTED_ISSUERS: List[str] = [
        "Adobe Systems Incorporated",
        "Canon Inc.",
        "Leica Camera AG",
        "Sony Corporation",
        "Microsoft Corporation",
    ]

    # Video frame pipeline
    FRAME_POOL_SIZE: int = 10
    FRAME_SEEK_TIMEOUT_S: float = 1.5
    VIDEO_METADATA_TIMEOUT_S: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
