# mediaguard/core/logging_config.py
import logging
import logging.config
import os

import yaml
from pythonjsonlogger import jsonlogger


def setup_logging(
    default_path: str = "logging.yaml",
    default_level: str = "INFO",
    env_key: str = "MG_LOG_CFG",
) -> None:
    """Load logging.yaml if present, otherwise log JSON lines to stderr."""
    path = os.getenv(env_key, default_path)
    if os.path.exists(path):
        with open(path, "rt") as f:
            config = yaml.safe_load(f.read())
        logging.config.dictConfig(config)
        return

    log_handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s"
    )
    log_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, default_level.upper(), logging.INFO),
        handlers=[log_handler],
        force=True,
    )
    logging.getLogger(__name__).info("Using basic logging configuration with JSON output.")
