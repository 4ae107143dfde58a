# tests/test_logging_config.py

import logging

from pythonjsonlogger import jsonlogger

from mediaguard.core.logging_config import setup_logging

YAML_CONFIG = """
version: 1
disable_existing_loggers: false
formatters:
  plain:
    format: "%(levelname)s %(name)s %(message)s"
handlers:
  console:
    class: logging.StreamHandler
    formatter: plain
root:
  level: WARNING
  handlers: [console]
"""


def test_yaml_config_is_used_when_present(tmp_path, monkeypatch):
    path = tmp_path / "logging.yaml"
    path.write_text(YAML_CONFIG)
    monkeypatch.setenv("MG_LOG_CFG", str(path))

    setup_logging()

    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert not isinstance(root.handlers[0].formatter, jsonlogger.JsonFormatter)


def test_json_logging_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("MG_LOG_CFG", str(tmp_path / "absent.yaml"))

    setup_logging(default_level="debug")

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert isinstance(root.handlers[0].formatter, jsonlogger.JsonFormatter)
