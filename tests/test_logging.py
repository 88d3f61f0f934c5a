import json
import logging

import pytest

from kernel_weave.logging.logging import (
    KernelWeaveJSONFormatter,
    RotatingFileHandlerWithDir,
    setup_logging,
)


@pytest.fixture
def isolated_logger(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    logger = logging.getLogger("kernel_weave")
    prev_handlers = list(logger.handlers)
    prev_level = logger.level
    prev_propagate = logger.propagate
    yield logger
    for handler in logger.handlers:
        if handler not in prev_handlers:
            handler.close()
    logger.handlers = prev_handlers
    logger.setLevel(prev_level)
    logger.propagate = prev_propagate


def test_formatter_maps_keys_and_keeps_extras():
    formatter = KernelWeaveJSONFormatter(
        fmt_keys={"level": "levelname", "logger": "name", "message": "message"}
    )
    record = logging.LogRecord(
        "kernel_weave.fast", logging.INFO, __file__, 10, "built %s", ("node",), None
    )
    record.operator = "rms_norm"
    payload = json.loads(formatter.format(record))
    assert payload["level"] == "INFO"
    assert payload["logger"] == "kernel_weave.fast"
    assert payload["message"] == "built node"
    assert payload["operator"] == "rms_norm"
    assert "timestamp" in payload
    assert "lineno" not in payload


def test_formatter_includes_exception_info():
    formatter = KernelWeaveJSONFormatter()
    try:
        raise ValueError("boom")
    except ValueError:
        import sys

        record = logging.LogRecord(
            "kernel_weave", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )
    payload = json.loads(formatter.format(record))
    assert "ValueError: boom" in payload["exc_info"]


def test_rotating_handler_creates_directory(tmp_path):
    path = tmp_path / "nested" / "dir" / "out.log"
    handler = RotatingFileHandlerWithDir(filename=str(path))
    try:
        assert path.parent.is_dir()
    finally:
        handler.close()


def test_setup_logging_default_config_writes_json_lines(isolated_logger, tmp_path):
    setup_logging()
    isolated_logger.debug("evaluating", extra={"operator": "rope"})
    for handler in isolated_logger.handlers:
        handler.flush()

    log_file = tmp_path / "logs" / "kernel_weave.log.jsonl"
    lines = log_file.read_text().strip().splitlines()
    payload = json.loads(lines[-1])
    assert payload["message"] == "evaluating"
    assert payload["level"] == "DEBUG"
    assert payload["operator"] == "rope"


def test_setup_logging_prefers_user_config(isolated_logger, tmp_path):
    user_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "handlers": {
            "file": {
                "class": "logging.FileHandler",
                "filename": str(tmp_path / "user.log"),
            }
        },
        "loggers": {
            "kernel_weave": {"level": "INFO", "handlers": ["file"], "propagate": False}
        },
    }
    (tmp_path / "logging_config.json").write_text(json.dumps(user_config))

    setup_logging()
    isolated_logger.info("from user config")
    for handler in isolated_logger.handlers:
        handler.flush()

    assert "from user config" in (tmp_path / "user.log").read_text()
    assert not (tmp_path / "logs").exists()
