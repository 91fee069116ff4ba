"""Tests for logging setup."""

import logging

import pytest

from hybrid_intent.logging_utils import LOG_LEVEL_ENV_VAR, configure_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger("hybrid_intent")
    saved = (logger.level, logger.propagate, list(logger.handlers))
    yield logger
    for h in list(logger.handlers):
        if h not in saved[2]:
            logger.removeHandler(h)
            h.close()
    logger.setLevel(saved[0])
    logger.propagate = saved[1]
    if hasattr(logger, "_hybrid_intent_configured"):
        del logger._hybrid_intent_configured


def test_configure_logging_is_idempotent(package_logger):
    configure_logging("DEBUG")
    configure_logging("DEBUG")
    assert len(package_logger.handlers) == 1
    assert package_logger.level == logging.DEBUG
    assert package_logger.propagate is False


def test_level_from_environment(package_logger, monkeypatch):
    monkeypatch.setenv(LOG_LEVEL_ENV_VAR, "warning")
    configure_logging()
    assert package_logger.level == logging.WARNING


def test_unknown_level_falls_back_to_info(package_logger):
    configure_logging("chatty")
    assert package_logger.level == logging.INFO


def test_rotating_file_handler(package_logger, tmp_path):
    log_file = tmp_path / "logs" / "resolver.log"
    configure_logging("INFO", log_file=str(log_file))
    logging.getLogger("hybrid_intent.resolver").info("hello file")
    for h in package_logger.handlers:
        h.flush()
    assert "hybrid_intent.resolver - INFO - hello file" in log_file.read_text(encoding="utf-8")
