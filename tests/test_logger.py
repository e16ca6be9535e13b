"""Tests for pillwatch.logger."""
import logging

import pytest

from pillwatch.config import Config
from pillwatch.logger import Logger, get_logger


@pytest.fixture(autouse=True)
def fresh_handlers():
    yield
    Logger.reset()


class TestLogger:

    def test_cached_per_name(self):
        assert get_logger("pillwatch.test.cached") is get_logger("pillwatch.test.cached")

    def test_level_and_file_from_config(self, tmp_path):
        log_file = tmp_path / "logs" / "pw.log"
        config = Config({"logging": {"level": "debug", "file": str(log_file), "console": False}})
        logger = get_logger("pillwatch.test.file", config)
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert [type(h) for h in logger.handlers] == [logging.FileHandler]
        logger.debug("hello")
        for h in logger.handlers:
            h.flush()
        assert "pillwatch.test.file - DEBUG - hello" in log_file.read_text()

    def test_modules_share_one_file_handler(self, tmp_path):
        config = Config({"logging": {"file": str(tmp_path / "pw.log"), "console": False}})
        store_log = get_logger("pillwatch.test.store", config)
        loop_log = get_logger("pillwatch.test.loop", config)
        assert store_log.handlers == loop_log.handlers
        assert len(store_log.handlers) == 1

    def test_file_only_env(self, monkeypatch):
        monkeypatch.setenv("PILLWATCH_LOG_FILE_ONLY", "1")
        logger = get_logger("pillwatch.test.file_only", Config())
        assert not any(type(h) is logging.StreamHandler for h in logger.handlers)
        assert logger.handlers[0].baseFilename.endswith("pillwatch.log")

    def test_reset_detaches_handlers(self, tmp_path):
        config = Config({"logging": {"file": str(tmp_path / "pw.log"), "console": False}})
        logger = get_logger("pillwatch.test.reset", config)
        Logger.reset()
        assert logger.handlers == []
        assert get_logger("pillwatch.test.reset", config).handlers
