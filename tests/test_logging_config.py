"""
Tests for logging_config module.
"""

import logging

from src.infra.logging_config import PACKAGE_LOGGER_NAME, DailyRotatingFileHandler, setup_logging


class TestDailyRotatingFileHandler:
    """Tests for DailyRotatingFileHandler class."""

    def test_handler_creates_log_directory(self, tmp_path):
        """Test that handler creates log directory if it doesn't exist."""
        log_dir = tmp_path / "new_logs"
        assert not log_dir.exists()

        handler = DailyRotatingFileHandler(log_dir=str(log_dir))
        assert log_dir.exists()
        handler.close()

    def test_handler_writes_dated_file(self, tmp_path):
        """Test that records land in automation_YYYYMMDD_HHMMSS.log."""
        handler = DailyRotatingFileHandler(log_dir=str(tmp_path))
        handler.setFormatter(logging.Formatter('%(message)s'))

        record = logging.LogRecord(
            name="src.automation.auto_scheduler",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg="[AutoScheduler] Check complete",
            args=(),
            exc_info=None
        )
        handler.emit(record)
        handler.close()

        log_files = list(tmp_path.glob("automation_*.log"))
        assert len(log_files) == 1
        assert "[AutoScheduler] Check complete" in log_files[0].read_text()


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_configures_package_logger(self, tmp_path):
        logger = setup_logging("DEBUG", log_dir=str(tmp_path))

        assert logger.name == PACKAGE_LOGGER_NAME
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert any(isinstance(h, DailyRotatingFileHandler) for h in logger.handlers)

    def test_console_only(self):
        logger = setup_logging("WARNING", log_dir=None)

        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0], logging.FileHandler)

    def test_repeated_setup_does_not_duplicate_handlers(self, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))
        logger = setup_logging("INFO", log_dir=str(tmp_path))

        assert len(logger.handlers) == 2

    def test_module_loggers_write_to_package_file(self, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))

        logging.getLogger("src.automation.lock_cleanup").info("[LockCleanup] Released 2 stale lock(s)")
        for handler in logging.getLogger(PACKAGE_LOGGER_NAME).handlers:
            handler.flush()

        content = next(tmp_path.glob("automation_*.log")).read_text()
        assert "[LockCleanup] Released 2 stale lock(s)" in content

    def test_unknown_level_defaults_to_info(self):
        logger = setup_logging("LOUD", log_dir=None)
        assert logger.level == logging.INFO
