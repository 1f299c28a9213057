"""
Tests for logging_config module.
"""

import logging

from src.infra.logging_config import DailyRotatingFileHandler, setup_logging


class TestDailyRotatingFileHandler:
    """Tests for DailyRotatingFileHandler class."""

    def test_handler_creates_log_directory(self, tmp_path):
        """Test that handler creates log directory if it doesn't exist."""
        log_dir = tmp_path / "new_logs"
        assert not log_dir.exists()

        handler = DailyRotatingFileHandler(log_dir=str(log_dir))
        assert log_dir.exists()
        handler.close()

    def test_handler_creates_log_file(self, tmp_path):
        """Test that handler creates a log file with correct naming."""
        handler = DailyRotatingFileHandler(log_dir=str(tmp_path))

        log_files = list(tmp_path.glob("pipeline_*.log"))
        assert len(log_files) == 1
        assert log_files[0].name.endswith(".log")
        handler.close()

    def test_custom_prefix(self, tmp_path):
        handler = DailyRotatingFileHandler(log_dir=str(tmp_path), prefix="worker")
        assert len(list(tmp_path.glob("worker_*.log"))) == 1
        handler.close()

    def test_handler_emits_record(self, tmp_path):
        """Test that handler writes log records to file."""
        handler = DailyRotatingFileHandler(log_dir=str(tmp_path))
        handler.setFormatter(logging.Formatter("%(message)s"))

        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg="Test message",
            args=(),
            exc_info=None,
        )
        handler.emit(record)
        handler.close()

        log_files = list(tmp_path.glob("pipeline_*.log"))
        assert "Test message" in log_files[0].read_text()


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self, tmp_path):
        logger = setup_logging("INFO", log_dir=str(tmp_path))

        assert isinstance(logger, logging.Logger)
        assert logger.name == "src"

    def test_sets_correct_log_level(self, tmp_path):
        logger = setup_logging("DEBUG", log_dir=str(tmp_path))
        assert logger.level == logging.DEBUG

        logger = setup_logging("WARNING", log_dir=str(tmp_path))
        assert logger.level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self):
        logger = setup_logging("CHATTY", log_dir=None)
        assert logger.level == logging.INFO

    def test_console_and_file_handlers(self, tmp_path):
        logger = setup_logging("INFO", log_dir=str(tmp_path))

        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        console_handlers = [
            h for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        assert len(file_handlers) == 1
        assert len(console_handlers) == 1

    def test_console_only_without_log_dir(self):
        logger = setup_logging("INFO", log_dir=None)
        assert not any(isinstance(h, logging.FileHandler) for h in logger.handlers)

    def test_repeated_setup_does_not_duplicate_handlers(self, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))
        logger = setup_logging("INFO", log_dir=str(tmp_path))
        assert len(logger.handlers) == 2

    def test_prevents_propagation(self):
        logger = setup_logging("INFO", log_dir=None)
        assert logger.propagate is False

    def test_module_loggers_write_to_file(self, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))
        logging.getLogger("src.scheduler.queue_manager").info("Enqueued job job-1")

        log_file = next(tmp_path.glob("pipeline_*.log"))
        for handler in logging.getLogger("src").handlers:
            handler.flush()
        assert "Enqueued job job-1" in log_file.read_text()
