"""Tests for script logging setup."""
import logging
import sys

import pytest

from stoxlstm.utils import configure_logging


@pytest.fixture
def restore_logging():
    """Put the root logger and quieted loggers back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    quieted = {name: logging.getLogger(name).level for name in ("torch", "fsspec", "numexpr", "filelock")}
    yield
    logging.captureWarnings(False)
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, previous in quieted.items():
        logging.getLogger(name).setLevel(previous)


@pytest.mark.usefixtures("restore_logging")
class TestConfigureLogging:
    """Test root and third-party logger levels."""

    def test_sets_root_level(self):
        configure_logging("warning")
        assert logging.getLogger().level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self):
        configure_logging("chatty")
        assert logging.getLogger().level == logging.INFO

    def test_noisy_loggers_quieted(self):
        """Library loggers stay at WARNING when the scripts run at INFO."""
        configure_logging("INFO")
        assert logging.getLogger("torch").level == logging.WARNING
        assert logging.getLogger("fsspec").level == logging.WARNING

    def test_debug_leaves_library_loggers_alone(self):
        logging.getLogger("torch").setLevel(logging.NOTSET)
        configure_logging("DEBUG")
        assert logging.getLogger("torch").level == logging.NOTSET

    def test_custom_quiet_list(self):
        logging.getLogger("filelock").setLevel(logging.NOTSET)
        configure_logging("INFO", quiet=["torch"])

        assert logging.getLogger("torch").level == logging.WARNING
        assert logging.getLogger("filelock").level == logging.NOTSET

    def test_logs_to_stderr(self):
        """Records go to stderr so stdout tables stay clean."""
        configure_logging("INFO")
        handler = logging.getLogger().handlers[0]

        assert handler.stream is sys.stderr
