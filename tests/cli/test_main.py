"""Tests for shai_cli.main -- command table and logging setup."""

import logging
from logging.handlers import RotatingFileHandler

from shai_cli.main import COMMANDS, setup_logging


def test_command_table():
    assert sorted(COMMANDS) == ["hook", "repl", "run", "serve"]


def test_log_file_goes_under_shai_home(monkeypatch, tmp_path):
    monkeypatch.setenv("SHAI_HOME", str(tmp_path))
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        setup_logging(quiet=True, log_file=True)
        added = [h for h in root.handlers if h not in before]
        assert any(isinstance(h, RotatingFileHandler) for h in added)
        assert (tmp_path / "logs").is_dir()
        assert logging.getLogger("httpx").level == logging.ERROR
    finally:
        for handler in [h for h in root.handlers if h not in before]:
            root.removeHandler(handler)
            handler.close()
