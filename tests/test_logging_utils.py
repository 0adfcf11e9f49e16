"""Tests for logging utilities."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from branchsync import logging_utils


def _reset_logger() -> logging.Logger:
    logger = logging.getLogger("branchsync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    return logger


def test_setup_logging_creates_rotating_file(tmp_path: Path):
    logger = _reset_logger()
    log_path = logging_utils.setup_logging(tmp_path, level="INFO", structured=False, console=False)

    assert log_path == tmp_path / "logs" / "sync.log"
    assert log_path.exists()

    file_handlers = [
        handler for handler in logger.handlers if isinstance(handler, RotatingFileHandler)
    ]
    assert len(file_handlers) == 1
    assert file_handlers[0].baseFilename == str(log_path)
    _reset_logger()


def test_setup_logging_is_idempotent(tmp_path: Path):
    logger = _reset_logger()
    logging_utils.setup_logging(tmp_path, level="INFO")
    handler_count = len(logger.handlers)

    logging_utils.setup_logging(tmp_path, level="INFO")
    assert len(logger.handlers) == handler_count
    _reset_logger()


def test_structured_log_carries_sync_context(tmp_path: Path):
    logger = _reset_logger()
    logging_utils.setup_logging(tmp_path, level="INFO", console=False)

    logging.getLogger("branchsync.sync.coordinator").info(
        "pushed", extra={"branch_id": "north", "operation_id": "op-1"}
    )
    for handler in logger.handlers:
        handler.flush()

    lines = (tmp_path / "logs" / "sync.jsonl").read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[-1])
    assert entry["message"] == "pushed"
    assert entry["logger"] == "branchsync.sync.coordinator"
    assert entry["branch_id"] == "north"
    assert entry["operation_id"] == "op-1"
    assert "conflict_id" not in entry
    _reset_logger()


def test_setup_logging_falls_back_when_permission_denied(tmp_path: Path, monkeypatch):
    _reset_logger()
    data_dir = tmp_path / "terminal"
    primary_parent = data_dir / "logs"
    original_mkdir = Path.mkdir

    def fake_mkdir(self, *args, **kwargs):
        if str(self).startswith(str(primary_parent)):
            raise PermissionError
        return original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fake_mkdir)
    fallback_root = tmp_path / "fallback"
    monkeypatch.setattr(logging_utils, "FALLBACK_ROOT", fallback_root)

    log_path = logging_utils.setup_logging(data_dir, level="INFO", console=False)
    expected = fallback_root / "logs" / "sync.log"

    assert log_path == expected
    assert expected.exists()
    _reset_logger()
