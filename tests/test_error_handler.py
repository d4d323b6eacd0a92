"""Tests for bootkit.error_handler."""

import logging

import pytest

from bootkit.error_handler import ErrorHandler, classify, should_rollback
from bootkit.errors import (
    ConflictError,
    DependencyError,
    ErrorCode,
    OperationValidationError,
    RollbackRequested,
)


class TestRollbackPolicy:
    @pytest.mark.parametrize("code, expected", [
        (ErrorCode.VALIDATION_FAILED, True),
        (ErrorCode.ROLLBACK_NEEDED, True),
        (ErrorCode.GENERAL, False),
        (ErrorCode.DEPENDENCY_MISSING, False),
        (ErrorCode.FILE_NOT_FOUND, False),
        (ErrorCode.CONFLICT, False),
        (99, False),
    ])
    def test_default_codes(self, code, expected):
        assert should_rollback(code) is expected

    def test_extra_codes(self):
        assert should_rollback(ErrorCode.GENERAL, extra_codes=[ErrorCode.GENERAL])
        handler = ErrorHandler(rollback_codes=[ErrorCode.PERMISSION_DENIED])
        assert handler.should_rollback(ErrorCode.PERMISSION_DENIED)


class TestClassify:
    @pytest.mark.parametrize("exc, expected", [
        (DependencyError("x", missing_tools=["y"]), ErrorCode.DEPENDENCY_MISSING),
        (OperationValidationError("bad"), ErrorCode.VALIDATION_FAILED),
        (RollbackRequested("undo"), ErrorCode.ROLLBACK_NEEDED),
        (ConflictError([("a", "b")]), ErrorCode.CONFLICT),
        (FileNotFoundError("x"), ErrorCode.FILE_NOT_FOUND),
        (PermissionError("x"), ErrorCode.PERMISSION_DENIED),
        (RuntimeError("x"), ErrorCode.GENERAL),
    ])
    def test_classify(self, exc, expected):
        assert classify(exc) == expected


class TestErrorHandler:
    """Tests for recording and logging failures."""

    def test_handle_records(self):
        handler = ErrorHandler()
        record = handler.handle(ErrorCode.VALIDATION_FAILED, "bad output", operation_id="git", context="result")

        assert record.code == ErrorCode.VALIDATION_FAILED
        assert record.requires_rollback
        assert handler.error_count == 1
        assert handler.last_error is record
        assert handler.records == (record,)

    def test_error_count_accumulates(self):
        handler = ErrorHandler()
        for _ in range(3):
            handler.handle(ErrorCode.GENERAL, "x")
        assert handler.error_count == 3

    def test_success_is_not_an_error(self):
        with pytest.raises(ValueError):
            ErrorHandler().handle(ErrorCode.SUCCESS, "fine")

    def test_empty_message_uses_code_message(self):
        record = ErrorHandler().handle(ErrorCode.PERMISSION_DENIED, "")
        assert record.message == "Permission denied"

    def test_handle_exception(self):
        record = ErrorHandler().handle_exception(RollbackRequested("undo it"), operation_id="a")
        assert record.code == ErrorCode.ROLLBACK_NEEDED
        assert record.message == "undo it"
        assert record.requires_rollback

    def test_exception_without_message(self):
        record = ErrorHandler().handle_exception(RuntimeError())
        assert record.message == "RuntimeError"

    def test_reset(self):
        handler = ErrorHandler()
        handler.handle(ErrorCode.GENERAL, "x")
        handler.reset()
        assert handler.error_count == 0
        assert handler.last_error is None

    def test_code_lookups(self):
        handler = ErrorHandler()
        assert handler.code_name(3) == "DEPENDENCY_MISSING"
        assert handler.code_message(8).startswith("Rollback failed")

    def test_writes_durable_log(self, tmp_path):
        log = tmp_path / "logs" / "errors.log"
        handler = ErrorHandler(error_log=log)
        handler.handle(ErrorCode.GENERAL, "first", operation_id="a")
        handler.handle(ErrorCode.CONFLICT, "second\nline")

        lines = log.read_text().splitlines()
        assert len(lines) == 2
        assert "[GENERAL] op=a first" in lines[0]
        assert "[CONFLICT]" in lines[1]

    def test_unwritable_log_only_warns(self, tmp_path, caplog):
        blocker = tmp_path / "file"
        blocker.write_text("")
        handler = ErrorHandler(error_log=blocker / "errors.log")

        with caplog.at_level(logging.WARNING, logger="bootkit.error_handler"):
            record = handler.handle(ErrorCode.GENERAL, "x")

        assert record is not None
        assert handler.error_count == 1
        assert "Could not write error log" in caplog.text
