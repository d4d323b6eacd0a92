"""Tests for bootkit.utils."""

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from bootkit.utils import (
    StructuredFormatter,
    append_line,
    atomic_write,
    format_duration,
    parse_relative_date,
    setup_logging,
)


class TestAtomicWrite:
    def test_creates_parents(self, tmp_path):
        target = tmp_path / "a" / "b" / "file.txt"
        atomic_write(target, "hello")
        assert target.read_text() == "hello"

    def test_replaces_and_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "file.bin"
        atomic_write(target, b"one")
        atomic_write(target, b"two")
        assert target.read_bytes() == b"two"
        assert [p.name for p in tmp_path.iterdir()] == ["file.bin"]

    def test_mode(self, tmp_path):
        target = tmp_path / "secret"
        atomic_write(target, "x", mode=0o600)
        assert target.stat().st_mode & 0o777 == 0o600


class TestAppendLine:
    def test_one_line_per_call(self, tmp_path):
        log = tmp_path / "logs" / "session.log"
        append_line(log, "first")
        append_line(log, "second\nstill second")
        assert log.read_text().splitlines() == ["first", "second still second"]


class TestFormatting:
    @pytest.mark.parametrize("seconds, expected", [
        (0.42, "0.4s"),
        (45, "45s"),
        (83, "1m 23s"),
        (3725, "1h 2m 5s"),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    @pytest.mark.parametrize("text, delta", [
        ("12h", timedelta(hours=12)),
        ("7d", timedelta(days=7)),
        ("2w", timedelta(weeks=2)),
        ("1m", timedelta(days=30)),
        ("1y", timedelta(days=365)),
    ])
    def test_parse_relative_date(self, text, delta):
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        assert parse_relative_date(text, now=now) == now - delta

    @pytest.mark.parametrize("text", ["", "7", "d7", "7 days", "-1d"])
    def test_parse_relative_date_invalid(self, text):
        with pytest.raises(ValueError):
            parse_relative_date(text)


class TestLogging:
    def test_structured_formatter_includes_extras(self):
        record = logging.LogRecord("bootkit.test", logging.INFO, __file__, 1, "hello", None, None)
        record.operation_id = "git"
        record.event = "start"

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["operation_id"] == "git"
        assert data["event"] == "start"
        assert "session_id" not in data

    def test_setup_logging_writes_file(self, tmp_path):
        log_file = tmp_path / "logs" / "bootkit.log"
        logger = setup_logging(log_file, "DEBUG", console_output=False)
        logging.getLogger("bootkit.test").debug("written")
        for handler in logger.handlers:
            handler.flush()

        line = json.loads(log_file.read_text().splitlines()[-1])
        assert line["message"] == "written"

    def test_setup_logging_rejects_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging(None, "LOUD")
