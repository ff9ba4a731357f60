import json
import logging
from datetime import datetime, timezone

import pytest
from tierhunt.utils import (
    StructuredFormatter,
    atomic_write_json,
    format_duration,
    format_timestamp,
    parse_timestamp,
    read_json,
)


@pytest.mark.parametrize("seconds,expected", [
    (2.44, "2.4s"),
    (45, "45s"),
    (83, "1m 23s"),
    (3723, "1h 2m 3s"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_parse_timestamp_forms():
    expected = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2025-01-06T12:00:00Z") == expected
    assert parse_timestamp("2025-01-06T12:00:00") == expected
    assert parse_timestamp(format_timestamp(expected)) == expected


def test_atomic_write_json(tmp_path):
    path = tmp_path / "nested" / "doc.json"
    atomic_write_json(path, {"a": 1})
    assert read_json(path) == {"a": 1}
    assert path.stat().st_mode & 0o777 == 0o600
    assert [p.name for p in path.parent.iterdir()] == ["doc.json"]


def test_read_json_missing(tmp_path):
    assert read_json(tmp_path / "missing.json") is None


def test_structured_formatter_extra_fields():
    record = logging.LogRecord("tierhunt.attempt", logging.INFO, __file__, 1, "Trying zone", None, None)
    record.event = "zone_attempt"
    record.profile = "a1-flex"
    record.zone = "AD-1"

    data = json.loads(StructuredFormatter().format(record))
    assert data["level"] == "INFO"
    assert data["message"] == "Trying zone"
    assert data["event"] == "zone_attempt"
    assert data["profile"] == "a1-flex"
    assert data["zone"] == "AD-1"
    assert "metadata" not in data
