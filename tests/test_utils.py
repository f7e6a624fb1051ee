"""
Tests for utility functions.
"""

import datetime as dt
from pathlib import Path
from unittest.mock import patch

import pytest

from forum_migrator.utils import parse_timestamp, read_json, to_iso_timestamp, write_json_atomic


@pytest.mark.unit
class TestTimestamps:
    def test_naive_database_value_is_utc(self) -> None:
        assert to_iso_timestamp("2019-03-01 12:30:00") == "2019-03-01T12:30:00.000Z"

    def test_offset_converted_to_utc(self) -> None:
        assert to_iso_timestamp("2019-03-01T12:30:00+02:00") == "2019-03-01T10:30:00.000Z"

    def test_datetime_input(self) -> None:
        assert to_iso_timestamp(dt.datetime(2019, 3, 1, 12, 30, 0, 123456)) == "2019-03-01T12:30:00.123Z"

    def test_parse_accepts_z_suffix(self) -> None:
        assert parse_timestamp("2020-01-01T00:00:00.000Z") == dt.datetime(2020, 1, 1, tzinfo=dt.UTC)


@pytest.mark.unit
class TestJsonFiles:
    def test_round_trip_with_datetimes(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "data.json"
        write_json_atomic(path, [{"when": dt.datetime(2020, 1, 1, 8, 0), "name": "Zoë"}])
        assert read_json(path) == [{"when": "2020-01-01T08:00:00", "name": "Zoë"}]

    def test_failed_write_keeps_previous_file(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        write_json_atomic(path, {"version": 1})

        with patch("forum_migrator.utils.json.dump", side_effect=OSError("disk full")), pytest.raises(OSError):
            write_json_atomic(path, {"version": 2})

        assert read_json(path) == {"version": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]
