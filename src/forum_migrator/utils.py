"""
Utility functions for the forum migration pipeline.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any


def setup_logging(*, verbose: bool = False) -> None:
    """Configure logging for the migration process."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler("migration.log", mode="a")],
    )


def _json_default(value: object) -> str:
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    msg = f"Object of type {type(value).__name__} is not JSON serializable"
    raise TypeError(msg)


def write_json_atomic(path: Path, data: Any) -> None:  # noqa: ANN401 - any JSON document
    """Write a JSON document so readers only ever see the old or the new version."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=_json_default)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any:  # noqa: ANN401 - any JSON document
    """Read a JSON document."""
    with path.open(encoding="utf-8") as f:
        return json.load(f)


def parse_timestamp(value: str | dt.datetime) -> dt.datetime:
    """Parse a timestamp, treating naive values as UTC."""
    parsed = value if isinstance(value, dt.datetime) else dt.datetime.fromisoformat(value.strip().replace(" ", "T", 1))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def to_iso_timestamp(value: str | dt.datetime) -> str:
    """Normalize a timestamp to ISO 8601 UTC with millisecond precision.

    Args:
        value: A datetime or a timestamp string as stored in the legacy database
            (e.g. "2019-03-01 12:30:00" or "2019-03-01T12:30:00+02:00")

    Returns:
        Normalized timestamp (e.g. "2019-03-01T12:30:00.000Z")
    """
    parsed = parse_timestamp(value).astimezone(dt.UTC)
    return parsed.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Current time in the same format as to_iso_timestamp()."""
    return to_iso_timestamp(dt.datetime.now(dt.UTC))
