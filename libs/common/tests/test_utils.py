from __future__ import annotations

from datetime import datetime

import pytest
from common.utils import (
    normalize_url,
    normalize_whitespace,
    now_utc_iso,
    shift_iso,
)

pytestmark = pytest.mark.unit


def test_normalize_whitespace_squashes_runs() -> None:
    assert normalize_whitespace("  Senior \n Backend\tEngineer ") == "Senior Backend Engineer"


def test_normalize_url_drops_scheme_and_trailing_slash() -> None:
    assert normalize_url("https://Jobs.Example.com/listing/42/") == "jobs.example.com/listing/42"
    assert normalize_url(None) == ""


def test_shift_iso_moves_timestamp_forward() -> None:
    shifted = shift_iso("2026-01-02T03:04:05+00:00", seconds=120)
    assert shifted == "2026-01-02T03:06:05+00:00"


def test_now_utc_iso_returns_parseable_utc_timestamp() -> None:
    parsed = datetime.fromisoformat(now_utc_iso())
    assert parsed.tzinfo is not None
    assert parsed.utcoffset() is not None
    assert parsed.utcoffset().total_seconds() == 0
