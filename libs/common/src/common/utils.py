from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import urlsplit


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def shift_iso(value: str, *, seconds: float) -> str:
    return (datetime.fromisoformat(value) + timedelta(seconds=seconds)).isoformat()


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_url(url: str | None) -> str:
    if not url:
        return ""
    parsed = urlsplit(url.strip())
    host = parsed.netloc.lower()
    path = parsed.path.rstrip("/")
    return f"{host}{path}"
