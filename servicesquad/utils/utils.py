import os
from datetime import date, datetime, timezone
from typing import Union


def get_secret(name: str, default: str | None = None) -> str | None:
    """
    Reads a secret from Docker secrets if available,
    otherwise falls back to a normal environment variable.
    """
    file_path = os.getenv(f"{name}_FILE")
    if file_path and os.path.exists(file_path):
        with open(file_path, "r") as f:
            return f.read().strip()
    return os.getenv(name, default)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_date(value: Union[date, datetime, str]) -> date:
    """Normalise a date, datetime or ISO string (``YYYY-MM-DD...``) to a calendar date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise TypeError(f"Unsupported date value: {value!r}")
