"""Utility functions for domain models."""

from datetime import UTC, datetime
from uuid import uuid4


def utc_now() -> datetime:
    """Get the current UTC datetime with timezone awareness."""
    return datetime.now(UTC)


def new_id() -> str:
    """Globally unique, immutable entity identifier."""
    return uuid4().hex


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
