"""Naive-UTC timestamps, matching the `DateTime` columns used by the models."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
