# core/clock.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime in the service uses this form."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
