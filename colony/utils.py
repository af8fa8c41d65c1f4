"""
Small helpers shared across components.
"""

import datetime
import random
import string
import time


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Make ``value`` timezone-aware; naive datetimes are taken as local time."""
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(datetime.timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate ids like ``vote_lq3k9z_a8c2e``."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
    return f"{prefix}_{stamp}_{suffix}"


def _base36(number: int) -> str:
    digits = string.digits + string.ascii_lowercase
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"
