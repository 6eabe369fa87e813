"""Helpers for recognising and describing remote rate-limit errors."""

import re
from typing import Optional

_RATE_LIMIT_CODE = re.compile(r'"errorCode"\s*:\s*19')
_RATE_LIMIT_DURATION = re.compile(r'"errorCode"\s*:\s*19.*?"rateLimitDuration"\s*:\s*(\d+)', re.DOTALL)

DEFAULT_RATE_LIMIT_SECONDS = 60


def _error_text(error: object) -> str:
    return str(error)


def is_rate_limit_error(error: object) -> bool:
    """True when the error carries the remote rate-limit code (19)"""
    return bool(_RATE_LIMIT_CODE.search(_error_text(error)))


def extract_rate_limit_duration(error: object) -> Optional[int]:
    """Seconds the remote service asked us to wait, or None"""
    match = _RATE_LIMIT_DURATION.search(_error_text(error))
    if match:
        return int(match.group(1))
    return None


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_duration(seconds: int) -> str:
    """
    Human readable duration.

    Examples:
        30 -> "30 seconds", 60 -> "1 minute", 90 -> "1 minute and 30 seconds"
    """
    if seconds <= 0:
        return "0 seconds"

    minutes, remaining = divmod(int(seconds), 60)
    if minutes == 0:
        return _plural(remaining, "second")
    if remaining == 0:
        return _plural(minutes, "minute")
    return f"{_plural(minutes, 'minute')} and {_plural(remaining, 'second')}"


def parse_rate_limit_error(error: object) -> Optional[str]:
    """User-facing message for a rate-limit error, or None if it is not one"""
    duration = extract_rate_limit_duration(error)
    if duration is None:
        return None
    return f"Rate limit exceeded. Please wait {format_duration(duration)} before trying again."
