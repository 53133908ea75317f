"""
Utility functions for the forwarder.
"""

import re
from datetime import datetime, timezone

NANP_DIGITS = re.compile(r"(\d{3})(\d{3})(\d{4})")


def format_utc(moment: datetime) -> str:
    """
    ISO-8601 UTC with millisecond precision and Z suffix.

    Example: 2025-01-15T10:00:00.123Z
    """
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def utc_timestamp() -> str:
    return format_utc(datetime.now(timezone.utc))


def format_phone_number(number: str) -> str:
    """
    Format a North American number for display.

    Args:
        number: Phone number in provider format, e.g. +15551234567

    Returns:
        "(555) 123-4567" for +1 numbers with ten digits, otherwise the input
        unchanged
    """
    if not number:
        return number or ""
    local = number[2:] if number.startswith("+1") else number
    match = NANP_DIGITS.fullmatch(local)
    if match is None:
        return number
    return "({}) {}-{}".format(*match.groups())


def truncate_token(token: str, length: int = 20) -> str:
    """Shorten a push token for log output."""
    if len(token) <= length:
        return token
    return token[:length] + "..."
