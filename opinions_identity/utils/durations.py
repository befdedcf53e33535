"""
Duration String Parsing.

Session lifetimes are configured as ``<integer><unit>`` where unit is one
of ``s``, ``m``, ``h`` or ``d`` (e.g. ``"30m"``, ``"12h"``).  Anything
else, including a bare integer, resolves to the 30-minute default.  The
fallback is a documented policy, not an error path.
"""

from __future__ import annotations

import re
from datetime import timedelta

__all__ = ["DEFAULT_SESSION_TTL", "parse_duration"]

DEFAULT_SESSION_TTL: timedelta = timedelta(minutes=30)

_DURATION_RE: re.Pattern[str] = re.compile(r"^(\d+)([smhd])$")

_UNIT_SECONDS: dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_duration(text: str) -> timedelta:
    """Convert a duration string like ``"30m"`` into a :class:`timedelta`.

    >>> parse_duration("2h")
    datetime.timedelta(seconds=7200)
    >>> parse_duration("15")
    datetime.timedelta(seconds=1800)
    """
    match = _DURATION_RE.match(text.strip()) if text else None
    if match is None:
        return DEFAULT_SESSION_TTL
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])
