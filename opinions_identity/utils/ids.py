"""
Short Identifier Generation.

Role assignment ids are bounded to 16 characters and built from a
millisecond time component plus a random component, both base36.
"""

from __future__ import annotations

import secrets
import time
from typing import Callable, Optional

__all__ = ["ASSIGNMENT_ID_PREFIX", "ASSIGNMENT_ID_MAX_LENGTH", "to_base36", "generate_assignment_id"]

ASSIGNMENT_ID_PREFIX: str = "ur_"
ASSIGNMENT_ID_MAX_LENGTH: int = 16

_BASE36_ALPHABET: str = "0123456789abcdefghijklmnopqrstuvwxyz"

# 36**8 keeps eight random base36 digits before truncation.
_RANDOM_SPACE: int = 36 ** 8


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base36."""
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_assignment_id(
    now_ms: Optional[Callable[[], int]] = None,
    random_below: Optional[Callable[[int], int]] = None,
) -> str:
    """Return ``ur_`` + base36(ms) + base36(random), cut to 16 characters.

    With a current timestamp the time part is eight characters, which
    leaves five random characters (about 26 bits) per millisecond bucket.
    Collisions are possible; callers retry on a primary-key conflict.

    Parameters
    ----------
    now_ms:
        Clock returning epoch milliseconds.  Defaults to the wall clock.
    random_below:
        Returns a uniform integer in ``[0, n)``.  Defaults to
        :func:`secrets.randbelow`.
    """
    millis = now_ms() if now_ms is not None else time.time_ns() // 1_000_000
    rand = (random_below or secrets.randbelow)(_RANDOM_SPACE)
    raw = f"{ASSIGNMENT_ID_PREFIX}{to_base36(millis)}{to_base36(rand).rjust(8, '0')}"
    return raw[:ASSIGNMENT_ID_MAX_LENGTH]
