"""Emergency access tokens.

An emergency token looks like ``EMG-20240315-1A2B3C4D-SECURE``: a fixed
prefix, the day it is valid for (``YYYYMMDD``), a checksum of that day and a
shared secret, and a fixed suffix. Tokens are never stored; a token is valid
exactly on the day it names, as seen by the validator's clock.
"""

from __future__ import annotations

import datetime as dt
import logging

from ..core.clock import Clock, utcnow

logger = logging.getLogger(__name__)

PREFIX = "EMG"
SUFFIX = "SECURE"
DEFAULT_SECRET = "EMG_SECRET_2024"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def compute_checksum(date_str: str, secret: str = DEFAULT_SECRET) -> str:
    """Return the checksum segment for ``date_str``.

    Rolling 32-bit hash ``h = h * 31 + ord(c)`` over ``date_str + secret``,
    rendered as base-36 of its absolute value, uppercased and cut to eight
    characters.
    """

    value = 0
    for char in date_str + secret:
        value = _to_int32((value << 5) - value + ord(char))
    return _base36(abs(value))[:8].upper()


def issue_token(day: dt.date, secret: str = DEFAULT_SECRET) -> str:
    date_str = day.strftime("%Y%m%d")
    return f"{PREFIX}-{date_str}-{compute_checksum(date_str, secret)}-{SUFFIX}"


def redact(token: object) -> str:
    """First eight characters of ``token`` followed by ``...``."""

    return (token[:8] if isinstance(token, str) else "") + "..."


class EmergencyTokenValidator:
    def __init__(self, secret: str = DEFAULT_SECRET, *, clock: Clock = utcnow) -> None:
        self._secret = secret
        self._clock = clock

    def validate(self, token: object, origin: str | None = None) -> bool:
        """Return whether ``token`` is valid today. Never raises."""

        try:
            valid = self._check(token)
        except Exception:
            logger.exception("Emergency token check crashed")
            valid = False
        logger.info(
            "Emergency token validation: %s token=%s origin=%s",
            "VALID" if valid else "INVALID",
            redact(token),
            origin or "unknown",
        )
        return valid

    def _check(self, token: object) -> bool:
        if not isinstance(token, str):
            return False
        parts = token.split("-")
        if len(parts) != 4 or parts[0] != PREFIX or parts[3] != SUFFIX:
            return False
        date_str, checksum = parts[1], parts[2]
        if len(date_str) != 8 or not date_str.isdigit():
            return False
        if date_str != self._clock().strftime("%Y%m%d"):
            return False
        return checksum == compute_checksum(date_str, self._secret)


__all__ = [
    "DEFAULT_SECRET",
    "EmergencyTokenValidator",
    "compute_checksum",
    "issue_token",
    "redact",
]
