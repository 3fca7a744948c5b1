"""
Tracking codes printed as QR codes on each lunchbox.

A code is the base36 millisecond timestamp followed by a random component
from ``secrets``. Codes are case-sensitive and never change once stored.
"""

import secrets
import string
import time

ALPHABET = string.ascii_letters + string.digits
RANDOM_LENGTH = 12
MAX_ATTEMPTS = 5


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_tracking_code(now_ms=None) -> str:
    """
    Build a new tracking code.

    Args:
        now_ms (int, optional): Millisecond timestamp; defaults to the current time.
    Returns:
        str: Timestamp part plus 12 random alphanumeric characters.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    random_part = "".join(secrets.choice(ALPHABET) for _ in range(RANDOM_LENGTH))
    return _base36(now_ms) + random_part


def normalize_scanned_code(raw) -> str:
    """Strip whitespace a scanner or manual entry may add; case is left untouched."""
    return (raw or "").strip()
