"""Sortable record identifiers and opaque session tokens."""

from __future__ import annotations

import datetime as dt
import secrets
import uuid
from typing import Callable

__all__ = ["ALPHABET", "base57_encode", "generate_id", "generate_token"]


# Characters that are easily confused (0/O, 1/l/I) are left out. The alphabet is
# in ASCII order so that padded identifiers sort by creation time.
ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE = len(ALPHABET)


def base57_encode(value: int, *, pad_to: int | None = None) -> str:
    """Encode ``value`` with the identifier alphabet."""

    if value < 0:
        raise ValueError("identifiers only encode unsigned integers")
    digits: list[str] = []
    number = value
    while number:
        number, remainder = divmod(number, _BASE)
        digits.append(ALPHABET[remainder])
    encoded = "".join(reversed(digits)) or ALPHABET[0]
    if pad_to is not None and pad_to > len(encoded):
        encoded = ALPHABET[0] * (pad_to - len(encoded)) + encoded
    return encoded


def generate_id(
    *,
    timestamp: dt.datetime | None = None,
    random_source: Callable[[], uuid.UUID] | None = None,
) -> str:
    """Return a 33 character id: microsecond timestamp followed by a random UUID."""

    moment = timestamp or dt.datetime.now(dt.UTC)
    source = random_source or uuid.uuid4
    prefix = base57_encode(int(moment.timestamp() * 1_000_000), pad_to=11)
    return prefix + base57_encode(source().int, pad_to=22)


def generate_token(nbytes: int = 32) -> str:
    """Return an unguessable URL-safe token for cookies."""

    return secrets.token_urlsafe(nbytes)
