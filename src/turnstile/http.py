"""HTTP status codes used by the login endpoints."""

from __future__ import annotations

from enum import IntEnum


class Status(IntEnum):
    """Enumeration of the HTTP status codes emitted by Turnstile."""

    OK = 200
    FOUND = 302
    UNPROCESSABLE_ENTITY = 422


__all__ = ["Status"]
