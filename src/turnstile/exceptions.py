"""Error taxonomy for the login flow."""

from __future__ import annotations

from typing import Any

from .http import Status
from .serialization import json_encode


class TurnstileError(Exception):
    """Base error type."""


class HTTPError(TurnstileError):
    """Structured HTTP error that is msgspec serializable."""

    def __init__(self, status: int, detail: Any) -> None:
        super().__init__(status, detail)
        self.status = status
        self.detail = detail

    def to_response_body(self) -> bytes:
        return json_encode({"error": {"status": self.status, "detail": self.detail}})


class AuthenticationError(TurnstileError):
    """Raised when a login step cannot complete.

    ``reason`` is a short machine-readable code meant for logs. It must never
    be shown to the user, who only ever sees the generic failure message.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InvalidCredentials(AuthenticationError):
    """Wrong password, failed bind, rejected assertion, bad code or foreign team."""


class UnprocessableRequest(AuthenticationError):
    """Malformed usage: unknown ``auth_type`` or a missing parameter."""

    def to_http_error(self) -> HTTPError:
        return HTTPError(Status.UNPROCESSABLE_ENTITY, {"detail": "unprocessable_request"})


class Unavailable(AuthenticationError):
    """A directory or identity provider could not be reached in time."""


class RateLimited(AuthenticationError):
    """Too many failed attempts for this session or client."""


__all__ = [
    "AuthenticationError",
    "HTTPError",
    "InvalidCredentials",
    "RateLimited",
    "TurnstileError",
    "Unavailable",
    "UnprocessableRequest",
]
