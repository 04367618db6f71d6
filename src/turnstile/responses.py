"""Response primitives."""

from __future__ import annotations

from typing import Iterable

import msgspec

from .exceptions import HTTPError
from .http import Status

DEFAULT_SECURITY_HEADERS: tuple[tuple[str, str], ...] = (
    ("strict-transport-security", "max-age=63072000; includeSubDomains; preload"),
    ("content-security-policy", "default-src 'self'"),
    ("x-content-type-options", "nosniff"),
    ("referrer-policy", "no-referrer"),
    ("x-frame-options", "DENY"),
    ("cache-control", "no-store"),
)

Headers = tuple[tuple[str, str], ...]


class Response(msgspec.Struct, frozen=True):
    """Immutable response payload."""

    status: int = int(Status.OK)
    headers: Headers = ()
    body: bytes = b""

    def with_headers(self, headers: Iterable[tuple[str, str]]) -> "Response":
        """Return a new response with ``headers`` appended."""

        return Response(status=self.status, headers=self.headers + tuple(headers), body=self.body)

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def header_values(self, name: str) -> tuple[str, ...]:
        lowered = name.lower()
        return tuple(value for key, value in self.headers if key.lower() == lowered)

    @property
    def location(self) -> str | None:
        return self.header("location")


def apply_default_security_headers(
    response: Response,
    *,
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Append default security headers to ``response`` when missing."""

    baseline = tuple(headers or DEFAULT_SECURITY_HEADERS)
    existing = {name.lower() for name, _ in response.headers}
    additions = tuple((name, value) for name, value in baseline if name.lower() not in existing)
    if not additions:
        return response
    return response.with_headers(additions)


def set_cookie_header(
    name: str,
    value: str,
    *,
    max_age: int | None = None,
    path: str = "/",
    secure: bool = True,
    samesite: str = "Lax",
) -> tuple[str, str]:
    """Build a ``set-cookie`` header for an HttpOnly cookie."""

    parts = [f"{name}={value}", f"Path={path}", "HttpOnly", f"SameSite={samesite}"]
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    if secure:
        parts.append("Secure")
    return ("set-cookie", "; ".join(parts))


def delete_cookie_header(name: str, *, path: str = "/", secure: bool = True, samesite: str = "Lax") -> tuple[str, str]:
    return set_cookie_header(name, "", max_age=0, path=path, secure=secure, samesite=samesite)


def RedirectResponse(
    location: str,
    *,
    status: int = int(Status.FOUND),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Create a redirect to ``location``."""

    combined = (("location", location),) + tuple(headers or ())
    return apply_default_security_headers(Response(status=status, headers=combined))


def exception_to_response(exc: HTTPError) -> Response:
    response = Response(
        status=exc.status,
        headers=(("content-type", "application/json"),),
        body=exc.to_response_body(),
    )
    return apply_default_security_headers(response)


__all__ = [
    "DEFAULT_SECURITY_HEADERS",
    "RedirectResponse",
    "Response",
    "apply_default_security_headers",
    "delete_cookie_header",
    "exception_to_response",
    "set_cookie_header",
]
