"""Post-login redirect target policy."""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import urlsplit, urlunsplit

__all__ = ["is_safe_target", "resolve_redirect_target"]


def _path_allowed(path: str, allowlist: Iterable[str]) -> bool:
    for entry in allowlist:
        if path == entry:
            return True
        if entry.endswith("/") and path.startswith(entry):
            return True
    return False


def is_safe_target(candidate: str | None, allowlist: Iterable[str]) -> bool:
    """Return whether ``candidate`` is a same-origin path on the allowlist."""

    if not candidate or not candidate.startswith("/"):
        return False
    if candidate.startswith("//") or candidate.startswith("/\\"):
        return False
    if any(ord(char) < 0x20 or ord(char) == 0x7F or char == "\\" for char in candidate):
        return False
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return False
    if parts.scheme or parts.netloc:
        return False
    segments = parts.path.split("/")
    if ".." in segments or "." in segments:
        return False
    return _path_allowed(parts.path, allowlist)


def resolve_redirect_target(candidate: str | None, *, allowlist: Iterable[str], default: str) -> str:
    """Pick where to send a freshly logged-in user.

    ``candidate`` usually comes from the redirect cookie. Anything that is not
    an allowlisted local path falls back to ``default``. Fragments are dropped.
    """

    allowed = tuple(allowlist)
    if not is_safe_target(candidate, allowed):
        return default
    parts = urlsplit(candidate or "")
    return urlunsplit(("", "", parts.path, parts.query, ""))
