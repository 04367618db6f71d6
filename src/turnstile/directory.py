"""Directory (LDAP) bind seam with bounded round trips."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Protocol

from .exceptions import Unavailable

logger = logging.getLogger(__name__)

__all__ = ["DirectoryClient", "DirectoryEntry", "DirectoryError", "bind_with_timeout"]

DirectoryEntry = Mapping[str, str]


class DirectoryError(RuntimeError):
    """Raised by a :class:`DirectoryClient` when the server cannot be used."""


class DirectoryClient(Protocol):
    async def bind(self, login: str, password: str) -> DirectoryEntry | None:
        """Return the bound entry's attributes, or ``None`` when the bind is refused."""


async def bind_with_timeout(
    client: DirectoryClient,
    login: str,
    password: str,
    *,
    timeout_seconds: float,
) -> DirectoryEntry | None:
    """Run one bind, mapping timeouts and server faults to :class:`Unavailable`."""

    try:
        return await asyncio.wait_for(client.bind(login, password), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        logger.warning("Directory bind timed out after %.1fs", timeout_seconds)
        raise Unavailable("directory_timeout") from exc
    except DirectoryError as exc:
        logger.warning("Directory bind failed: %s", exc)
        raise Unavailable("directory_error") from exc
