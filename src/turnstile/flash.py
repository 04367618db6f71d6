"""One-shot user-facing messages stored next to the session."""

from __future__ import annotations

import logging
from enum import Enum

import msgspec
from msgspec import Struct

from .serialization import msgpack_decode_as, msgpack_encode
from .stores import SessionStorage

logger = logging.getLogger(__name__)

__all__ = ["FlashBag", "FlashLevel", "FlashMessage", "GENERIC_LOGIN_FAILURE"]

GENERIC_LOGIN_FAILURE = "Login failed. Please check your credentials and try again."


class FlashLevel(str, Enum):
    OK = "ok"
    KO = "ko"


class FlashMessage(Struct, frozen=True):
    level: FlashLevel
    text: str


class FlashBag:
    def __init__(self, storage: SessionStorage, *, ttl_seconds: int = 900, namespace: str = "flash:") -> None:
        self._storage = storage
        self._ttl_seconds = ttl_seconds
        self._namespace = namespace

    async def peek(self, key: str) -> tuple[FlashMessage, ...]:
        raw = await self._storage.get(self._namespace + key)
        if raw is None:
            return ()
        try:
            return msgpack_decode_as(raw, tuple[FlashMessage, ...])
        except (msgspec.DecodeError, msgspec.ValidationError):
            logger.warning("Discarding unreadable flash messages")
            return ()

    async def add(self, key: str, level: FlashLevel, text: str) -> None:
        messages = await self.peek(key) + (FlashMessage(level=level, text=text),)
        await self._storage.set(self._namespace + key, msgpack_encode(messages), ttl_seconds=self._ttl_seconds)

    async def ok(self, key: str, text: str) -> None:
        await self.add(key, FlashLevel.OK, text)

    async def ko(self, key: str, text: str) -> None:
        await self.add(key, FlashLevel.KO, text)

    async def pop(self, key: str) -> tuple[FlashMessage, ...]:
        """Return and forget every pending message for ``key``."""

        messages = await self.peek(key)
        await self._storage.delete(self._namespace + key)
        return messages
