"""Failed-attempt throttling for login submissions."""

from __future__ import annotations

import asyncio
import datetime as dt
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from .config import RateLimitConfig
from .exceptions import RateLimited

__all__ = ["LoginRateLimiter"]


@dataclass(slots=True)
class _Attempts:
    failures: deque[dt.datetime] = field(default_factory=deque)
    locked_until: dt.datetime | None = None

    def expire(self, now: dt.datetime, window: dt.timedelta) -> None:
        if self.locked_until is not None and self.locked_until <= now:
            self.locked_until = None
        while self.failures and now - self.failures[0] >= window:
            self.failures.popleft()

    @property
    def empty(self) -> bool:
        return self.locked_until is None and not self.failures


class LoginRateLimiter:
    """Count failed logins per key inside a sliding window.

    Keys are the pre-login session key and the client address, so a flow
    cannot shed its history by dropping the cookie. Every failure still in
    the window doubles the wait before the next submission (capped at
    ``max_cooldown``); ``max_attempts`` failures lock the key for
    ``lockout_period``.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window: dt.timedelta = dt.timedelta(minutes=15),
        lockout_period: dt.timedelta = dt.timedelta(minutes=15),
        base_cooldown: dt.timedelta = dt.timedelta(seconds=1),
        max_cooldown: dt.timedelta = dt.timedelta(seconds=30),
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.window = window
        self.lockout_period = lockout_period
        self.base_cooldown = base_cooldown
        self.max_cooldown = max_cooldown
        self._attempts: dict[str, _Attempts] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "LoginRateLimiter":
        return cls(
            max_attempts=config.max_attempts,
            window=dt.timedelta(seconds=config.window_seconds),
            lockout_period=dt.timedelta(seconds=config.lockout_seconds),
            base_cooldown=dt.timedelta(seconds=config.base_cooldown_seconds),
            max_cooldown=dt.timedelta(seconds=config.max_cooldown_seconds),
        )

    async def enforce(self, keys: Iterable[str], now: dt.datetime) -> None:
        """Raise :class:`RateLimited` when any of ``keys`` may not submit yet."""

        async with self._lock:
            for key in keys:
                attempts = self._current(key, now)
                if attempts is None:
                    continue
                if attempts.locked_until is not None:
                    raise RateLimited("locked_out")
                if attempts.failures and now < attempts.failures[-1] + self._cooldown(len(attempts.failures)):
                    raise RateLimited("cooling_down")

    async def record_failure(self, keys: Iterable[str], now: dt.datetime) -> None:
        async with self._lock:
            self._sweep(now)
            for key in keys:
                attempts = self._attempts.setdefault(key, _Attempts())
                attempts.failures.append(now)
                if len(attempts.failures) >= self.max_attempts:
                    attempts.locked_until = now + self.lockout_period
                    attempts.failures.clear()

    async def record_success(self, keys: Iterable[str]) -> None:
        async with self._lock:
            for key in keys:
                self._attempts.pop(key, None)

    def tracked(self) -> int:
        return len(self._attempts)

    def _current(self, key: str, now: dt.datetime) -> _Attempts | None:
        attempts = self._attempts.get(key)
        if attempts is None:
            return None
        attempts.expire(now, self.window)
        if attempts.empty:
            del self._attempts[key]
            return None
        return attempts

    def _sweep(self, now: dt.datetime) -> None:
        for key in list(self._attempts):
            self._current(key, now)

    def _cooldown(self, failures: int) -> dt.timedelta:
        return min(self.base_cooldown * 2 ** (failures - 1), self.max_cooldown)
