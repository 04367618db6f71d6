"""Transient login-flow state kept server side between requests."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from enum import Enum

import msgspec
from msgspec import Struct, structs

from .identifiers import generate_id
from .serialization import msgpack_decode_as, msgpack_encode
from .stores import SessionStorage

logger = logging.getLogger(__name__)


class FlowStep(str, Enum):
    """Where a login flow currently stands."""

    AWAITING_PRIMARY_AUTH = "awaiting_primary_auth"
    AWAITING_MFA = "awaiting_mfa"
    AWAITING_TEAM_SELECTION = "awaiting_team_selection"
    ENROLLMENT_PENDING = "enrollment_pending"
    AUTHENTICATED = "authenticated"


class TeamChoice(Struct, frozen=True):
    id: str
    name: str


class LoginFlowState(Struct, frozen=True):
    """Typed flow record.

    Instances are only produced through the transition constructors below.
    Each transition replaces every step-specific field, so a state never mixes
    the markers of two steps.
    """

    flow_id: str
    step: FlowStep = FlowStep.AWAITING_PRIMARY_AUTH
    auth_user_id: str | None = None
    mfa_secret: str | None = None
    team_choices: tuple[TeamChoice, ...] = ()
    remember_me: bool = False
    failed_attempts: int = 0

    @classmethod
    def start(cls) -> "LoginFlowState":
        return cls(flow_id=generate_id())

    @property
    def mfa_auth_required(self) -> bool:
        return self.step is FlowStep.AWAITING_MFA

    @property
    def team_selection_required(self) -> bool:
        return self.step is FlowStep.AWAITING_TEAM_SELECTION

    @property
    def enable_mfa_pending(self) -> bool:
        return self.step is FlowStep.ENROLLMENT_PENDING

    def choice_ids(self) -> tuple[str, ...]:
        return tuple(choice.id for choice in self.team_choices)

    def awaiting_mfa(self, user_id: str, secret: str) -> "LoginFlowState":
        return structs.replace(
            self,
            step=FlowStep.AWAITING_MFA,
            auth_user_id=user_id,
            mfa_secret=secret,
            team_choices=(),
        )

    def awaiting_team_selection(self, user_id: str, choices: Iterable[TeamChoice]) -> "LoginFlowState":
        return structs.replace(
            self,
            step=FlowStep.AWAITING_TEAM_SELECTION,
            auth_user_id=user_id,
            mfa_secret=None,
            team_choices=tuple(choices),
        )

    def enrollment_pending(self, user_id: str, secret: str) -> "LoginFlowState":
        return structs.replace(
            self,
            step=FlowStep.ENROLLMENT_PENDING,
            auth_user_id=user_id,
            mfa_secret=secret,
            team_choices=(),
        )

    def with_failure(self) -> "LoginFlowState":
        return structs.replace(self, failed_attempts=self.failed_attempts + 1)

    def with_remember_me(self, remember_me: bool) -> "LoginFlowState":
        return structs.replace(self, remember_me=remember_me)


class FlowTransaction:
    """Read-modify-write handle for one session key."""

    __slots__ = ("_cleared", "_original", "key", "state")

    def __init__(self, key: str, state: LoginFlowState | None) -> None:
        self.key = key
        self.state = state
        self._original = state
        self._cleared = False

    @property
    def current(self) -> LoginFlowState:
        """The stored state, or a fresh flow when none exists yet."""

        if self.state is None:
            self.state = LoginFlowState.start()
        return self.state

    def update(self, state: LoginFlowState) -> None:
        self.state = state
        self._cleared = False

    def clear(self) -> None:
        self.state = None
        self._cleared = True

    @property
    def dirty(self) -> bool:
        return self._cleared or self.state != self._original


class FlowStore:
    """Serialize flow transitions per session key on top of :class:`SessionStorage`."""

    def __init__(self, storage: SessionStorage, *, ttl_seconds: int, namespace: str = "flow:") -> None:
        self._storage = storage
        self._ttl_seconds = ttl_seconds
        self._namespace = namespace
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def load(self, key: str) -> LoginFlowState | None:
        raw = await self._storage.get(self._namespace + key)
        if raw is None:
            return None
        try:
            return msgpack_decode_as(raw, LoginFlowState)
        except (msgspec.DecodeError, msgspec.ValidationError):
            logger.warning("Discarding unreadable login flow state")
            await self._storage.delete(self._namespace + key)
            return None

    async def save(self, key: str, state: LoginFlowState) -> None:
        await self._storage.set(self._namespace + key, msgpack_encode(state), ttl_seconds=self._ttl_seconds)

    async def clear(self, key: str) -> None:
        await self._storage.delete(self._namespace + key)

    @asynccontextmanager
    async def transaction(self, key: str) -> AsyncIterator[FlowTransaction]:
        """Yield the flow for ``key`` and persist changes on clean exit only.

        An exception escaping the block leaves the stored state untouched.
        """

        lock = self._lock_for(key)
        async with lock:
            txn = FlowTransaction(key, await self.load(key))
            yield txn
            if not txn.dirty:
                return
            if txn.state is None:
                await self.clear(key)
            else:
                await self.save(key, txn.state)


__all__ = ["FlowStep", "FlowStore", "FlowTransaction", "LoginFlowState", "TeamChoice"]
