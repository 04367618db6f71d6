"""Collaborator contracts and in-memory reference implementations."""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable, Iterable
from time import monotonic
from typing import Protocol

from msgspec import structs

from .models import IdentityProvider, Membership, MfaSecretRecord, SessionRecord, Team, User


class UserRepository(Protocol):
    async def get(self, user_id: str) -> User | None: ...

    async def get_by_email(self, email: str) -> User | None: ...

    async def add(self, user: User) -> User: ...


class TeamDirectory(Protocol):
    async def get(self, team_id: str) -> Team | None: ...

    async def teams_for(self, user_id: str) -> tuple[Team, ...]: ...

    async def is_member(self, user_id: str, team_id: str) -> bool: ...

    async def add_member(self, user_id: str, team_id: str) -> None: ...


class MfaSecretRepository(Protocol):
    async def confirmed_secret(self, user_id: str) -> str | None: ...

    async def save_pending(self, record: MfaSecretRecord) -> None: ...

    async def confirm(self, user_id: str, secret: str, *, now: dt.datetime) -> MfaSecretRecord: ...

    async def discard_pending(self, user_id: str) -> None: ...


class IdentityProviderRegistry(Protocol):
    async def get(self, idp_id: str) -> IdentityProvider | None: ...


class SessionRepository(Protocol):
    async def add(self, record: SessionRecord) -> None: ...

    async def find_for_flow(self, flow_id: str) -> SessionRecord | None: ...


class SessionStorage(Protocol):
    """Server-side key/value storage behind the session cookie."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, *, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryUserRepository:
    def __init__(self, users: Iterable[User] | None = None) -> None:
        self._users: dict[str, User] = {}
        for user in users or ():
            self._users[user.id] = user

    async def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    async def get_by_email(self, email: str) -> User | None:
        needle = email.strip().lower()
        for user in self._users.values():
            if user.email.lower() == needle:
                return user
        return None

    async def add(self, user: User) -> User:
        self._users[user.id] = user
        return user


class InMemoryTeamDirectory:
    def __init__(
        self,
        teams: Iterable[Team] | None = None,
        memberships: Iterable[Membership] | None = None,
    ) -> None:
        self._teams: dict[str, Team] = {team.id: team for team in teams or ()}
        self._members: list[Membership] = list(memberships or ())

    async def get(self, team_id: str) -> Team | None:
        return self._teams.get(team_id)

    async def teams_for(self, user_id: str) -> tuple[Team, ...]:
        return tuple(
            self._teams[membership.team_id]
            for membership in self._members
            if membership.user_id == user_id and membership.team_id in self._teams
        )

    async def is_member(self, user_id: str, team_id: str) -> bool:
        return any(m.user_id == user_id and m.team_id == team_id for m in self._members)

    async def add_member(self, user_id: str, team_id: str) -> None:
        if not await self.is_member(user_id, team_id):
            self._members.append(Membership(user_id=user_id, team_id=team_id))

    def remove_member(self, user_id: str, team_id: str) -> None:
        self._members = [m for m in self._members if not (m.user_id == user_id and m.team_id == team_id)]


class InMemoryMfaSecretRepository:
    def __init__(self, records: Iterable[MfaSecretRecord] | None = None) -> None:
        self._confirmed: dict[str, MfaSecretRecord] = {}
        self._pending: dict[str, MfaSecretRecord] = {}
        for record in records or ():
            target = self._confirmed if record.confirmed else self._pending
            target[record.user_id] = record

    async def confirmed_secret(self, user_id: str) -> str | None:
        record = self._confirmed.get(user_id)
        return record.secret if record is not None else None

    async def save_pending(self, record: MfaSecretRecord) -> None:
        self._pending[record.user_id] = structs.replace(record, confirmed=False, confirmed_at=None)

    async def confirm(self, user_id: str, secret: str, *, now: dt.datetime) -> MfaSecretRecord:
        pending = self._pending.pop(user_id, None)
        if pending is None or pending.secret != secret:
            pending = MfaSecretRecord(user_id=user_id, secret=secret, created_at=now)
        record = structs.replace(pending, confirmed=True, confirmed_at=now)
        self._confirmed[user_id] = record
        return record

    async def discard_pending(self, user_id: str) -> None:
        self._pending.pop(user_id, None)

    def records(self) -> tuple[MfaSecretRecord, ...]:
        return tuple(self._confirmed.values()) + tuple(self._pending.values())


class InMemoryIdentityProviderRegistry:
    def __init__(self, providers: Iterable[IdentityProvider] | None = None) -> None:
        self._providers = {provider.id: provider for provider in providers or ()}

    async def get(self, idp_id: str) -> IdentityProvider | None:
        return self._providers.get(idp_id)


class InMemorySessionRepository:
    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}

    async def add(self, record: SessionRecord) -> None:
        self._records[record.id] = record

    async def find_for_flow(self, flow_id: str) -> SessionRecord | None:
        for record in self._records.values():
            if record.flow_id == flow_id:
                return record
        return None

    def records(self) -> tuple[SessionRecord, ...]:
        return tuple(self._records.values())


class InMemorySessionStorage:
    """TTL-aware dictionary storage."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or monotonic
        self._entries: dict[str, tuple[bytes, float]] = {}

    async def get(self, key: str) -> bytes | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: bytes, *, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + max(ttl_seconds, 0))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def keys(self) -> tuple[str, ...]:
        return tuple(self._entries)


__all__ = [
    "IdentityProviderRegistry",
    "InMemoryIdentityProviderRegistry",
    "InMemoryMfaSecretRepository",
    "InMemorySessionRepository",
    "InMemorySessionStorage",
    "InMemoryTeamDirectory",
    "InMemoryUserRepository",
    "MfaSecretRepository",
    "SessionRepository",
    "SessionStorage",
    "TeamDirectory",
    "UserRepository",
]
