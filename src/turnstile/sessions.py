"""Issue durable sessions once a login flow completes."""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable, Iterable

from msgspec import Struct, structs

from .backends import AuthResult
from .config import TurnstileConfig
from .identifiers import generate_id, generate_token
from .models import SessionRecord
from .stores import SessionRepository, SessionStorage

logger = logging.getLogger(__name__)

__all__ = ["IssuedSession", "SessionIssuer", "derive_token_hash", "verify_token"]

_PBKDF2_ITERATIONS = 200_000


def derive_token_hash(token: str, salt_hex: str) -> str:
    derived = hashlib.pbkdf2_hmac("sha256", token.encode(), bytes.fromhex(salt_hex), _PBKDF2_ITERATIONS)
    return derived.hex()


def verify_token(record: SessionRecord, token: str) -> bool:
    return hmac.compare_digest(derive_token_hash(token, record.token_salt), record.token_hash)


class IssuedSession(Struct, frozen=True):
    """Cookie token plus the persisted record. Only ``record`` is stored."""

    token: str
    record: SessionRecord
    max_age: int
    reused: bool = False

    @property
    def id(self) -> str:
        return self.record.id


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class SessionIssuer:
    def __init__(
        self,
        sessions: SessionRepository,
        storage: SessionStorage,
        *,
        config: TurnstileConfig | None = None,
        clock: Callable[[], dt.datetime] | None = None,
        storage_namespaces: Iterable[str] = ("flow:", "flash:"),
    ) -> None:
        self._sessions = sessions
        self._storage = storage
        self._config = config or TurnstileConfig()
        self._clock = clock or _utcnow
        self._namespaces = tuple(storage_namespaces)

    async def login(
        self,
        result: AuthResult,
        *,
        flow_id: str,
        remember_me: bool,
        previous_key: str | None = None,
    ) -> IssuedSession:
        """Bind ``result`` to a new session and retire the pre-login key.

        Calling this again for the same flow, user and team rotates the token
        of the session already issued instead of creating a second one.
        """

        if not result.is_complete or result.selected_team is None:
            raise ValueError("Cannot issue a session for an incomplete login")
        now = self._clock()
        ttl = self._config.remember_me_ttl_seconds if remember_me else self._config.session_ttl_seconds
        token = generate_token()
        salt = secrets.token_hex(16)
        token_hash = derive_token_hash(token, salt)
        existing = await self._sessions.find_for_flow(flow_id)
        if (
            existing is not None
            and existing.user_id == result.user_id
            and existing.team_id == result.selected_team
            and existing.is_active(now)
        ):
            record = structs.replace(existing, token_hash=token_hash, token_salt=salt)
            await self._sessions.add(record)
            await self._retire(previous_key)
            logger.info("Reused session for completed login flow")
            return IssuedSession(
                token=token,
                record=record,
                max_age=max(int((existing.expires_at - now).total_seconds()), 0),
                reused=True,
            )
        record = SessionRecord(
            id=generate_id(timestamp=now),
            token_hash=token_hash,
            token_salt=salt,
            user_id=result.user_id,
            team_id=result.selected_team,
            flow_id=flow_id,
            created_at=now,
            expires_at=now + dt.timedelta(seconds=ttl),
            remember_me=remember_me,
            is_anonymous=result.is_anonymous,
        )
        await self._sessions.add(record)
        await self._retire(previous_key)
        return IssuedSession(token=token, record=record, max_age=ttl)

    async def _retire(self, previous_key: str | None) -> None:
        if not previous_key:
            return
        for namespace in self._namespaces:
            await self._storage.delete(namespace + previous_key)
