"""Persisted records touched by the login flow."""

from __future__ import annotations

import datetime as dt

import msgspec
from msgspec import Struct


class User(Struct, frozen=True):
    id: str
    email: str
    created_at: dt.datetime
    display_name: str | None = None
    hashed_password: str | None = None
    password_salt: str | None = None
    password_secret: str = ""
    external_id: str | None = None


class Team(Struct, frozen=True):
    id: str
    name: str
    allow_anonymous: bool = False


class Membership(Struct, frozen=True):
    user_id: str
    team_id: str


class MfaSecretRecord(Struct, frozen=True):
    """Per-user TOTP secret; only ``confirmed`` secrets gate logins."""

    user_id: str
    secret: str
    created_at: dt.datetime
    confirmed: bool = False
    confirmed_at: dt.datetime | None = None


class IdentityProvider(Struct, frozen=True):
    """SAML identity provider trusted for federated logins."""

    id: str
    entity_id: str
    certificate: str
    name: str = ""
    enabled: bool = True
    allowed_audiences: tuple[str, ...] = ()
    clock_skew_seconds: int = 120
    email_attribute: str = "email"
    team_attribute: str | None = None
    attribute_mapping: dict[str, str] = msgspec.field(default_factory=dict)
    allow_user_creation: bool = False
    default_team: str | None = None


class SessionRecord(Struct, frozen=True):
    """Durable authenticated session. The cookie token is only stored hashed."""

    id: str
    token_hash: str
    token_salt: str
    user_id: str
    team_id: str
    flow_id: str
    created_at: dt.datetime
    expires_at: dt.datetime
    remember_me: bool = False
    is_anonymous: bool = False
    revoked_at: dt.datetime | None = None

    def is_active(self, now: dt.datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


__all__ = [
    "IdentityProvider",
    "Membership",
    "MfaSecretRecord",
    "SessionRecord",
    "Team",
    "User",
]
