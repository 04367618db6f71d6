"""Authentication backends selected by the ``auth_type`` discriminator."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, assert_never

from msgspec import Struct

from .config import TurnstileConfig
from .directory import DirectoryClient, bind_with_timeout
from .exceptions import InvalidCredentials, UnprocessableRequest
from .flow import LoginFlowState, TeamChoice
from .identifiers import generate_id
from .mfa import MfaHelper
from .models import Team, User
from .passwords import PasswordHasher
from .requests import LoginForm
from .saml import SamlAssertionValidator, SeenAssertionCache, decode_saml_response
from .stores import (
    IdentityProviderRegistry,
    InMemorySessionStorage,
    MfaSecretRepository,
    TeamDirectory,
    UserRepository,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AnonAuth",
    "AuthBackend",
    "AuthResult",
    "AuthServices",
    "AuthType",
    "LdapAuth",
    "LocalAuth",
    "MfaAuth",
    "SamlAuth",
    "TeamAuth",
    "select_backend",
]


class AuthType(str, Enum):
    LOCAL = "local"
    LDAP = "ldap"
    SAML = "saml"
    ANON = "anon"
    TEAM = "team"
    MFA = "mfa"

    @classmethod
    def parse(cls, value: str | None) -> "AuthType":
        try:
            return cls(value or "")
        except ValueError as exc:
            raise UnprocessableRequest("unknown_auth_type") from exc

    @property
    def is_primary(self) -> bool:
        """Whether this backend starts a flow rather than continuing one."""

        return self not in {AuthType.TEAM, AuthType.MFA}


class AuthResult(Struct, frozen=True):
    """Normalized outcome of a successful ``try_auth`` call."""

    user_id: str
    backend: AuthType
    mfa_secret: str | None = None
    has_verified_mfa: bool = False
    selected_team: str | None = None
    selectable_teams: tuple[TeamChoice, ...] = ()
    is_anonymous: bool = False

    @property
    def needs_mfa(self) -> bool:
        return self.mfa_secret is not None and not self.has_verified_mfa

    @property
    def is_complete(self) -> bool:
        return bool(self.user_id) and not self.needs_mfa and self.selected_team is not None


class AuthBackend(Protocol):
    async def try_auth(self) -> AuthResult:
        """Authenticate or raise :class:`~turnstile.exceptions.InvalidCredentials`."""


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(slots=True)
class AuthServices:
    """Collaborators shared by every backend."""

    config: TurnstileConfig
    users: UserRepository
    teams: TeamDirectory
    mfa_secrets: MfaSecretRepository
    hasher: PasswordHasher
    identity_providers: IdentityProviderRegistry | None = None
    directory: DirectoryClient | None = None
    clock: Callable[[], dt.datetime] = field(default=_utcnow)
    seen_assertions: SeenAssertionCache = field(default_factory=lambda: SeenAssertionCache(InMemorySessionStorage()))

    async def principal_result(
        self,
        user_id: str,
        backend: AuthType,
        *,
        mfa_secret: str | None = None,
        has_verified_mfa: bool = False,
    ) -> AuthResult:
        """Build the result for ``user_id`` from team membership and MFA enrollment."""

        teams = await self.teams.teams_for(user_id)
        if not teams:
            raise InvalidCredentials("no_team")
        if mfa_secret is None:
            mfa_secret = await self.mfa_secrets.confirmed_secret(user_id)
        if len(teams) == 1:
            return AuthResult(
                user_id=user_id,
                backend=backend,
                mfa_secret=mfa_secret,
                has_verified_mfa=has_verified_mfa,
                selected_team=teams[0].id,
            )
        return AuthResult(
            user_id=user_id,
            backend=backend,
            mfa_secret=mfa_secret,
            has_verified_mfa=has_verified_mfa,
            selectable_teams=tuple(TeamChoice(id=team.id, name=team.name) for team in teams),
        )

    async def provision_user(
        self,
        email: str,
        *,
        display_name: str | None,
        external_id: str,
        team_id: str | None,
        allow_creation: bool,
    ) -> User:
        """Return the local account for ``email``, creating it when policy allows."""

        user = await self.users.get_by_email(email)
        if user is not None:
            return user
        if not allow_creation:
            raise InvalidCredentials("unknown_account")
        team: Team | None = await self.teams.get(team_id) if team_id else None
        if team is None:
            raise InvalidCredentials("no_team")
        user = await self.users.add(
            User(
                id=generate_id(),
                email=email,
                display_name=display_name,
                external_id=external_id,
                created_at=self.clock(),
            )
        )
        await self.teams.add_member(user.id, team.id)
        logger.info("Provisioned account from %s", external_id.split(":", 1)[0])
        return user


def _require(value: str | None, reason: str) -> str:
    if value is None or not value.strip():
        raise UnprocessableRequest(reason)
    return value


class LocalAuth:
    def __init__(self, services: AuthServices, email: str | None, password: str | None) -> None:
        self._services = services
        self._email = email
        self._password = password

    async def try_auth(self) -> AuthResult:
        email = _require(self._email, "missing_email")
        if self._password is None or self._password == "":
            raise UnprocessableRequest("missing_password")
        user = await self._services.users.get_by_email(email)
        if not await self._services.hasher.verify_user_password(user, self._password) or user is None:
            raise InvalidCredentials("invalid_password")
        return await self._services.principal_result(user.id, AuthType.LOCAL)


class LdapAuth:
    def __init__(self, services: AuthServices, login: str | None, password: str | None) -> None:
        self._services = services
        self._login = login
        self._password = password

    async def try_auth(self) -> AuthResult:
        settings = self._services.config.ldap
        directory = self._services.directory
        if not settings.enabled or directory is None:
            raise UnprocessableRequest("ldap_disabled")
        login = _require(self._login, "missing_email")
        if not self._password:
            # An empty password would be an anonymous bind on most servers.
            raise UnprocessableRequest("missing_password")
        entry = await bind_with_timeout(
            directory,
            login,
            self._password,
            timeout_seconds=settings.timeout_seconds,
        )
        if entry is None:
            raise InvalidCredentials("directory_bind_failed")
        email = entry.get(settings.email_attribute) or login
        team_id = entry.get(settings.team_attribute) if settings.team_attribute else None
        user = await self._services.provision_user(
            email,
            display_name=entry.get(settings.name_attribute),
            external_id=f"ldap:{login}",
            team_id=team_id or settings.default_team,
            allow_creation=settings.allow_user_creation,
        )
        return await self._services.principal_result(user.id, AuthType.LDAP)


class SamlAuth:
    def __init__(self, services: AuthServices, idp_id: str | None, saml_response: str | None) -> None:
        self._services = services
        self._idp_id = idp_id
        self._saml_response = saml_response

    async def try_auth(self) -> AuthResult:
        idp_id = _require(self._idp_id, "missing_idp")
        registry = self._services.identity_providers
        provider = await registry.get(idp_id) if registry is not None else None
        if provider is None or not provider.enabled:
            raise UnprocessableRequest("unknown_idp")
        document = decode_saml_response(self._saml_response)
        now = self._services.clock()
        assertion = SamlAssertionValidator(provider).validate(document, now=now)
        await self._services.seen_assertions.claim(
            provider.id,
            assertion,
            now=now,
            skew_seconds=provider.clock_skew_seconds,
        )
        email = assertion.attributes.get(provider.email_attribute)
        if not email and "@" in assertion.subject:
            email = assertion.subject
        if not email:
            raise InvalidCredentials("missing_email_claim")
        team_claim = assertion.attributes.get(provider.team_attribute) if provider.team_attribute else None
        user = await self._services.provision_user(
            email,
            display_name=assertion.attributes.get("name"),
            external_id=f"saml:{provider.id}:{assertion.subject}",
            team_id=team_claim or provider.default_team,
            allow_creation=provider.allow_user_creation,
        )
        return await self._services.principal_result(user.id, AuthType.SAML)


class AnonAuth:
    def __init__(self, services: AuthServices, team_id: str | None) -> None:
        self._services = services
        self._team_id = team_id

    async def try_auth(self) -> AuthResult:
        if not self._services.config.anonymous_enabled:
            raise UnprocessableRequest("anonymous_disabled")
        team_id = _require(self._team_id, "missing_team")
        team = await self._services.teams.get(team_id)
        if team is None or not team.allow_anonymous:
            raise InvalidCredentials("anonymous_not_allowed")
        return AuthResult(
            user_id=f"anon:{team.id}",
            backend=AuthType.ANON,
            selected_team=team.id,
            is_anonymous=True,
        )


class TeamAuth:
    """Second step of team disambiguation for an already authenticated principal."""

    def __init__(self, services: AuthServices, flow: LoginFlowState, selected_team: str | None) -> None:
        self._services = services
        self._flow = flow
        self._selected_team = selected_team

    async def try_auth(self) -> AuthResult:
        user_id = self._flow.auth_user_id
        if not self._flow.team_selection_required or user_id is None:
            raise UnprocessableRequest("team_selection_not_expected")
        team_id = _require(self._selected_team, "missing_team")
        if team_id not in self._flow.choice_ids():
            raise InvalidCredentials("team_not_offered")
        # Membership may have changed since the choices were listed.
        if not await self._services.teams.is_member(user_id, team_id):
            raise InvalidCredentials("not_a_member")
        return AuthResult(user_id=user_id, backend=AuthType.TEAM, selected_team=team_id)


class MfaAuth:
    def __init__(self, services: AuthServices, flow: LoginFlowState, code: str | None) -> None:
        self._services = services
        self._flow = flow
        self._code = code

    async def try_auth(self) -> AuthResult:
        user_id = self._flow.auth_user_id
        secret = self._flow.mfa_secret
        if not self._flow.mfa_auth_required or user_id is None or secret is None:
            raise UnprocessableRequest("mfa_not_expected")
        code = _require(self._code, "missing_mfa_code")
        helper = MfaHelper(user_id, secret, config=self._services.config.mfa, clock=self._services.clock)
        if not helper.verify_code(code):
            raise InvalidCredentials("invalid_mfa_code")
        return await self._services.principal_result(
            user_id,
            AuthType.MFA,
            mfa_secret=secret,
            has_verified_mfa=True,
        )


def select_backend(
    auth_type: AuthType,
    form: LoginForm,
    flow: LoginFlowState,
    services: AuthServices,
) -> AuthBackend:
    match auth_type:
        case AuthType.LOCAL:
            return LocalAuth(services, form.email, form.password)
        case AuthType.LDAP:
            return LdapAuth(services, form.email, form.password)
        case AuthType.SAML:
            return SamlAuth(services, form.idp_id, form.saml_response)
        case AuthType.ANON:
            return AnonAuth(services, form.team_id)
        case AuthType.TEAM:
            return TeamAuth(services, flow, form.selected_team)
        case AuthType.MFA:
            return MfaAuth(services, flow, form.mfa_code)
        case _:
            assert_never(auth_type)
