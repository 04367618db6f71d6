"""TOTP verification and the opt-in enrollment flow."""

from __future__ import annotations

import binascii
import datetime as dt
import logging
from collections.abc import Callable
from enum import Enum

import pyotp
from msgspec import Struct

from .config import MfaConfig
from .exceptions import InvalidCredentials
from .flow import FlowStore, FlowTransaction
from .models import MfaSecretRecord, User
from .stores import MfaSecretRepository

logger = logging.getLogger(__name__)

__all__ = [
    "EnrollmentChallenge",
    "EnrollmentOutcome",
    "MfaEnrollment",
    "MfaHelper",
    "generate_secret",
    "provisioning_uri",
    "verify_code",
]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, *, account: str, config: MfaConfig | None = None) -> str:
    """Return the ``otpauth://`` URI authenticator apps scan."""

    settings = config or MfaConfig()
    totp = pyotp.TOTP(secret, digits=settings.digits, interval=settings.interval)
    return totp.provisioning_uri(name=account, issuer_name=settings.issuer)


def verify_code(
    secret: str | None,
    code: str | None,
    *,
    config: MfaConfig | None = None,
    at: dt.datetime | None = None,
) -> bool:
    """Check ``code`` against ``secret`` allowing ``valid_window`` steps of clock skew.

    Never raises: malformed secrets or codes simply do not verify. pyotp
    compares candidates in constant time.
    """

    settings = config or MfaConfig()
    if not isinstance(secret, str) or not isinstance(code, str) or not secret:
        return False
    candidate = "".join(code.split())
    if len(candidate) != settings.digits or not candidate.isdigit():
        return False
    try:
        totp = pyotp.TOTP(secret, digits=settings.digits, interval=settings.interval)
        return bool(totp.verify(candidate, for_time=at, valid_window=settings.valid_window))
    except (binascii.Error, ValueError, TypeError):
        return False


class MfaHelper:
    """Verify codes for one user/secret pair and persist the secret once proven."""

    def __init__(
        self,
        user_id: str,
        secret: str | None,
        *,
        repository: MfaSecretRepository | None = None,
        config: MfaConfig | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.user_id = user_id
        self.secret = secret
        self._repository = repository
        self._config = config or MfaConfig()
        self._clock = clock or _utcnow
        self._verified = False
        self._saved: MfaSecretRecord | None = None

    def verify_code(self, code: str | None) -> bool:
        verified = verify_code(self.secret, code, config=self._config, at=self._clock())
        if verified:
            self._verified = True
        return verified

    async def save_secret(self) -> MfaSecretRecord:
        """Store the secret as confirmed. Requires a successful :meth:`verify_code` first."""

        if self._saved is not None:
            return self._saved
        if not self._verified or self.secret is None:
            raise InvalidCredentials("mfa_code_not_verified")
        if self._repository is None:
            raise RuntimeError("MfaHelper.save_secret needs a repository")
        self._saved = await self._repository.confirm(self.user_id, self.secret, now=self._clock())
        return self._saved


class EnrollmentChallenge(Struct, frozen=True):
    secret: str
    provisioning_uri: str


class EnrollmentOutcome(str, Enum):
    ENABLED = "enabled"
    NOT_ENABLED = "not_enabled"


class MfaEnrollment:
    """Opt-in flow started from the account settings view."""

    def __init__(
        self,
        flows: FlowStore,
        repository: MfaSecretRepository,
        *,
        config: MfaConfig | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._flows = flows
        self._repository = repository
        self._config = config or MfaConfig()
        self._clock = clock or _utcnow

    async def begin(self, session_key: str, user: User) -> EnrollmentChallenge:
        """Stash a fresh unconfirmed secret for ``user`` in the flow state."""

        secret = generate_secret()
        await self._repository.save_pending(
            MfaSecretRecord(user_id=user.id, secret=secret, created_at=self._clock())
        )
        async with self._flows.transaction(session_key) as txn:
            txn.update(txn.current.enrollment_pending(user.id, secret))
        logger.info("MFA enrollment started")
        return EnrollmentChallenge(
            secret=secret,
            provisioning_uri=provisioning_uri(secret, account=user.email, config=self._config),
        )

    async def complete(self, txn: FlowTransaction, *, confirm: bool, code: str | None) -> EnrollmentOutcome:
        """Confirm or cancel the pending enrollment held by ``txn``.

        A wrong code raises :class:`InvalidCredentials` and leaves the enrollment
        pending so the user can retry.
        """

        state = txn.current
        if state.auth_user_id is None or state.mfa_secret is None:
            txn.clear()
            return EnrollmentOutcome.NOT_ENABLED
        if not confirm:
            await self._repository.discard_pending(state.auth_user_id)
            txn.clear()
            return EnrollmentOutcome.NOT_ENABLED
        helper = MfaHelper(
            state.auth_user_id,
            state.mfa_secret,
            repository=self._repository,
            config=self._config,
            clock=self._clock,
        )
        if not helper.verify_code(code):
            raise InvalidCredentials("invalid_mfa_code")
        await helper.save_secret()
        txn.clear()
        return EnrollmentOutcome.ENABLED
