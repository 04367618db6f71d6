"""Multi-step login state machine."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable

from .backends import AuthResult, AuthServices, AuthType, select_backend
from .config import TurnstileConfig
from .directory import DirectoryClient
from .exceptions import InvalidCredentials, RateLimited, Unavailable, UnprocessableRequest
from .flash import GENERIC_LOGIN_FAILURE, FlashBag, FlashMessage
from .flow import FlowStep, FlowStore, FlowTransaction, LoginFlowState
from .identifiers import generate_token
from .mfa import EnrollmentChallenge, EnrollmentOutcome, MfaEnrollment
from .models import User
from .observability import Observability
from .passwords import PasswordHasher
from .ratelimit import LoginRateLimiter
from .redirects import resolve_redirect_target
from .requests import LoginForm, LoginRequest
from .saml import SeenAssertionCache
from .responses import RedirectResponse, Response, delete_cookie_header, exception_to_response, set_cookie_header
from .sessions import IssuedSession, SessionIssuer
from .stores import (
    IdentityProviderRegistry,
    MfaSecretRepository,
    SessionRepository,
    SessionStorage,
    TeamDirectory,
    UserRepository,
)

logger = logging.getLogger(__name__)

__all__ = ["LoginOrchestrator", "MFA_ENABLED", "MFA_INVALID_CODE", "MFA_NOT_ENABLED"]

MFA_ENABLED = "Two Factor Authentication is now enabled!"
MFA_NOT_ENABLED = "Two Factor Authentication was not enabled!"
MFA_INVALID_CODE = "The code you entered is not valid!"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class LoginOrchestrator:
    """Drive one login request through backend dispatch, MFA, team selection and session issuance.

    Flow state lives server side under the session cookie. Every request runs
    inside a :meth:`FlowStore.transaction`, so concurrent submits for one
    session are serialised and a rejected request leaves the stored state as
    it was.
    """

    def __init__(
        self,
        services: AuthServices,
        *,
        flows: FlowStore,
        sessions: SessionIssuer,
        flashes: FlashBag,
        enrollment: MfaEnrollment,
        rate_limiter: LoginRateLimiter | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.services = services
        self.config = services.config
        self._flows = flows
        self._sessions = sessions
        self._flashes = flashes
        self._enrollment = enrollment
        self._rate_limiter = rate_limiter or LoginRateLimiter.from_config(self.config.rate_limit)
        self._observability = observability or Observability(self.config.observability)

    @classmethod
    def build(
        cls,
        *,
        users: UserRepository,
        teams: TeamDirectory,
        mfa_secrets: MfaSecretRepository,
        session_repository: SessionRepository,
        storage: SessionStorage,
        config: TurnstileConfig | None = None,
        identity_providers: IdentityProviderRegistry | None = None,
        directory: DirectoryClient | None = None,
        hasher: PasswordHasher | None = None,
        clock: Callable[[], dt.datetime] | None = None,
        observability: Observability | None = None,
    ) -> "LoginOrchestrator":
        """Wire the default collaborators around the given stores."""

        settings = config or TurnstileConfig()
        now = clock or _utcnow
        services = AuthServices(
            config=settings,
            users=users,
            teams=teams,
            mfa_secrets=mfa_secrets,
            hasher=hasher or PasswordHasher(),
            identity_providers=identity_providers,
            directory=directory,
            clock=now,
            seen_assertions=SeenAssertionCache(storage),
        )
        flows = FlowStore(storage, ttl_seconds=settings.flow_ttl_seconds)
        return cls(
            services,
            flows=flows,
            sessions=SessionIssuer(session_repository, storage, config=settings, clock=now),
            flashes=FlashBag(storage, ttl_seconds=settings.flow_ttl_seconds),
            enrollment=MfaEnrollment(flows, mfa_secrets, config=settings.mfa, clock=now),
            observability=observability,
        )

    async def begin_mfa_enrollment(self, session_key: str, user: User) -> EnrollmentChallenge:
        """Start opting ``user`` into MFA; the next login submission completes it."""

        challenge = await self._enrollment.begin(session_key, user)
        self._observability.event("mfa.enrollment", outcome="started", user_id=user.id)
        return challenge

    async def pop_messages(self, session_key: str) -> tuple[FlashMessage, ...]:
        return await self._flashes.pop(session_key)

    async def handle(self, request: LoginRequest) -> Response:
        session_key = request.cookie(self.config.session_cookie)
        fresh_key = not session_key
        if not session_key:
            session_key = generate_token()
        form = request.form()
        try:
            async with self._flows.transaction(session_key) as txn:
                response = await self._dispatch(request, form, txn, session_key)
        except UnprocessableRequest as exc:
            logger.info("Rejected login request: %s", exc.reason)
            self._observability.event(
                "login.failed",
                auth_type=form.auth_type,
                outcome="unprocessable",
                reason=exc.reason,
            )
            return exception_to_response(exc.to_http_error())
        if fresh_key and response.header("set-cookie") is None:
            response = response.with_headers((self._session_cookie(session_key, max_age=None),))
        return response

    async def _dispatch(
        self,
        request: LoginRequest,
        form: LoginForm,
        txn: FlowTransaction,
        session_key: str,
    ) -> Response:
        if txn.state is not None and txn.state.enable_mfa_pending:
            return await self._complete_enrollment(form, txn, session_key)

        auth_type = AuthType.parse(form.auth_type)
        state = txn.current
        keys = self._limiter_keys(session_key, request.client)
        try:
            await self._rate_limiter.enforce(keys, self.services.clock())
        except RateLimited as exc:
            logger.warning("Login attempt throttled: %s", exc.reason)
            self._observability.event(
                "login.failed",
                auth_type=auth_type.value,
                outcome="throttled",
                reason=exc.reason,
            )
            return await self._fail(session_key)

        remember_me = form.rememberme if auth_type.is_primary else state.remember_me
        backend = select_backend(auth_type, form, state, self.services)
        try:
            with self._observability.step(auth_type.value, flow_step=state.step.value) as observation:
                result = await backend.try_auth()
                observation.annotate("login.outcome", "authenticated")
        except InvalidCredentials as exc:
            txn.update(state.with_failure())
            await self._rate_limiter.record_failure(keys, self.services.clock())
            self._observability.event(
                "login.failed",
                auth_type=auth_type.value,
                outcome="invalid_credentials",
                reason=exc.reason,
                failed_attempts=state.failed_attempts + 1,
            )
            return await self._fail(session_key)
        except Unavailable as exc:
            logger.warning("Login backend %s unavailable: %s", auth_type.value, exc.reason)
            self._observability.event("login.unavailable", auth_type=auth_type.value, reason=exc.reason)
            return await self._fail(session_key)

        return await self._advance(
            request,
            txn,
            state,
            result,
            remember_me=remember_me,
            session_key=session_key,
            keys=keys,
        )

    async def _advance(
        self,
        request: LoginRequest,
        txn: FlowTransaction,
        state: LoginFlowState,
        result: AuthResult,
        *,
        remember_me: bool,
        session_key: str,
        keys: list[str],
    ) -> Response:
        if result.needs_mfa and result.mfa_secret is not None:
            txn.update(state.with_remember_me(remember_me).awaiting_mfa(result.user_id, result.mfa_secret))
            self._observability.event("login.step", auth_type=result.backend.value, step=FlowStep.AWAITING_MFA.value)
            return RedirectResponse(self.config.login_path)
        if result.selected_team is None:
            txn.update(
                state.with_remember_me(remember_me).awaiting_team_selection(result.user_id, result.selectable_teams)
            )
            self._observability.event(
                "login.step",
                auth_type=result.backend.value,
                step=FlowStep.AWAITING_TEAM_SELECTION.value,
                choices=len(result.selectable_teams),
            )
            return RedirectResponse(self.config.login_path)

        issued = await self._sessions.login(
            result,
            flow_id=state.flow_id,
            remember_me=remember_me,
            previous_key=session_key,
        )
        txn.clear()
        await self._rate_limiter.record_success(keys)
        self._observability.event(
            "login.succeeded",
            auth_type=result.backend.value,
            user_id=result.user_id,
            team_id=result.selected_team,
            session_id=issued.id,
            anonymous=result.is_anonymous or None,
            reused=issued.reused or None,
        )
        target = resolve_redirect_target(
            request.cookie(self.config.redirect_cookie),
            allowlist=self.config.redirect_allowlist,
            default=self.config.landing_path,
        )
        return RedirectResponse(
            target,
            headers=(
                self._issued_cookie(issued, remember_me=remember_me),
                delete_cookie_header(
                    self.config.redirect_cookie,
                    secure=self.config.cookie_secure,
                    samesite=self.config.cookie_samesite,
                ),
            ),
        )

    async def _complete_enrollment(self, form: LoginForm, txn: FlowTransaction, session_key: str) -> Response:
        state = txn.current
        try:
            outcome = await self._enrollment.complete(txn, confirm=form.submit == "submit", code=form.mfa_code)
        except InvalidCredentials as exc:
            txn.update(state.with_failure())
            self._observability.event(
                "mfa.enrollment",
                outcome="invalid_code",
                reason=exc.reason,
                user_id=state.auth_user_id,
            )
            await self._flashes.ko(session_key, MFA_INVALID_CODE)
            return RedirectResponse(self.config.settings_path)
        if outcome is EnrollmentOutcome.ENABLED:
            await self._flashes.ok(session_key, MFA_ENABLED)
        else:
            await self._flashes.ko(session_key, MFA_NOT_ENABLED)
        self._observability.event("mfa.enrollment", outcome=outcome.value, user_id=state.auth_user_id)
        return RedirectResponse(self.config.settings_path)

    async def _fail(self, session_key: str) -> Response:
        await self._flashes.ko(session_key, GENERIC_LOGIN_FAILURE)
        return RedirectResponse(self.config.login_path)

    @staticmethod
    def _limiter_keys(session_key: str, client: str | None) -> list[str]:
        keys = [f"session:{session_key}"]
        if client:
            keys.append(f"client:{client}")
        return keys

    def _session_cookie(self, value: str, *, max_age: int | None) -> tuple[str, str]:
        return set_cookie_header(
            self.config.session_cookie,
            value,
            max_age=max_age,
            secure=self.config.cookie_secure,
            samesite=self.config.cookie_samesite,
        )

    def _issued_cookie(self, issued: IssuedSession, *, remember_me: bool) -> tuple[str, str]:
        return self._session_cookie(issued.token, max_age=issued.max_age if remember_me else None)
