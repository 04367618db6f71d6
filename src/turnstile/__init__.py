"""Turnstile multi-backend login orchestration."""

from .backends import (
    AnonAuth,
    AuthBackend,
    AuthResult,
    AuthServices,
    AuthType,
    LdapAuth,
    LocalAuth,
    MfaAuth,
    SamlAuth,
    TeamAuth,
    select_backend,
)
from .config import LdapConfig, MfaConfig, RateLimitConfig, TurnstileConfig, load_config_from_env
from .directory import DirectoryClient, DirectoryError
from .exceptions import (
    AuthenticationError,
    HTTPError,
    InvalidCredentials,
    RateLimited,
    TurnstileError,
    Unavailable,
    UnprocessableRequest,
)
from .flash import FlashBag, FlashLevel, FlashMessage
from .flow import FlowStep, FlowStore, LoginFlowState, TeamChoice
from .mfa import EnrollmentChallenge, EnrollmentOutcome, MfaEnrollment, MfaHelper, verify_code
from .models import IdentityProvider, Membership, MfaSecretRecord, SessionRecord, Team, User
from .observability import Observability, ObservabilityConfig
from .orchestrator import LoginOrchestrator
from .passwords import PasswordHasher
from .ratelimit import LoginRateLimiter
from .redirects import resolve_redirect_target
from .requests import LoginForm, LoginRequest
from .responses import RedirectResponse, Response
from .saml import SamlAssertion, SamlAssertionValidator, SeenAssertionCache
from .sessions import IssuedSession, SessionIssuer

__all__ = [
    "AnonAuth",
    "AuthBackend",
    "AuthResult",
    "AuthServices",
    "AuthType",
    "AuthenticationError",
    "DirectoryClient",
    "DirectoryError",
    "EnrollmentChallenge",
    "EnrollmentOutcome",
    "FlashBag",
    "FlashLevel",
    "FlashMessage",
    "FlowStep",
    "FlowStore",
    "HTTPError",
    "IdentityProvider",
    "InvalidCredentials",
    "IssuedSession",
    "LdapAuth",
    "LdapConfig",
    "LocalAuth",
    "LoginFlowState",
    "LoginForm",
    "LoginOrchestrator",
    "LoginRateLimiter",
    "LoginRequest",
    "Membership",
    "MfaAuth",
    "MfaConfig",
    "MfaEnrollment",
    "MfaHelper",
    "MfaSecretRecord",
    "Observability",
    "ObservabilityConfig",
    "PasswordHasher",
    "RateLimitConfig",
    "RateLimited",
    "RedirectResponse",
    "Response",
    "SamlAssertion",
    "SamlAssertionValidator",
    "SamlAuth",
    "SeenAssertionCache",
    "SessionIssuer",
    "SessionRecord",
    "Team",
    "TeamAuth",
    "TeamChoice",
    "TurnstileConfig",
    "TurnstileError",
    "Unavailable",
    "UnprocessableRequest",
    "User",
    "load_config_from_env",
    "resolve_redirect_target",
    "select_backend",
    "verify_code",
]
