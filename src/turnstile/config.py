"""Configuration objects for the login flow."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

import msgspec
from msgspec import Struct

from .observability import ObservabilityConfig
from .serialization import json_decode

CONFIG_ENV = "TURNSTILE_CONFIG"


class MfaConfig(Struct, frozen=True):
    """Time-based one-time password parameters."""

    issuer: str = "Turnstile"
    digits: int = 6
    interval: int = 30
    valid_window: int = 1


class LdapConfig(Struct, frozen=True):
    """Directory login policy."""

    enabled: bool = False
    timeout_seconds: float = 5.0
    email_attribute: str = "mail"
    name_attribute: str = "cn"
    team_attribute: str | None = None
    allow_user_creation: bool = False
    default_team: str | None = None


class RateLimitConfig(Struct, frozen=True):
    """Failed-attempt thresholds shared by every backend."""

    max_attempts: int = 5
    window_seconds: int = 900
    lockout_seconds: int = 900
    base_cooldown_seconds: float = 1.0
    max_cooldown_seconds: float = 30.0


class TurnstileConfig(Struct, frozen=True):
    """Typed configuration for a :class:`~turnstile.orchestrator.LoginOrchestrator`."""

    login_path: str = "/login"
    landing_path: str = "/dashboard"
    settings_path: str = "/account/security"
    redirect_allowlist: tuple[str, ...] = ("/dashboard", "/projects/", "/teams/", "/account/")
    session_cookie: str = "turnstile_session"
    redirect_cookie: str = "redirect"
    cookie_secure: bool = True
    cookie_samesite: str = "Lax"
    session_ttl_seconds: int = 28_800
    remember_me_ttl_seconds: int = 2_592_000
    flow_ttl_seconds: int = 900
    anonymous_enabled: bool = False
    mfa: MfaConfig = MfaConfig()
    ldap: LdapConfig = LdapConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    observability: ObservabilityConfig = ObservabilityConfig()


def _read_env_blob(name: str, env: Mapping[str, str]) -> str | None:
    path = env.get(f"{name}_FILE")
    if path:
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise RuntimeError(f"Turnstile configuration file at '{path}' not found") from exc
    value = env.get(name)
    if value:
        return value
    return None


def load_config_from_env(*, env: Mapping[str, str] | None = None) -> TurnstileConfig:
    """Decode :class:`TurnstileConfig` from ``TURNSTILE_CONFIG`` or ``TURNSTILE_CONFIG_FILE``.

    Missing configuration yields the defaults.
    """

    source = _read_env_blob(CONFIG_ENV, os.environ if env is None else env)
    if source is None:
        return TurnstileConfig()
    try:
        payload = json_decode(source)
    except msgspec.DecodeError as exc:
        raise RuntimeError(f"Failed to decode {CONFIG_ENV} as JSON") from exc
    try:
        return msgspec.convert(payload, type=TurnstileConfig)
    except msgspec.ValidationError as exc:
        raise RuntimeError(f"Invalid Turnstile configuration: {exc}") from exc


__all__ = [
    "CONFIG_ENV",
    "LdapConfig",
    "MfaConfig",
    "RateLimitConfig",
    "TurnstileConfig",
    "load_config_from_env",
]
