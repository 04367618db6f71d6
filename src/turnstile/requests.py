"""Request primitives for login submissions."""

from __future__ import annotations

from http.cookies import CookieError, SimpleCookie
from typing import Any, Mapping, MutableMapping
from urllib.parse import parse_qsl

import msgspec

__all__ = ["LoginForm", "LoginRequest"]


class LoginForm(msgspec.Struct, frozen=True):
    """Fields a login form may post. Every field is optional at this level."""

    auth_type: str | None = None
    email: str | None = None
    password: str | None = None
    idp_id: str | None = msgspec.field(default=None, name="idpId")
    saml_response: str | None = msgspec.field(default=None, name="SAMLResponse")
    team_id: str | None = None
    selected_team: str | None = None
    mfa_code: str | None = None
    rememberme: bool = False
    submit: str | None = msgspec.field(default=None, name="Submit")


class LoginRequest:
    """Immutable view of an incoming login request."""

    __slots__ = ("_body", "_cookies", "_form", "_form_params", "client", "headers", "method", "path")

    def __init__(
        self,
        *,
        method: str = "POST",
        path: str = "/login",
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        form: Mapping[str, str] | None = None,
        cookies: Mapping[str, str] | None = None,
        client: str | None = None,
    ) -> None:
        self.method = method.upper()
        self.path = path
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.client = client
        self._body = body or b""
        self._form_params: MutableMapping[str, list[str]] | None = (
            {key: [value] for key, value in form.items()} if form is not None else None
        )
        self._form: LoginForm | None = None
        self._cookies: dict[str, str] | None = dict(cookies) if cookies is not None else None

    @staticmethod
    def _parse_form(raw: str) -> MutableMapping[str, list[str]]:
        parsed: MutableMapping[str, list[str]] = {}
        for key, value in parse_qsl(raw, keep_blank_values=True):
            parsed.setdefault(key, []).append(value)
        return parsed

    @property
    def form_params(self) -> MutableMapping[str, list[str]]:
        if self._form_params is None:
            self._form_params = self._parse_form(self._body.decode("utf-8", errors="replace"))
        return self._form_params

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def form(self) -> LoginForm:
        """Decode the urlencoded body into :class:`LoginForm`.

        ``rememberme`` is a checkbox, so its presence alone enables it.
        """

        if self._form is None:
            converted: dict[str, Any] = {}
            for key, values in self.form_params.items():
                if values:
                    converted[key] = values[-1]
            converted["rememberme"] = "rememberme" in converted
            self._form = msgspec.convert(converted, type=LoginForm)
        return self._form

    @property
    def cookies(self) -> Mapping[str, str]:
        if self._cookies is None:
            jar: SimpleCookie = SimpleCookie()
            try:
                jar.load(self.header("cookie") or "")
            except CookieError:
                jar = SimpleCookie()
            self._cookies = {name: morsel.value for name, morsel in jar.items()}
        return self._cookies

    def cookie(self, name: str) -> str | None:
        return self.cookies.get(name)
