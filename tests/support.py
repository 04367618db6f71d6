"""Builders and fakes shared by the login flow tests."""

from __future__ import annotations

import asyncio
import base64
import datetime as dt
import hashlib
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlencode

import lxml.etree as LET
import pyotp
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.x509.oid import NameOID

from turnstile.config import TurnstileConfig
from turnstile.directory import DirectoryEntry, DirectoryError
from turnstile.identifiers import generate_id
from turnstile.models import IdentityProvider, Membership, MfaSecretRecord, Team, User
from turnstile.observability import Observability, ObservabilityConfig
from turnstile.orchestrator import LoginOrchestrator
from turnstile.passwords import PasswordHasher
from turnstile.requests import LoginRequest
from turnstile.responses import Response
from turnstile.stores import (
    InMemoryIdentityProviderRegistry,
    InMemoryMfaSecretRepository,
    InMemorySessionRepository,
    InMemorySessionStorage,
    InMemoryTeamDirectory,
    InMemoryUserRepository,
)

NOW = dt.datetime(2026, 3, 2, 9, 30, tzinfo=dt.UTC)
PASSWORD = "correct horse battery staple"
ENTITY_ID = "https://idp.example.com/metadata"


class FrozenClock:
    def __init__(self, now: dt.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + dt.timedelta(**delta)


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(pepper="pepper", time_cost=2, memory_cost=8_192, parallelism=1)


async def make_user(
    hasher: PasswordHasher,
    *,
    email: str,
    password: str | None = PASSWORD,
    user_id: str | None = None,
) -> User:
    user = User(id=user_id or generate_id(timestamp=NOW), email=email, created_at=NOW, password_secret="user-secret")
    if password is None:
        return user
    hashed, salt = await hasher.hash_user_password(user_secret=user.password_secret, password=password)
    return User(
        id=user.id,
        email=user.email,
        created_at=user.created_at,
        hashed_password=hashed,
        password_salt=salt,
        password_secret=user.password_secret,
    )


def totp(secret: str, at: dt.datetime = NOW) -> str:
    return pyotp.TOTP(secret).at(at)


def wrong_code(secret: str, at: dt.datetime = NOW) -> str:
    """A six digit code outside the accepted window around ``at``."""

    generator = pyotp.TOTP(secret)
    accepted = {generator.at(at, offset) for offset in (-1, 0, 1)}
    return next(code for code in (f"{n:06d}" for n in range(10)) if code not in accepted)


class FakeDirectory:
    """Directory client answering from a static table."""

    def __init__(
        self,
        entries: Mapping[str, tuple[str, DirectoryEntry]] | None = None,
        *,
        delay: float = 0.0,
        error: str | None = None,
    ) -> None:
        self.entries = dict(entries or {})
        self.delay = delay
        self.error = error
        self.binds: list[str] = []

    async def bind(self, login: str, password: str) -> DirectoryEntry | None:
        self.binds.append(login)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise DirectoryError(self.error)
        entry = self.entries.get(login)
        if entry is None or entry[0] != password:
            return None
        return entry[1]


@dataclass
class LoginWorld:
    """Every store behind one orchestrator, exposed for assertions."""

    orchestrator: LoginOrchestrator
    config: TurnstileConfig
    clock: FrozenClock
    hasher: PasswordHasher
    users: InMemoryUserRepository
    teams: InMemoryTeamDirectory
    mfa_secrets: InMemoryMfaSecretRepository
    sessions: InMemorySessionRepository
    storage: InMemorySessionStorage
    identity_providers: InMemoryIdentityProviderRegistry
    directory: FakeDirectory
    users_by_email: dict[str, User] = field(default_factory=dict)


async def build_world(
    *,
    config: TurnstileConfig | None = None,
    teams: tuple[Team, ...] = (Team(id="team-a", name="Alpha"), Team(id="team-b", name="Beta")),
    members: Mapping[str, tuple[str, ...]] | None = None,
    mfa: Mapping[str, str] | None = None,
    identity_providers: tuple[IdentityProvider, ...] = (),
    directory: FakeDirectory | None = None,
) -> LoginWorld:
    """Create users for each email in ``members`` with :data:`PASSWORD`."""

    settings = config or TurnstileConfig(cookie_secure=False)
    clock = FrozenClock()
    hasher = fast_hasher()
    created: dict[str, User] = {}
    memberships: list[Membership] = []
    for email, team_ids in (members or {}).items():
        user = await make_user(hasher, email=email)
        created[email] = user
        memberships.extend(Membership(user_id=user.id, team_id=team_id) for team_id in team_ids)
    secrets = [
        MfaSecretRecord(user_id=created[email].id, secret=secret, created_at=NOW, confirmed=True, confirmed_at=NOW)
        for email, secret in (mfa or {}).items()
    ]
    users = InMemoryUserRepository(created.values())
    team_directory = InMemoryTeamDirectory(teams, memberships)
    mfa_repository = InMemoryMfaSecretRepository(secrets)
    session_repository = InMemorySessionRepository()
    storage = InMemorySessionStorage()
    registry = InMemoryIdentityProviderRegistry(identity_providers)
    fake_directory = directory or FakeDirectory()
    orchestrator = LoginOrchestrator.build(
        users=users,
        teams=team_directory,
        mfa_secrets=mfa_repository,
        session_repository=session_repository,
        storage=storage,
        config=settings,
        identity_providers=registry,
        directory=fake_directory,
        hasher=hasher,
        clock=clock,
        observability=Observability(
            ObservabilityConfig(opentelemetry_enabled=False, datadog_enabled=False)
        ),
    )
    return LoginWorld(
        orchestrator=orchestrator,
        config=settings,
        clock=clock,
        hasher=hasher,
        users=users,
        teams=team_directory,
        mfa_secrets=mfa_repository,
        sessions=session_repository,
        storage=storage,
        identity_providers=registry,
        directory=fake_directory,
        users_by_email=created,
    )


def login_request(
    session_key: str | None = "pre-login-key",
    *,
    redirect: str | None = None,
    client: str | None = "203.0.113.7",
    **fields: Any,
) -> LoginRequest:
    cookies = []
    if session_key:
        cookies.append(f"turnstile_session={session_key}")
    if redirect is not None:
        cookies.append(f"redirect={redirect}")
    headers = {"content-type": "application/x-www-form-urlencoded"}
    if cookies:
        headers["cookie"] = "; ".join(cookies)
    body = urlencode({key: value for key, value in fields.items() if value is not None}).encode()
    return LoginRequest(method="POST", path="/login", headers=headers, body=body, client=client)


def cookie_value(response: Response, name: str) -> str | None:
    for header in response.header_values("set-cookie"):
        pair = header.split(";", 1)[0]
        key, _, value = pair.partition("=")
        if key == name:
            return value
    return None


# SAML signing helpers

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
ENVELOPED_SIG = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
DIGEST_SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
ECDSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256"
ED25519 = "http://www.w3.org/2001/04/xmldsig-more#ed25519"

SigningKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey | ed25519.Ed25519PrivateKey


def saml_instant(value: dt.datetime) -> str:
    return value.astimezone(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def signing_material(kind: str = "ed25519") -> tuple[SigningKey, str]:
    private_key: SigningKey
    algorithm: hashes.HashAlgorithm | None
    if kind == "rsa":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        algorithm = hashes.SHA256()
    elif kind == "ecdsa":
        private_key = ec.generate_private_key(ec.SECP256R1())
        algorithm = hashes.SHA256()
    else:
        private_key = ed25519.Ed25519PrivateKey.generate()
        algorithm = None
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test IdP")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - dt.timedelta(days=1))
        .not_valid_after(NOW + dt.timedelta(days=365))
        .sign(private_key, algorithm=algorithm)
    )
    return private_key, certificate.public_bytes(serialization.Encoding.PEM).decode()


def make_identity_provider(certificate: str, **overrides: Any) -> IdentityProvider:
    values: dict[str, Any] = {
        "id": "idp-1",
        "entity_id": ENTITY_ID,
        "certificate": certificate,
        "name": "Example IdP",
        "allowed_audiences": ("https://turnstile.example.com/sp",),
    }
    values.update(overrides)
    return IdentityProvider(**values)


def assertion_body(
    *,
    subject: str = "jo@example.com",
    issuer: str = ENTITY_ID,
    audience: str = "https://turnstile.example.com/sp",
    not_before: dt.datetime | None = None,
    not_on_or_after: dt.datetime | None = None,
    attributes: Mapping[str, str] | None = None,
) -> str:
    start = saml_instant(not_before or NOW - dt.timedelta(minutes=5))
    end = saml_instant(not_on_or_after or NOW + dt.timedelta(minutes=5))
    rendered_attributes = "".join(
        f"<Attribute Name='{name}'><AttributeValue>{value}</AttributeValue></Attribute>"
        for name, value in (attributes if attributes is not None else {"email": subject}).items()
    )
    return (
        f"<Issuer>{issuer}</Issuer>"
        f"<Subject><NameID>{subject}</NameID></Subject>"
        f"<Conditions NotBefore='{start}' NotOnOrAfter='{end}'>"
        f"<AudienceRestriction><Audience>{audience}</Audience></AudienceRestriction>"
        "</Conditions>"
        f"<AttributeStatement>{rendered_attributes}</AttributeStatement>"
    )


def signed_assertion(key: SigningKey, *, body: str, assertion_id: str = "_assertion-1") -> str:
    template = (
        "<Assertion xmlns='urn:oasis:names:tc:SAML:2.0:assertion' Version='2.0' "
        f"ID='{assertion_id}' IssueInstant='{saml_instant(NOW)}'>"
        f"{body}"
        "</Assertion>"
    )
    assertion = LET.fromstring(template)
    digest_bytes = LET.tostring(assertion, method="c14n", exclusive=True, with_comments=False)
    digest_value = base64.b64encode(hashlib.sha256(digest_bytes).digest()).decode()

    signature = LET.Element(f"{{{DS_NS}}}Signature", nsmap={"ds": DS_NS})
    signed_info = LET.SubElement(signature, f"{{{DS_NS}}}SignedInfo")
    LET.SubElement(signed_info, f"{{{DS_NS}}}CanonicalizationMethod", Algorithm=EXC_C14N)
    LET.SubElement(signed_info, f"{{{DS_NS}}}SignatureMethod", Algorithm=_algorithm_for(key))
    reference = LET.SubElement(signed_info, f"{{{DS_NS}}}Reference", URI=f"#{assertion_id}")
    transforms = LET.SubElement(reference, f"{{{DS_NS}}}Transforms")
    LET.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=ENVELOPED_SIG)
    LET.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=EXC_C14N)
    LET.SubElement(reference, f"{{{DS_NS}}}DigestMethod", Algorithm=DIGEST_SHA256)
    LET.SubElement(reference, f"{{{DS_NS}}}DigestValue").text = digest_value

    payload = LET.tostring(signed_info, method="c14n", exclusive=True, with_comments=False)
    LET.SubElement(signature, f"{{{DS_NS}}}SignatureValue").text = base64.b64encode(_sign(key, payload)).decode()
    assertion.insert(0, signature)
    return LET.tostring(assertion, encoding="unicode")


def encode_saml_response(document: str) -> str:
    return base64.b64encode(document.encode()).decode()


def _sign(key: SigningKey, payload: bytes) -> bytes:
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(payload, padding.PKCS1v15(), hashes.SHA256())
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key.sign(payload, ec.ECDSA(hashes.SHA256()))
    return key.sign(payload)


def _algorithm_for(key: SigningKey) -> str:
    if isinstance(key, rsa.RSAPrivateKey):
        return RSA_SHA256
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return ECDSA_SHA256
    return ED25519
