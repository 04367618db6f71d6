"""SAML assertion validation against a configured identity provider."""

from __future__ import annotations

import asyncio
import base64
import binascii
import datetime as dt
import hashlib
import hmac
from collections.abc import Callable, Mapping
from typing import Protocol

import lxml.etree as LET
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from msgspec import Struct

from .exceptions import InvalidCredentials, UnprocessableRequest
from .models import IdentityProvider
from .stores import SessionStorage

__all__ = ["SamlAssertion", "SamlAssertionValidator", "SeenAssertionCache", "decode_saml_response"]

_SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
_DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
_ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
_NS = {"saml2": _SAML_NS, "ds": _DSIG_NS}

# Comment-preserving variants are refused; claims are read as text-only elements.
_C14N_METHODS: dict[str, bool] = {
    "http://www.w3.org/2001/10/xml-exc-c14n#": True,
    "http://www.w3.org/TR/2001/REC-xml-c14n-20010315": False,
}


class _SupportsDigest(Protocol):
    def digest(self) -> bytes: ...


_DIGESTS: dict[str, Callable[[bytes], _SupportsDigest]] = {
    "http://www.w3.org/2001/04/xmlenc#sha256": hashlib.sha256,
    "http://www.w3.org/2001/04/xmlenc#sha512": hashlib.sha512,
}


def _verify_rsa(key: object, signature: bytes, payload: bytes) -> None:
    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidSignature()
    key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())


def _verify_ecdsa(key: object, signature: bytes, payload: bytes) -> None:
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise InvalidSignature()
    key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))


def _verify_ed25519(key: object, signature: bytes, payload: bytes) -> None:
    if not isinstance(key, ed25519.Ed25519PublicKey):
        raise InvalidSignature()
    key.verify(signature, payload)


_SIGNATURE_METHODS: dict[str, Callable[[object, bytes, bytes], None]] = {
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256": _verify_rsa,
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256": _verify_ecdsa,
    "http://www.w3.org/2001/04/xmldsig-more#ed25519": _verify_ed25519,
}

_PARSER = LET.XMLParser(resolve_entities=False, no_network=True, remove_comments=False)


class SamlAssertion(Struct, frozen=True):
    subject: str
    attributes: dict[str, str]
    assertion_id: str
    expires_at: dt.datetime


def decode_saml_response(value: str | None) -> str:
    """Decode the base64 ``SAMLResponse`` form field."""

    if not value:
        raise UnprocessableRequest("missing_saml_response")
    try:
        return base64.b64decode("".join(value.split()), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise UnprocessableRequest("malformed_saml_response") from exc


class SamlAssertionValidator:
    """Check signature, validity window and audience of one assertion.

    The provider must restrict audiences, and every accepted assertion must
    carry a ``NotOnOrAfter`` bound.
    """

    def __init__(self, provider: IdentityProvider) -> None:
        self.provider = provider
        if not provider.allowed_audiences:
            raise UnprocessableRequest("idp_without_audience")
        try:
            self._public_key = x509.load_pem_x509_certificate(provider.certificate.strip().encode()).public_key()
        except ValueError as exc:
            raise UnprocessableRequest("invalid_idp_certificate") from exc

    def validate(self, document: str, *, now: dt.datetime | None = None) -> SamlAssertion:
        assertion = self._locate_assertion(document)
        self._verify_signature(assertion)
        assertion_id = assertion.get("ID")
        if not assertion_id:
            raise InvalidCredentials("missing_assertion_id")
        issuer = _claim_text(assertion.find("saml2:Issuer", namespaces=_NS))
        if issuer is not None and issuer != self.provider.entity_id:
            raise InvalidCredentials("unexpected_issuer")
        subject = _claim_text(assertion.find("saml2:Subject/saml2:NameID", namespaces=_NS))
        if not subject:
            raise InvalidCredentials("missing_subject")
        expires_at = self._check_validity(assertion, now or dt.datetime.now(dt.timezone.utc))
        self._check_audience(assertion)
        return SamlAssertion(
            subject=subject,
            attributes=self._attributes(assertion),
            assertion_id=assertion_id,
            expires_at=expires_at,
        )

    def _locate_assertion(self, document: str) -> LET._Element:
        try:
            root = LET.fromstring(document.encode(), parser=_PARSER)
        except LET.XMLSyntaxError as exc:
            raise InvalidCredentials("invalid_assertion") from exc
        if root.tag == f"{{{_SAML_NS}}}Assertion":
            return root
        assertions = root.findall("saml2:Assertion", namespaces=_NS)
        if len(assertions) != 1:
            raise InvalidCredentials("invalid_assertion")
        return assertions[0]

    def _verify_signature(self, assertion: LET._Element) -> None:
        signature = assertion.find("ds:Signature", namespaces=_NS)
        if signature is None:
            raise InvalidCredentials("missing_signature")
        signed_info = signature.find("ds:SignedInfo", namespaces=_NS)
        signature_text = signature.findtext("ds:SignatureValue", namespaces=_NS)
        if signed_info is None or not signature_text:
            raise InvalidCredentials("invalid_signature")
        references = signed_info.findall("ds:Reference", namespaces=_NS)
        if len(references) != 1:
            raise InvalidCredentials("invalid_signature")
        self._verify_reference(assertion, references[0])
        method = signed_info.find("ds:SignatureMethod", namespaces=_NS)
        verifier = _SIGNATURE_METHODS.get(method.get("Algorithm", "") if method is not None else "")
        c14n = signed_info.find("ds:CanonicalizationMethod", namespaces=_NS)
        exclusive = _C14N_METHODS.get(c14n.get("Algorithm", "") if c14n is not None else "")
        if verifier is None or exclusive is None:
            raise InvalidCredentials("unsupported_signature_algorithm")
        payload = LET.tostring(signed_info, method="c14n", exclusive=exclusive, with_comments=False)
        try:
            signature_bytes = base64.b64decode("".join(signature_text.split()), validate=True)
            verifier(self._public_key, signature_bytes, payload)
        except (binascii.Error, InvalidSignature) as exc:
            raise InvalidCredentials("invalid_signature") from exc

    def _verify_reference(self, assertion: LET._Element, reference: LET._Element) -> None:
        uri = reference.get("URI", "")
        # Only the assertion carrying the signature may be referenced.
        if uri and uri != f"#{assertion.get('ID', '')}":
            raise InvalidCredentials("invalid_signature")
        target = LET.fromstring(LET.tostring(assertion), parser=_PARSER)
        exclusive = False
        for transform in reference.findall("ds:Transforms/ds:Transform", namespaces=_NS):
            algorithm = transform.get("Algorithm", "")
            if algorithm == _ENVELOPED:
                for node in target.findall("ds:Signature", namespaces=_NS):
                    target.remove(node)
            elif algorithm in _C14N_METHODS:
                exclusive = _C14N_METHODS[algorithm]
            else:
                raise InvalidCredentials("unsupported_transform")
        digest_method = reference.find("ds:DigestMethod", namespaces=_NS)
        digest_factory = _DIGESTS.get(digest_method.get("Algorithm", "") if digest_method is not None else "")
        expected = reference.findtext("ds:DigestValue", namespaces=_NS)
        if digest_factory is None or not expected:
            raise InvalidCredentials("invalid_signature")
        canonical = LET.tostring(target, method="c14n", exclusive=exclusive, with_comments=False)
        actual = base64.b64encode(digest_factory(canonical).digest()).decode()
        if not hmac.compare_digest(actual, "".join(expected.split())):
            raise InvalidCredentials("digest_mismatch")

    def _check_validity(self, assertion: LET._Element, now: dt.datetime) -> dt.datetime:
        """Enforce every validity window and return the earliest expiry."""

        if now.tzinfo is None:
            now = now.replace(tzinfo=dt.timezone.utc)
        skew = dt.timedelta(seconds=max(self.provider.clock_skew_seconds, 0))
        windows = assertion.findall("saml2:Conditions", namespaces=_NS) + assertion.findall(
            "saml2:Subject/saml2:SubjectConfirmation/saml2:SubjectConfirmationData", namespaces=_NS
        )
        expiries: list[dt.datetime] = []
        for node in windows:
            not_before = node.get("NotBefore")
            if not_before and now + skew < _parse_instant(not_before):
                raise InvalidCredentials("assertion_not_yet_valid")
            not_on_or_after = node.get("NotOnOrAfter")
            if not_on_or_after:
                expiries.append(_parse_instant(not_on_or_after))
        if not expiries:
            raise InvalidCredentials("missing_expiry")
        expires_at = min(expiries)
        if now - skew >= expires_at:
            raise InvalidCredentials("assertion_expired")
        return expires_at

    def _check_audience(self, assertion: LET._Element) -> None:
        audiences = {
            _claim_text(node)
            for node in assertion.findall(
                "saml2:Conditions/saml2:AudienceRestriction/saml2:Audience", namespaces=_NS
            )
        }
        if not audiences.intersection(self.provider.allowed_audiences):
            raise InvalidCredentials("invalid_audience")

    def _attributes(self, assertion: LET._Element) -> dict[str, str]:
        mapping: Mapping[str, str] = self.provider.attribute_mapping
        attributes: dict[str, str] = {}
        for attribute in assertion.findall("saml2:AttributeStatement/saml2:Attribute", namespaces=_NS):
            name = attribute.get("Name")
            value = _claim_text(attribute.find("saml2:AttributeValue", namespaces=_NS))
            if name and value:
                attributes[mapping.get(name, name)] = value
        return attributes


class SeenAssertionCache:
    """Remember consumed assertion IDs until they expire."""

    def __init__(self, storage: SessionStorage, *, namespace: str = "saml:") -> None:
        self._storage = storage
        self._namespace = namespace
        self._lock = asyncio.Lock()

    async def claim(self, provider_id: str, assertion: SamlAssertion, *, now: dt.datetime, skew_seconds: int) -> None:
        """Raise :class:`InvalidCredentials` if ``assertion`` was already used."""

        key = f"{self._namespace}{provider_id}:{assertion.assertion_id}"
        ttl = int((assertion.expires_at - now).total_seconds()) + max(skew_seconds, 0)
        async with self._lock:
            if await self._storage.get(key) is not None:
                raise InvalidCredentials("assertion_replayed")
            await self._storage.set(key, b"1", ttl_seconds=max(ttl, 1))


def _claim_text(node: LET._Element | None) -> str | None:
    # Comments or nested markup would split the signed text across nodes.
    if node is None:
        return None
    if len(node):
        raise InvalidCredentials("unexpected_claim_markup")
    return (node.text or "").strip()


def _parse_instant(value: str) -> dt.datetime:
    try:
        instant = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidCredentials("invalid_timestamp") from exc
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=dt.timezone.utc)
    return instant
