from __future__ import annotations

import base64
import datetime as dt

import lxml.etree as LET
import pytest

from turnstile.exceptions import InvalidCredentials, UnprocessableRequest
from turnstile.saml import SamlAssertionValidator, decode_saml_response
from tests.support import (
    DS_NS,
    ENTITY_ID,
    NOW,
    assertion_body,
    make_identity_provider,
    saml_instant,
    signed_assertion,
    signing_material,
)


@pytest.mark.parametrize("kind", ["ed25519", "rsa", "ecdsa"])
def test_valid_assertion_yields_subject_and_attributes(kind: str) -> None:
    key, certificate = signing_material(kind)
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = signed_assertion(key, body=assertion_body(attributes={"email": "jo@example.com", "name": "Jo"}))

    assertion = validator.validate(document, now=NOW)

    assert assertion.subject == "jo@example.com"
    assert assertion.attributes == {"email": "jo@example.com", "name": "Jo"}


def test_assertion_inside_response_envelope() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    assertion = signed_assertion(key, body=assertion_body())
    envelope = (
        "<samlp:Response xmlns:samlp='urn:oasis:names:tc:SAML:2.0:protocol' ID='_r1' Version='2.0'>"
        f"{assertion}"
        "</samlp:Response>"
    )

    assert validator.validate(envelope, now=NOW).subject == "jo@example.com"


def test_signature_from_another_key_is_rejected() -> None:
    _, certificate = signing_material()
    other_key, _ = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(signed_assertion(other_key, body=assertion_body()), now=NOW)

    assert caught.value.reason == "invalid_signature"


def test_modified_content_fails_digest() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = signed_assertion(key, body=assertion_body(subject="jo@example.com"))

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(document.replace("<NameID>jo@", "<NameID>admin@"), now=NOW)

    assert caught.value.reason == "digest_mismatch"


def test_unsigned_assertion_is_rejected() -> None:
    _, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = (
        "<Assertion xmlns='urn:oasis:names:tc:SAML:2.0:assertion' ID='_a'>"
        f"{assertion_body()}"
        "</Assertion>"
    )

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(document, now=NOW)

    assert caught.value.reason == "missing_signature"


def test_reference_to_another_element_is_rejected() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = LET.fromstring(signed_assertion(key, body=assertion_body()).encode())
    reference = document.find(f"{{{DS_NS}}}Signature/{{{DS_NS}}}SignedInfo/{{{DS_NS}}}Reference")
    assert reference is not None
    reference.set("URI", "#_somewhere-else")

    with pytest.raises(InvalidCredentials):
        validator.validate(LET.tostring(document, encoding="unicode"), now=NOW)


@pytest.mark.parametrize(
    "now, reason",
    [
        (NOW + dt.timedelta(minutes=10), "assertion_expired"),
        (NOW - dt.timedelta(minutes=10), "assertion_not_yet_valid"),
    ],
)
def test_validity_window_is_enforced(now: dt.datetime, reason: str) -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate, clock_skew_seconds=60))

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(signed_assertion(key, body=assertion_body()), now=now)

    assert caught.value.reason == reason


def test_clock_skew_is_tolerated() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate, clock_skew_seconds=120))

    validator.validate(signed_assertion(key, body=assertion_body()), now=NOW + dt.timedelta(minutes=6))


def test_audience_and_issuer_must_match() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))

    with pytest.raises(InvalidCredentials) as audience:
        validator.validate(signed_assertion(key, body=assertion_body(audience="https://other.example")), now=NOW)
    with pytest.raises(InvalidCredentials) as issuer:
        validator.validate(signed_assertion(key, body=assertion_body(issuer="https://rogue.example")), now=NOW)

    assert audience.value.reason == "invalid_audience"
    assert issuer.value.reason == "unexpected_issuer"


def test_entities_are_not_expanded() -> None:
    _, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = (
        "<?xml version='1.0'?><!DOCTYPE a [<!ENTITY x SYSTEM 'file:///etc/passwd'>]>"
        "<Assertion xmlns='urn:oasis:names:tc:SAML:2.0:assertion' ID='_a'><Issuer>&x;</Issuer></Assertion>"
    )

    with pytest.raises(InvalidCredentials):
        validator.validate(document, now=NOW)


def test_broken_certificate_is_unprocessable() -> None:
    with pytest.raises(UnprocessableRequest):
        SamlAssertionValidator(make_identity_provider("not a certificate"))


def test_decode_saml_response() -> None:
    assert decode_saml_response(base64.b64encode(b"<a/>").decode()) == "<a/>"
    with pytest.raises(UnprocessableRequest):
        decode_saml_response(None)
    with pytest.raises(UnprocessableRequest):
        decode_saml_response("%%%not-base64%%%")


def test_comment_inside_subject_is_rejected() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = signed_assertion(
        key,
        body=assertion_body(subject="victim@example.com.evil.org", attributes={"name": "Mallory"}),
    )
    split = document.replace(
        "<NameID>victim@example.com.evil.org</NameID>",
        "<NameID>victim@example.com<!---->.evil.org</NameID>",
    )
    assert split != document

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(split, now=NOW)

    assert caught.value.reason == "unexpected_claim_markup"


def test_comment_inside_attribute_value_is_rejected() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = signed_assertion(key, body=assertion_body(attributes={"email": "victim@example.com.evil.org"}))
    split = document.replace(
        "<AttributeValue>victim@example.com.evil.org</AttributeValue>",
        "<AttributeValue>victim@example.com<!---->.evil.org</AttributeValue>",
    )

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(split, now=NOW)

    assert caught.value.reason == "unexpected_claim_markup"


def test_comment_preserving_canonicalization_is_refused() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = LET.fromstring(signed_assertion(key, body=assertion_body()).encode())
    method = document.find(f"{{{DS_NS}}}Signature/{{{DS_NS}}}SignedInfo/{{{DS_NS}}}CanonicalizationMethod")
    assert method is not None
    method.set("Algorithm", "http://www.w3.org/2001/10/xml-exc-c14n#WithComments")

    with pytest.raises(InvalidCredentials):
        validator.validate(LET.tostring(document, encoding="unicode"), now=NOW)


def test_assertion_without_expiry_is_rejected() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    body = (
        f"<Issuer>{ENTITY_ID}</Issuer>"
        "<Subject><NameID>jo@example.com</NameID></Subject>"
        "<Conditions><AudienceRestriction>"
        "<Audience>https://turnstile.example.com/sp</Audience>"
        "</AudienceRestriction></Conditions>"
    )

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(signed_assertion(key, body=body), now=NOW + dt.timedelta(days=3650))

    assert caught.value.reason == "missing_expiry"


def test_missing_audience_restriction_is_rejected() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    expiry = saml_instant(NOW + dt.timedelta(minutes=5))
    body = (
        f"<Issuer>{ENTITY_ID}</Issuer>"
        "<Subject><NameID>jo@example.com</NameID>"
        f"<SubjectConfirmation><SubjectConfirmationData NotOnOrAfter='{expiry}'/>"
        "</SubjectConfirmation></Subject>"
    )

    with pytest.raises(InvalidCredentials) as caught:
        validator.validate(signed_assertion(key, body=body), now=NOW)

    assert caught.value.reason == "invalid_audience"


def test_provider_without_audiences_is_unprocessable() -> None:
    _, certificate = signing_material()

    with pytest.raises(UnprocessableRequest) as caught:
        SamlAssertionValidator(make_identity_provider(certificate, allowed_audiences=()))

    assert caught.value.reason == "idp_without_audience"


def test_validated_assertion_reports_id_and_earliest_expiry() -> None:
    key, certificate = signing_material()
    validator = SamlAssertionValidator(make_identity_provider(certificate))
    document = signed_assertion(key, body=assertion_body(), assertion_id="_assertion-42")

    assertion = validator.validate(document, now=NOW)

    assert assertion.assertion_id == "_assertion-42"
    assert assertion.expires_at == NOW + dt.timedelta(minutes=5)
