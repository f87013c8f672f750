import base64
import time

import pytest
from nacl.signing import SigningKey

from forum_federation.core.security import (
    SignatureVerificationError,
    activity_fingerprint,
    body_digest,
    build_signing_string,
    generate_keypair,
    http_date,
    parse_signature_header,
    sign_request,
    verify_request,
)

INBOX = "https://forum.example/inbox"
KEY_ID = "https://remote.example/u/alice#main-key"


@pytest.fixture
def keypair():
    return generate_keypair()


def _verify(headers, body, public_key, now=None, path="/inbox"):
    return verify_request(
        method="POST",
        path=path,
        headers=headers,
        body=body,
        public_key_hex=public_key,
        max_age_seconds=300,
        now=now,
    )


def test_signed_request_verifies(keypair):
    public_key, private_key = keypair
    body = b'{"type":"Follow"}'
    headers = sign_request(
        method="POST", url=INBOX, body=body, key_id=KEY_ID, private_key_hex=private_key
    )

    parsed = _verify(headers, body, public_key)

    assert parsed.key_owner == "https://remote.example/u/alice"
    assert parsed.headers == ("(request-target)", "host", "date", "digest")


def test_modified_body_is_rejected(keypair):
    public_key, private_key = keypair
    headers = sign_request(
        method="POST", url=INBOX, body=b"{}", key_id=KEY_ID, private_key_hex=private_key
    )
    with pytest.raises(SignatureVerificationError, match="digest"):
        _verify(headers, b'{"evil":true}', public_key)


def test_signature_from_another_key_is_rejected(keypair):
    public_key, _ = keypair
    other = SigningKey.generate().encode().hex()
    headers = sign_request(method="POST", url=INBOX, body=b"{}", key_id=KEY_ID, private_key_hex=other)
    with pytest.raises(SignatureVerificationError, match="verification failed"):
        _verify(headers, b"{}", public_key)


def test_request_for_another_path_is_rejected(keypair):
    public_key, private_key = keypair
    headers = sign_request(
        method="POST", url=INBOX, body=b"{}", key_id=KEY_ID, private_key_hex=private_key
    )
    with pytest.raises(SignatureVerificationError):
        _verify(headers, b"{}", public_key, path="/u/bob/inbox")


def test_old_date_is_rejected(keypair):
    public_key, private_key = keypair
    sent_at = time.time() - 3600
    headers = sign_request(
        method="POST", url=INBOX, body=b"{}", key_id=KEY_ID, private_key_hex=private_key, now=sent_at
    )
    with pytest.raises(SignatureVerificationError, match="window"):
        _verify(headers, b"{}", public_key)


def test_unsigned_get_headers_have_no_digest(keypair):
    _, private_key = keypair
    headers = sign_request(
        method="GET",
        url="https://remote.example/u/alice",
        body=None,
        key_id=KEY_ID,
        private_key_hex=private_key,
    )
    assert "Digest" not in headers
    assert 'headers="(request-target) host date"' in headers["Signature"]


def test_parse_signature_header_requires_key_id():
    with pytest.raises(SignatureVerificationError, match="keyId"):
        parse_signature_header('algorithm="ed25519",signature="AAAA"')


def test_fingerprint_separates_field_boundaries():
    assert activity_fingerprint([b"ab", b"c"]) != activity_fingerprint([b"a", b"bc"])
    assert activity_fingerprint([b"payload"]) == activity_fingerprint([b"payload"])


@pytest.mark.parametrize("omitted", ["(request-target)", "date"])
def test_body_signature_must_cover_target_and_date(keypair, omitted):
    public_key, private_key = keypair
    body = b'{"type":"Follow"}'
    headers = {"host": "forum.example", "date": http_date(), "digest": body_digest(body)}
    signed = [name for name in ("(request-target)", "host", "date", "digest") if name != omitted]
    signing_string = build_signing_string("POST", "/inbox", headers, signed)
    signature = SigningKey(bytes.fromhex(private_key)).sign(signing_string.encode("utf-8")).signature
    headers["signature"] = (
        f'keyId="{KEY_ID}",algorithm="ed25519",headers="{" ".join(signed)}",'
        f'signature="{base64.b64encode(signature).decode("ascii")}"'
    )

    with pytest.raises(SignatureVerificationError, match="must be signed"):
        _verify(headers, body, public_key)
