from __future__ import annotations

import base64
import binascii
import hashlib
import time
from dataclasses import dataclass
from email.utils import format_datetime, parsedate_to_datetime
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from blake3 import blake3
from nacl import exceptions as nacl_exceptions
from nacl.signing import SigningKey, VerifyKey

SIGNATURE_ALGORITHM = "ed25519"
SIGNED_HEADERS_WITH_BODY = ("(request-target)", "host", "date", "digest")
SIGNED_HEADERS_WITHOUT_BODY = ("(request-target)", "host", "date")


class SignatureVerificationError(ValueError):
    """Raised when signature verification fails."""


@dataclass(frozen=True)
class ParsedSignature:
    """Fields of an HTTP ``Signature`` header."""

    key_id: str
    algorithm: str
    headers: Tuple[str, ...]
    signature: bytes

    @property
    def key_owner(self) -> str:
        """The actor URI owning the key (``keyId`` without its fragment)."""
        return self.key_id.split("#", 1)[0]


def decode_hex(value: str, *, label: str) -> bytes:
    """Decode a hex string, raising a descriptive error when invalid."""
    try:
        return binascii.unhexlify(value)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid hex value for {label}") from exc


def generate_keypair() -> Tuple[str, str]:
    """Return a new ``(public_key_hex, private_key_hex)`` Ed25519 pair."""
    signing_key = SigningKey.generate()
    return signing_key.verify_key.encode().hex(), signing_key.encode().hex()


def activity_fingerprint(fields: Iterable[bytes]) -> str:
    """
    Produce a deterministic hexadecimal fingerprint over a sequence of fields.

    Using a length-prefix avoids collisions between concatenated field
    boundaries and keeps the hashing contract centralised.
    """
    hasher = blake3()
    for chunk in fields:
        hasher.update(len(chunk).to_bytes(4, "big"))
        hasher.update(chunk)
    return hasher.hexdigest()


def body_digest(body: bytes) -> str:
    """Value of the ``Digest`` header for ``body``."""
    digest = hashlib.sha256(body).digest()
    return "SHA-256=" + base64.b64encode(digest).decode("ascii")


def http_date(now: Optional[float] = None) -> str:
    moment = datetime.fromtimestamp(time.time() if now is None else now, tz=timezone.utc)
    return format_datetime(moment, usegmt=True)


def parse_signature_header(value: str) -> ParsedSignature:
    """Parse ``keyId="...",algorithm="...",headers="...",signature="..."``."""
    fields: Dict[str, str] = {}
    for part in value.split(","):
        if "=" not in part:
            continue
        key, raw = part.split("=", 1)
        fields[key.strip()] = raw.strip().strip('"')
    try:
        key_id = fields["keyId"]
        signature = base64.b64decode(fields["signature"], validate=True)
    except KeyError as exc:
        raise SignatureVerificationError(f"signature header missing {exc}") from exc
    except (binascii.Error, ValueError) as exc:
        raise SignatureVerificationError("signature is not valid base64") from exc
    headers = tuple(fields.get("headers", "date").lower().split())
    return ParsedSignature(
        key_id=key_id,
        algorithm=fields.get("algorithm", SIGNATURE_ALGORITHM).lower(),
        headers=headers,
        signature=signature,
    )


def build_signing_string(
    method: str,
    path: str,
    headers: Mapping[str, str],
    signed_headers: Iterable[str],
) -> str:
    """Assemble the string covered by an HTTP signature.

    ``headers`` must be keyed by lower-case header names.
    """
    lines: List[str] = []
    for name in signed_headers:
        if name == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {path}")
            continue
        if name not in headers:
            raise SignatureVerificationError(f"signed header '{name}' is missing")
        lines.append(f"{name}: {headers[name]}")
    return "\n".join(lines)


def sign_request(
    *,
    method: str,
    url: str,
    body: Optional[bytes],
    key_id: str,
    private_key_hex: str,
    now: Optional[float] = None,
) -> Dict[str, str]:
    """Return the headers that sign a request to ``url`` with an actor's key."""
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    headers = {"host": parts.netloc, "date": http_date(now)}
    signed = SIGNED_HEADERS_WITHOUT_BODY
    if body is not None:
        headers["digest"] = body_digest(body)
        signed = SIGNED_HEADERS_WITH_BODY
    signing_key = SigningKey(decode_hex(private_key_hex, label="private_key"))
    signing_string = build_signing_string(method, path, headers, signed)
    signature = signing_key.sign(signing_string.encode("utf-8")).signature
    headers["signature"] = (
        f'keyId="{key_id}",algorithm="{SIGNATURE_ALGORITHM}",'
        f'headers="{" ".join(signed)}",'
        f'signature="{base64.b64encode(signature).decode("ascii")}"'
    )
    return {name.title(): value for name, value in headers.items()}


def verify_request(
    *,
    method: str,
    path: str,
    headers: Mapping[str, str],
    body: bytes,
    public_key_hex: str,
    max_age_seconds: int,
    now: Optional[float] = None,
) -> ParsedSignature:
    """Verify the HTTP signature of an inbound request.

    Checks the body digest, the ``Date`` skew, and the Ed25519 signature. A
    request with a body must sign its target, ``Date`` and ``Digest``.
    """
    lowered = {name.lower(): value for name, value in headers.items()}
    if "signature" not in lowered:
        raise SignatureVerificationError("request is not signed")
    parsed = parse_signature_header(lowered["signature"])
    if parsed.algorithm not in (SIGNATURE_ALGORITHM, "hs2019"):
        raise SignatureVerificationError(f"unsupported algorithm '{parsed.algorithm}'")
    if body:
        for required in ("(request-target)", "date", "digest"):
            if required not in parsed.headers:
                raise SignatureVerificationError(f"{required} must be signed")
    if "digest" in lowered and lowered["digest"] != body_digest(body):
        raise SignatureVerificationError("digest does not match body")

    date_value = lowered.get("date")
    if date_value is None:
        raise SignatureVerificationError("date header is missing")
    try:
        sent_at = parsedate_to_datetime(date_value).timestamp()
    except (TypeError, ValueError) as exc:
        raise SignatureVerificationError("date header is malformed") from exc
    current = time.time() if now is None else now
    if abs(current - sent_at) > max_age_seconds:
        raise SignatureVerificationError("request date outside the accepted window")

    signing_string = build_signing_string(method, path, lowered, parsed.headers)
    try:
        verify_key = VerifyKey(decode_hex(public_key_hex, label="public_key"))
        verify_key.verify(signing_string.encode("utf-8"), parsed.signature)
    except (ValueError, nacl_exceptions.CryptoError) as exc:
        raise SignatureVerificationError("signature verification failed") from exc
    return parsed


__all__ = [
    "ParsedSignature",
    "SignatureVerificationError",
    "activity_fingerprint",
    "body_digest",
    "build_signing_string",
    "decode_hex",
    "generate_keypair",
    "http_date",
    "parse_signature_header",
    "sign_request",
    "verify_request",
]
