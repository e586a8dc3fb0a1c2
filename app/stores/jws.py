"""
Apple JWS Verification
======================

Decoding and verification of the compact JWS documents Apple signs
notifications, transactions and renewal info with.

The header carries an ``x5c`` chain (leaf, intermediate, root). The chain
is checked link by link and anchored at one of the configured Apple root
certificates, then the ES256 signature is checked with the leaf key.
"""

import base64
import binascii
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from app.config import settings
from app.core.errors import InvalidSignature, MalformedPayload
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        raise MalformedPayload(f"Invalid base64 segment: {e}") from e


def _load_json(data: bytes) -> dict[str, Any]:
    try:
        value = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload(f"Invalid JSON: {e}") from e
    if not isinstance(value, dict):
        raise MalformedPayload("JWS segment is not a JSON object")
    return value


def split_jws(token: str) -> tuple[dict[str, Any], dict[str, Any], bytes, bytes]:
    """
    Split a compact JWS into header, payload, signing input and signature.

    Raises:
        MalformedPayload: wrong segment count, bad base64 or bad JSON.
    """
    if not isinstance(token, str):
        raise MalformedPayload("JWS must be a string")

    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedPayload(f"JWS must have 3 segments, got {len(parts)}")

    header_b64, payload_b64, signature_b64 = parts
    header = _load_json(_b64url_decode(header_b64))
    payload = _load_json(_b64url_decode(payload_b64))
    signature = _b64url_decode(signature_b64)
    signing_input = f"{header_b64}.{payload_b64}".encode()
    return header, payload, signing_input, signature


def _load_certificate(data: bytes) -> x509.Certificate:
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


@lru_cache
def _load_root_certificates(paths: tuple[str, ...]) -> tuple[x509.Certificate, ...]:
    certs = []
    for path in paths:
        certs.append(_load_certificate(Path(path).read_bytes()))
        logger.info("Loaded Apple root certificate from %s", path)
    return tuple(certs)


def load_apple_root_certificates() -> tuple[x509.Certificate, ...]:
    """Root certificates from ``APPLE_ROOT_CERTIFICATES`` (DER or PEM files)."""
    return _load_root_certificates(tuple(settings.apple_root_certificate_paths))


def _verify_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> None:
    if cert.issuer != issuer.subject:
        raise InvalidSignature("Certificate issuer does not match chain")

    public_key = issuer.public_key()
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise InvalidSignature("Unexpected key type in certificate chain")

    try:
        public_key.verify(
            cert.signature,
            cert.tbs_certificate_bytes,
            ec.ECDSA(cert.signature_hash_algorithm),
        )
    except CryptoInvalidSignature as e:
        raise InvalidSignature("Certificate chain signature mismatch") from e


def _check_validity(cert: x509.Certificate) -> None:
    now = utc_now()
    if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
        raise InvalidSignature("Certificate outside its validity window")


def verify_x5c_chain(
    x5c: list[str],
    root_certificates: Iterable[x509.Certificate],
) -> x509.Certificate:
    """
    Verify an ``x5c`` chain and return the leaf certificate.

    Every certificate must be signed by the next one, and the last one
    must be byte-identical to, or signed by, a trusted root.
    """
    roots = list(root_certificates)
    if not roots:
        raise InvalidSignature("No Apple root certificates configured")
    if not x5c:
        raise InvalidSignature("No certificate chain in JWS header")

    try:
        chain = [x509.load_der_x509_certificate(base64.b64decode(c)) for c in x5c]
    except (binascii.Error, ValueError) as e:
        raise InvalidSignature(f"Unreadable certificate in chain: {e}") from e

    for cert in chain:
        _check_validity(cert)

    for cert, issuer in zip(chain, chain[1:]):
        _verify_issued_by(cert, issuer)

    anchor = chain[-1]
    for root in roots:
        if anchor == root:
            return chain[0]
        if anchor.issuer == root.subject:
            try:
                _verify_issued_by(anchor, root)
            except InvalidSignature:
                continue
            return chain[0]

    raise InvalidSignature("Certificate chain does not end at a trusted Apple root")


def _verify_es256(
    cert: x509.Certificate,
    signing_input: bytes,
    signature: bytes,
) -> None:
    public_key = cert.public_key()
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise InvalidSignature("Unexpected key type in leaf certificate")

    # JWS carries raw R||S; cryptography wants DER
    if len(signature) != 64:
        raise InvalidSignature("ES256 signature must be 64 bytes")
    r = int.from_bytes(signature[:32], byteorder="big")
    s = int.from_bytes(signature[32:], byteorder="big")

    try:
        public_key.verify(
            encode_dss_signature(r, s),
            signing_input,
            ec.ECDSA(hashes.SHA256()),
        )
    except CryptoInvalidSignature as e:
        raise InvalidSignature("JWS signature mismatch") from e


def decode_jws(
    token: str,
    verify: bool = True,
    root_certificates: Optional[Iterable[x509.Certificate]] = None,
) -> dict[str, Any]:
    """
    Decode an Apple JWS and return its payload.

    Args:
        token: Compact JWS (header.payload.signature).
        verify: When False, only decode. Callers must gate this behind
            ``settings.allow_unverified_jws``.
        root_certificates: Trust anchors; defaults to the configured roots.

    Raises:
        MalformedPayload: the token cannot be parsed.
        InvalidSignature: chain or signature verification failed.
    """
    header, payload, signing_input, signature = split_jws(token)

    if not verify:
        return payload

    if header.get("alg") != "ES256":
        raise InvalidSignature(f"Unsupported JWS algorithm: {header.get('alg')}")

    if root_certificates is None:
        root_certificates = load_apple_root_certificates()

    leaf = verify_x5c_chain(header.get("x5c") or [], root_certificates)
    _verify_es256(leaf, signing_input, signature)
    return payload
