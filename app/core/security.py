"""
Security Module
===============

API key and webhook signing utilities including:
- API key generation and parsing (``pk_`` public, ``sk_`` secret)
- HMAC-SHA256 signatures for outbound customer webhooks
"""

import hashlib
import hmac
import secrets
from typing import Optional

PUBLIC_KEY_PREFIX = "pk_"
SECRET_KEY_PREFIX = "sk_"

KEY_TYPE_PUBLIC = "public"
KEY_TYPE_SECRET = "secret"

SIGNATURE_PREFIX = "sha256="


def generate_api_key(key_type: str = KEY_TYPE_PUBLIC) -> str:
    """
    Generate a new API key.

    Args:
        key_type: "public" or "secret"

    Returns:
        Prefixed random key, e.g. ``pk_3f9a...``
    """
    prefix = SECRET_KEY_PREFIX if key_type == KEY_TYPE_SECRET else PUBLIC_KEY_PREFIX
    return f"{prefix}{secrets.token_hex(24)}"


def parse_api_key(authorization: Optional[str]) -> Optional[tuple[str, str]]:
    """
    Extract the key and its type from an Authorization header value.

    Accepts ``Bearer <key>`` or the bare key.

    Returns:
        (key, key_type), or None when missing or not a recognised prefix.
    """
    if not authorization:
        return None

    value = authorization.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()

    if value.startswith(SECRET_KEY_PREFIX):
        return value, KEY_TYPE_SECRET
    if value.startswith(PUBLIC_KEY_PREFIX):
        return value, KEY_TYPE_PUBLIC
    return None


def keys_match(provided: str, stored: str) -> bool:
    """Constant-time key comparison."""
    return hmac.compare_digest(provided.encode(), stored.encode())


def sign_payload(secret: str, body: bytes) -> str:
    """
    Sign a webhook body.

    Returns:
        ``sha256=<hex digest>`` header value
    """
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_payload_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check a ``sha256=<hex>`` signature against ``body``."""
    return hmac.compare_digest(sign_payload(secret, body), signature or "")
