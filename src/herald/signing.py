"""HMAC-SHA256 signing of webhook payloads.

Receivers authenticate a delivery by recomputing the signature over the
raw request body with the secret they obtained at subscription creation
(or rotation) and comparing it to the X-Webhook-Signature header.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SIGNATURE_PREFIX = "sha256="


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def generate_secret(nbytes: int = 32) -> str:
    """Generate a random signing secret.

    Args:
        nbytes: Random bytes of entropy.

    Returns:
        Hex-encoded secret (2 * nbytes characters).
    """
    return secrets.token_hex(nbytes)


def compute_signature(secret: str | bytes, payload: str | bytes) -> str:
    """Compute HMAC-SHA256 signature for a webhook payload.

    Args:
        secret: Shared secret for HMAC.
        payload: Exact bytes (or UTF-8 text) of the request body.

    Returns:
        Signature in format "sha256=<hex_digest>".
    """
    digest = hmac.new(
        key=_to_bytes(secret),
        msg=_to_bytes(payload),
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: str | bytes, signature: str, secret: str | bytes) -> bool:
    """Verify HMAC-SHA256 signature for a webhook payload.

    Uses a constant-time comparison.

    Args:
        payload: Raw request body as received.
        signature: Value of the X-Webhook-Signature header.
        secret: Shared secret for HMAC.

    Returns:
        True if signature is valid, False otherwise.
    """
    if not signature:
        return False
    expected = compute_signature(secret, payload)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))


__all__ = [
    "SIGNATURE_PREFIX",
    "compute_signature",
    "generate_secret",
    "verify_signature",
]
