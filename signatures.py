"""
HMAC webhook verification and content hashing.

- Shopify signs webhooks with base64(HMAC-SHA256(secret, raw body)).
- The NFS backend signs its callbacks with hex(HMAC-SHA256(secret, raw body)).
- Photos are fingerprinted with a SHA-256 hex digest of the exact bytes sent.
"""

import base64
import hashlib
import hmac
import logging

from errors import SignatureError

logger = logging.getLogger(__name__)

ENCODINGS = ("base64", "hex")


def compute_hmac(secret: str, body: bytes, encoding: str = "base64") -> str:
    """HMAC-SHA256 of body under secret, as base64 or hex text."""
    if encoding not in ENCODINGS:
        raise ValueError(f"Unknown signature encoding: {encoding}")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if encoding == "hex":
        return digest.hex()
    return base64.b64encode(digest).decode()


def verify_hmac(body: bytes, signature: str, secret: str, encoding: str = "base64") -> bool:
    """
    Verify a signature over the raw request body.
    Security-first: a missing secret or a missing signature is a rejection.
    """
    if not secret or not signature:
        return False
    calc = compute_hmac(secret, body, encoding)
    # bytes comparison: compare_digest rejects non-ASCII str
    return hmac.compare_digest(calc.encode("utf-8"), signature.encode("utf-8"))


def authenticate(body: bytes, signature: str, secret: str,
                 source: str = "Shopify", encoding: str = "base64") -> None:
    """Raise SignatureError unless the signature matches."""
    if not secret:
        logger.error("%s webhook: no secret configured, rejecting", source)
        raise SignatureError(source)
    if not verify_hmac(body, signature, secret, encoding):
        logger.warning("%s webhook: invalid signature (len(body)=%d)", source, len(body))
        raise SignatureError(source)


def sha256_hex(data: bytes) -> str:
    """SHA-256 hex digest of the given bytes."""
    return hashlib.sha256(data).hexdigest()
